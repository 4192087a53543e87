import enum
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()


class DocumentType(str, enum.Enum):
    LICENSE = "license"
    PASSPORT = "passport"
    PERMIT = "permit"
    INSURANCE = "insurance"
    CERTIFICATION = "certification"
    OTHER = "other"


class OrgRole(str, enum.Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


def _iso(value):
    return value.isoformat() if value is not None else None


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    password_hash = db.Column(db.String(300), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Profile(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), unique=True, nullable=False)
    email = db.Column(db.String(200))
    display_name = db.Column(db.String(200))
    country = db.Column(db.String(100))
    email_notifications_enabled = db.Column(db.Boolean, default=True)
    push_notifications_enabled = db.Column(db.Boolean, default=True)
    expiry_reminders_enabled = db.Column(db.Boolean, default=True)
    renewal_reminders_enabled = db.Column(db.Boolean, default=True)
    weekly_digest_enabled = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "display_name": self.display_name,
            "country": self.country,
            "email_notifications_enabled": self.email_notifications_enabled,
            "push_notifications_enabled": self.push_notifications_enabled,
            "expiry_reminders_enabled": self.expiry_reminders_enabled,
            "renewal_reminders_enabled": self.renewal_reminders_enabled,
            "weekly_digest_enabled": self.weekly_digest_enabled,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Organization(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = db.relationship("OrganizationMember", backref="organization",
                              cascade="all, delete-orphan", lazy=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class OrganizationMember(db.Model):
    __table_args__ = (db.UniqueConstraint("organization_id", "user_id"),)

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organization.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=OrgRole.VIEWER.value)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "role": self.role,
            "created_at": _iso(self.created_at),
        }


class Document(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    organization_id = db.Column(db.Integer, db.ForeignKey("organization.id"))
    name = db.Column(db.String(300), nullable=False)
    document_type = db.Column(db.String(30), nullable=False, default=DocumentType.OTHER.value)
    issuing_authority = db.Column(db.String(300))
    expiry_date = db.Column(db.Date, nullable=False)
    renewal_period_days = db.Column(db.Integer)
    notes = db.Column(db.Text)
    image_path = db.Column(db.String(300))    # encrypted file under UPLOAD_FOLDER
    image_nonce_b64 = db.Column(db.String(100))
    image_filename = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reminders = db.relationship("Reminder", backref="document",
                                cascade="all, delete-orphan", lazy=True)
    history = db.relationship("DocumentHistory", backref="document",
                              cascade="all, delete-orphan", lazy=True)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "name": self.name,
            "document_type": self.document_type,
            "issuing_authority": self.issuing_authority,
            "expiry_date": _iso(self.expiry_date),
            "renewal_period_days": self.renewal_period_days,
            "notes": self.notes,
            "image_path": self.image_path,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Reminder(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("document.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    reminder_date = db.Column(db.Date, nullable=False)
    is_sent = db.Column(db.Boolean, default=False, nullable=False)
    is_custom = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "document_id": self.document_id,
            "user_id": self.user_id,
            "reminder_date": _iso(self.reminder_date),
            "is_sent": self.is_sent,
            "is_custom": self.is_custom,
            "created_at": _iso(self.created_at),
        }


class DocumentHistory(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("document.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    action = db.Column(db.String(20), nullable=False)    # created | renewed | updated
    old_expiry_date = db.Column(db.Date)
    new_expiry_date = db.Column(db.Date)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "document_id": self.document_id,
            "user_id": self.user_id,
            "action": self.action,
            "old_expiry_date": _iso(self.old_expiry_date),
            "new_expiry_date": _iso(self.new_expiry_date),
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(200), nullable=False)
    entity_type = db.Column(db.String(50), nullable=False)
    document_id = db.Column(db.Integer)
    changes = db.Column(db.JSON)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "document_id": self.document_id,
            "changes": self.changes,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": _iso(self.created_at),
        }
