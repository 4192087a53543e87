"""
Gateway over the relational store.

Every call takes the SQLAlchemy session to work in and commits on its own.
There is no transaction spanning calls: a document saved by one call and its
reminders saved by the next can end up with the document alone.
"""

import itertools
import logging
import threading
from datetime import date

from sqlalchemy import event, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, object_session

from expiry import classify
from models import (
    AuditLog, Document, DocumentHistory, Organization, OrganizationMember,
    OrgRole, Profile, Reminder, User,
)

logger = logging.getLogger(__name__)

DOCUMENT_FIELDS = (
    "name", "document_type", "issuing_authority", "expiry_date",
    "renewal_period_days", "notes", "organization_id",
)
PROFILE_FIELDS = (
    "display_name", "country", "email_notifications_enabled",
    "push_notifications_enabled", "expiry_reminders_enabled",
    "renewal_reminders_enabled", "weekly_digest_enabled",
)
SORT_KEYS = {
    "created_at": Document.created_at.desc(),
    "name": Document.name.asc(),
    "expiry_date": Document.expiry_date.asc(),
    "document_type": Document.document_type.asc(),
}


class StoreError(Exception):
    status_code = 500

    def __init__(self, message="Something went wrong. Please try again."):
        super().__init__(message)
        self.message = message


class NotFound(StoreError):
    status_code = 404


class PermissionDenied(StoreError):
    status_code = 403


class Conflict(StoreError):
    status_code = 409


def _commit(session):
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning("Store rejected write: %s", e.orig)
        raise Conflict("That record conflicts with an existing one.") from e
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Store write failed: %s", e)
        raise StoreError() from e


# ==========================================================
# DOCUMENTS
# ==========================================================
def create_document(session, user_id, fields):
    doc = Document(user_id=user_id, **{k: fields.get(k) for k in DOCUMENT_FIELDS})
    session.add(doc)
    _commit(session)
    return doc


def create_documents(session, user_id, rows, organization_id=None):
    """Insert several documents in one write."""
    docs = []
    for row in rows:
        values = {k: row.get(k) for k in DOCUMENT_FIELDS}
        values["organization_id"] = organization_id or values.get("organization_id")
        docs.append(Document(user_id=user_id, **values))
    session.add_all(docs)
    _commit(session)
    return docs


def get_document(session, user_id, document_id):
    doc = session.get(Document, document_id)
    if doc is None:
        raise NotFound("Document not found")
    if doc.user_id != user_id:
        if not doc.organization_id or member_role(session, doc.organization_id, user_id) is None:
            raise NotFound("Document not found")
    return doc


def list_documents(session, user_id, search=None, document_type=None, status=None,
                   sort_by="created_at", organization_id=None, today=None):
    query = session.query(Document)
    if organization_id is not None:
        if member_role(session, organization_id, user_id) is None:
            raise PermissionDenied("You are not a member of this organization")
        query = query.filter(Document.organization_id == organization_id)
    else:
        query = query.filter(Document.user_id == user_id)

    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Document.name.ilike(pattern),
            Document.document_type.ilike(pattern),
            Document.issuing_authority.ilike(pattern),
        ))
    if document_type and document_type != "all":
        query = query.filter(Document.document_type == document_type)

    query = query.order_by(SORT_KEYS.get(sort_by, SORT_KEYS["created_at"]), Document.id.desc())
    docs = query.all()

    if status and status != "all":
        today = today or date.today()
        docs = [d for d in docs if classify(d.expiry_date, today).value == status]
    return docs


def update_document(session, document, fields):
    for key in DOCUMENT_FIELDS:
        if key in fields:
            setattr(document, key, fields[key])
    _commit(session)
    return document


def attach_image(session, document, stored_name, nonce_b64, filename):
    document.image_path = stored_name
    document.image_nonce_b64 = nonce_b64
    document.image_filename = filename
    _commit(session)
    return document


def delete_document(session, document):
    session.delete(document)
    _commit(session)


def ensure_can_edit(session, user_id, document):
    if document.user_id == user_id:
        return
    role = member_role(session, document.organization_id, user_id) if document.organization_id else None
    if role not in (OrgRole.ADMIN.value, OrgRole.EDITOR.value):
        raise PermissionDenied("You do not have permission to edit this document")


def ensure_can_delete(session, user_id, document):
    if document.user_id == user_id:
        return
    role = member_role(session, document.organization_id, user_id) if document.organization_id else None
    if role != OrgRole.ADMIN.value:
        raise PermissionDenied("You do not have permission to delete this document")


# ==========================================================
# REMINDERS
# ==========================================================
def replace_reminders(session, document, scheduled):
    """Drop every reminder of ``document`` and insert ``scheduled`` in its place."""
    session.query(Reminder).filter(Reminder.document_id == document.id).delete(
        synchronize_session="fetch")
    rows = [
        Reminder(document_id=document.id, user_id=document.user_id,
                 reminder_date=item.reminder_date, is_custom=item.is_custom)
        for item in scheduled
    ]
    session.add_all(rows)
    _commit(session)
    return rows


def list_reminders(session, user_id, document_id=None, pending_only=False, from_date=None):
    query = session.query(Reminder).filter(Reminder.user_id == user_id)
    if document_id is not None:
        query = query.filter(Reminder.document_id == document_id)
    if pending_only:
        query = query.filter(Reminder.is_sent.is_(False))
    if from_date is not None:
        query = query.filter(Reminder.reminder_date >= from_date)
    return query.order_by(Reminder.reminder_date.asc(), Reminder.id.asc()).all()


def due_reminders(session, day):
    return (session.query(Reminder)
            .filter(Reminder.reminder_date == day, Reminder.is_sent.is_(False))
            .order_by(Reminder.id.asc())
            .all())


def mark_reminder_sent(session, reminder):
    reminder.is_sent = True
    _commit(session)
    return reminder


# ==========================================================
# HISTORY + AUDIT
# ==========================================================
def add_history(session, document, user_id, action, old_expiry_date=None,
                new_expiry_date=None, notes=None):
    entry = DocumentHistory(
        document_id=document.id, user_id=user_id, action=action,
        old_expiry_date=old_expiry_date, new_expiry_date=new_expiry_date, notes=notes,
    )
    session.add(entry)
    _commit(session)
    return entry


def list_history(session, document_id):
    return (session.query(DocumentHistory)
            .filter(DocumentHistory.document_id == document_id)
            .order_by(DocumentHistory.created_at.desc(), DocumentHistory.id.desc())
            .all())


def record_audit(session, user_id, action, entity_type, document_id=None, changes=None,
                 ip_address=None, user_agent=None):
    entry = AuditLog(
        user_id=user_id, action=action, entity_type=entity_type, document_id=document_id,
        changes=changes, ip_address=ip_address, user_agent=user_agent,
    )
    session.add(entry)
    _commit(session)
    return entry


def list_audit_logs(session, user_id, limit=50):
    return (session.query(AuditLog)
            .filter(AuditLog.user_id == user_id)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
            .all())


# ==========================================================
# PROFILES
# ==========================================================
def create_profile(session, user, display_name=None):
    profile = Profile(user_id=user.id, email=user.email,
                      display_name=display_name or user.email.split("@")[0])
    session.add(profile)
    _commit(session)
    return profile


def get_profile(session, user_id):
    return session.query(Profile).filter_by(user_id=user_id).first()


def update_profile(session, profile, fields):
    for key in PROFILE_FIELDS:
        if key in fields:
            setattr(profile, key, fields[key])
    _commit(session)
    return profile


# ==========================================================
# ORGANIZATIONS
# ==========================================================
def create_organization(session, user_id, name):
    org = Organization(name=name, owner_id=user_id)
    session.add(org)
    _commit(session)

    # creator becomes admin in a second write; a failure here leaves the org without members
    session.add(OrganizationMember(organization_id=org.id, user_id=user_id, role=OrgRole.ADMIN.value))
    try:
        _commit(session)
    except StoreError:
        logger.error("Could not add creator %s as admin of organization %s", user_id, org.id)
        raise
    return org


def get_organization(session, organization_id):
    org = session.get(Organization, organization_id)
    if org is None:
        raise NotFound("Organization not found")
    return org


def list_organizations(session, user_id):
    member_of = session.query(OrganizationMember.organization_id).filter(
        OrganizationMember.user_id == user_id)
    return (session.query(Organization)
            .filter(or_(Organization.owner_id == user_id, Organization.id.in_(member_of)))
            .order_by(Organization.created_at.desc(), Organization.id.desc())
            .all())


def member_role(session, organization_id, user_id):
    member = (session.query(OrganizationMember)
              .filter_by(organization_id=organization_id, user_id=user_id)
              .first())
    return member.role if member else None


def ensure_org_admin(session, organization, user_id):
    if organization.owner_id == user_id:
        return
    if member_role(session, organization.id, user_id) != OrgRole.ADMIN.value:
        raise PermissionDenied("Only organization admins can do that")


def ensure_org_owner(organization, user_id):
    if organization.owner_id != user_id:
        raise PermissionDenied("Only the organization owner can do that")


def list_members(session, organization_id):
    return (session.query(OrganizationMember)
            .filter_by(organization_id=organization_id)
            .order_by(OrganizationMember.created_at.asc(), OrganizationMember.id.asc())
            .all())


def get_member(session, organization, member_id):
    member = session.get(OrganizationMember, member_id)
    if member is None or member.organization_id != organization.id:
        raise NotFound("Member not found")
    return member


def add_member(session, organization, email, role=OrgRole.VIEWER.value):
    user = session.query(User).filter_by(email=email).first()
    if user is None:
        raise NotFound("No registered user with that email")
    if member_role(session, organization.id, user.id) is not None:
        raise Conflict("User is already a member of this organization")
    member = OrganizationMember(organization_id=organization.id, user_id=user.id, role=role)
    session.add(member)
    _commit(session)
    return member


def update_member_role(session, member, role):
    member.role = role
    _commit(session)
    return member


def remove_member(session, member):
    session.delete(member)
    _commit(session)


def delete_organization(session, organization):
    session.query(Document).filter(Document.organization_id == organization.id).update(
        {Document.organization_id: None}, synchronize_session="fetch")
    session.delete(organization)
    _commit(session)


# ==========================================================
# REALTIME CHANGE FEED
# ==========================================================
class Subscription:
    def __init__(self, feed, user_id, token):
        self._feed = feed
        self.user_id = user_id
        self._token = token

    def unsubscribe(self):
        self._feed._remove(self.user_id, self._token)


class ChangeFeed:
    """
    Per-user notifications for document inserts, updates and deletes.

    Changes are gathered during flush and delivered only after the session
    commits; a rollback discards them. Callbacks receive ``(event, document_id)``
    and must not use the committing session.
    """

    def __init__(self):
        self._subscribers = {}
        self._tokens = itertools.count()
        self._lock = threading.Lock()
        self._listeners = []
        self._pending_key = f"document_changes:{id(self)}"

    def subscribe(self, user_id, callback):
        token = next(self._tokens)
        with self._lock:
            self._subscribers.setdefault(user_id, {})[token] = callback
        return Subscription(self, user_id, token)

    def _remove(self, user_id, token):
        with self._lock:
            callbacks = self._subscribers.get(user_id, {})
            callbacks.pop(token, None)
            if not callbacks:
                self._subscribers.pop(user_id, None)

    def publish(self, user_id, event_type, document_id):
        with self._lock:
            callbacks = list(self._subscribers.get(user_id, {}).values())
        for callback in callbacks:
            callback(event_type, document_id)

    def attach(self, model=Document):
        listeners = [
            (model, "after_insert", self._tracker("INSERT")),
            (model, "after_update", self._tracker("UPDATE")),
            (model, "after_delete", self._tracker("DELETE")),
            (Session, "after_commit", self._dispatch),
            (Session, "after_rollback", self._discard),
        ]
        for target, name, fn in listeners:
            event.listen(target, name, fn)
        self._listeners.extend(listeners)
        return self

    def detach(self):
        for target, name, fn in self._listeners:
            event.remove(target, name, fn)
        self._listeners = []

    def _tracker(self, event_type):
        def track(mapper, connection, target):
            session = object_session(target)
            if session is not None:
                session.info.setdefault(self._pending_key, []).append(
                    (target.user_id, event_type, target.id))
        return track

    def _dispatch(self, session):
        for user_id, event_type, document_id in session.info.pop(self._pending_key, []):
            self.publish(user_id, event_type, document_id)

    def _discard(self, session):
        session.info.pop(self._pending_key, None)


class DocumentWatcher:
    """Cached document list that is fetched again in full after any change."""

    def __init__(self, feed, user_id, fetch):
        self._fetch = fetch
        self._stale = True
        self._documents = []
        self.fetch_count = 0
        self.subscription = feed.subscribe(user_id, self._on_change)

    def _on_change(self, event_type, document_id):
        self._stale = True

    @property
    def documents(self):
        if self._stale:
            self._documents = self._fetch()
            self.fetch_count += 1
            self._stale = False
        return self._documents

    def close(self):
        self.subscription.unsubscribe()
