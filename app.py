import io
import json
import os
import queue
import uuid
from datetime import date, datetime, timezone
from functools import wraps

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, jsonify, request, send_file, session, stream_with_context
from pydantic import ValidationError
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

import store
from ai import AdvisoryClient, AIError, RequestTooLarge
from config import Config
from export import csv_download, json_download
from expiry import classify, days_until_expiry, needs_attention, summarize
from logging_config import setup_logging
from models import Document, OrgRole, User, db
from notifications import ScheduledPushBridge, schedule_local_notifications, send_reminder_emails
from reminders import schedule
from schemas import (
    AdvisorRequest, AnalysisRequest, BulkDocumentsIn, DocumentIn, FeedbackIn,
    MemberIn, OrganizationIn, ProfileUpdate, RoleUpdate, ScanRequest,
)
from utils import audit, decrypt_bytes, encrypt_bytes, read_file_bytes_as_b64, remove_file, save_file_bytes

STREAM_KEEPALIVE_SECONDS = 15
TIMELINE_SIZE = 5

# ==========================================================
# APP SETUP
# ==========================================================
setup_logging()

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)

with app.app_context():
    db.create_all()

change_feed = store.ChangeFeed().attach(Document)

scheduler = BackgroundScheduler()
if app.config["SCHEDULER_ENABLED"]:
    scheduler.start()

app.extensions["advisory"] = AdvisoryClient.from_config(app.config)
app.extensions["push_bridge"] = ScheduledPushBridge(scheduler, app.config["PUSH_WEBHOOK_URL"])


# ==========================================================
# HELPERS
# ==========================================================
def allowed(filename):
    """Checks if file extension is allowed."""
    return "." in filename and filename.rsplit(".", 1)[1].lower() in app.config["ALLOWED_EXT"]


def login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "login required"}), 401
        user = db.session.get(User, session["user_id"])
        if not user:
            session.pop("user_id", None)
            return jsonify({"error": "login required"}), 401
        return func(user, *args, **kwargs)
    return wrapper


def _payload():
    return request.get_json(silent=True) or request.form.to_dict()


def _check_body_size(limit):
    if request.content_length and request.content_length > limit:
        app.logger.error("Request too large: %s bytes", request.content_length)
        raise RequestTooLarge()


def _document_view(doc, today=None):
    data = doc.to_dict()
    data["status"] = classify(doc.expiry_date, today).value
    data["days_until_expiry"] = days_until_expiry(doc.expiry_date, today)
    return data


def _check_org_assignment(user, organization_id):
    if organization_id is None:
        return
    role = store.member_role(db.session, organization_id, user.id)
    if role not in (OrgRole.ADMIN.value, OrgRole.EDITOR.value):
        raise store.PermissionDenied("You cannot add documents to this organization")


def regenerate_reminders(document, custom_date=None):
    """Replace the document's reminders; needs both expiry date and renewal period."""
    if document.expiry_date is None or document.renewal_period_days is None:
        return []
    scheduled = schedule(document.expiry_date, document.renewal_period_days, custom_date)
    return store.replace_reminders(db.session, document, scheduled)


def _profile_country(user):
    profile = store.get_profile(db.session, user.id)
    return profile.country if profile else None


@app.errorhandler(ValidationError)
def handle_validation_error(e):
    first = e.errors()[0]
    message = first.get("msg", "Invalid input").removeprefix("Value error, ")
    field = ".".join(str(p) for p in first.get("loc", ()))
    return jsonify({"error": message, "field": field}), 400


@app.errorhandler(store.StoreError)
def handle_store_error(e):
    return jsonify({"error": e.message}), e.status_code


@app.errorhandler(AIError)
def handle_ai_error(e):
    return jsonify({"success": False, "error": e.message}), e.status_code


# ==========================================================
# AUTHENTICATION ROUTES
# ==========================================================
@app.route("/signup", methods=["POST"])
def signup():
    data = _payload()
    email = data.get("email")
    password = data.get("password")

    if not email or not password:
        return jsonify({"error": "email and password required"}), 400

    if User.query.filter_by(email=email).first():
        return jsonify({"error": "email already exists"}), 400

    user = User(email=email, password_hash=generate_password_hash(password))
    db.session.add(user)
    db.session.commit()
    store.create_profile(db.session, user, display_name=data.get("display_name"))
    return jsonify({"message": "registered", "user_id": user.id}), 201


@app.route("/login", methods=["POST"])
def login():
    data = _payload()
    email = data.get("email")
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first()
    if not user or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "invalid credentials"}), 401

    session["user_id"] = user.id
    return jsonify({"message": "logged in", "user_id": user.id})


@app.route("/logout", methods=["POST", "GET"])
def logout():
    session.pop("user_id", None)
    return jsonify({"message": "logged out"})


# ==========================================================
# DOCUMENT MANAGEMENT ROUTES
# ==========================================================
@app.route("/documents", methods=["GET"])
@login_required
def list_documents(user):
    docs = store.list_documents(
        db.session, user.id,
        search=request.args.get("search"),
        document_type=request.args.get("type"),
        status=request.args.get("status"),
        sort_by=request.args.get("sort", "created_at"),
        organization_id=request.args.get("organization_id", type=int),
    )
    today = date.today()
    return jsonify([_document_view(d, today) for d in docs])


@app.route("/documents", methods=["POST"])
@login_required
def create_document(user):
    payload = DocumentIn.model_validate(_payload())
    _check_org_assignment(user, payload.organization_id)

    doc = store.create_document(db.session, user.id, payload.fields())
    store.add_history(db.session, doc, user.id, "created", new_expiry_date=doc.expiry_date)
    reminders = regenerate_reminders(doc, payload.custom_reminder_date)
    audit(user.id, "create", document_id=doc.id, changes={"name": doc.name})

    data = _document_view(doc)
    data["reminders"] = [r.to_dict() for r in reminders]
    return jsonify(data), 201


@app.route("/documents/bulk", methods=["POST"])
@login_required
def bulk_create_documents(user):
    payload = BulkDocumentsIn.model_validate(_payload())
    for org_id in {payload.organization_id or item.organization_id for item in payload.documents}:
        _check_org_assignment(user, org_id)

    rows = [item.fields() for item in payload.documents]
    docs = store.create_documents(db.session, user.id, rows, payload.organization_id)
    for doc, item in zip(docs, payload.documents):
        store.add_history(db.session, doc, user.id, "created", new_expiry_date=doc.expiry_date)
        regenerate_reminders(doc, item.custom_reminder_date)
    audit(user.id, "bulk_create", changes={"count": len(docs)})
    return jsonify({"created": len(docs), "documents": [d.to_dict() for d in docs]}), 201


@app.route("/documents/<int:doc_id>", methods=["GET"])
@login_required
def get_document(user, doc_id):
    doc = store.get_document(db.session, user.id, doc_id)
    return jsonify(_document_view(doc))


@app.route("/documents/<int:doc_id>", methods=["PUT"])
@login_required
def update_document(user, doc_id):
    doc = store.get_document(db.session, user.id, doc_id)
    store.ensure_can_edit(db.session, user.id, doc)
    payload = DocumentIn.model_validate(_payload())
    if "organization_id" in payload.model_fields_set and payload.organization_id != doc.organization_id:
        _check_org_assignment(user, payload.organization_id)

    old_expiry = doc.expiry_date
    store.update_document(db.session, doc, payload.fields())
    action = "renewed" if doc.expiry_date > old_expiry else "updated"
    store.add_history(db.session, doc, user.id, action,
                      old_expiry_date=old_expiry, new_expiry_date=doc.expiry_date)
    reminders = regenerate_reminders(doc, payload.custom_reminder_date)
    audit(user.id, "update", document_id=doc.id, changes={
        "old_expiry_date": old_expiry.isoformat(),
        "new_expiry_date": doc.expiry_date.isoformat(),
    })

    data = _document_view(doc)
    data["reminders"] = [r.to_dict() for r in reminders]
    return jsonify(data)


@app.route("/documents/<int:doc_id>", methods=["DELETE"])
@login_required
def delete_document(user, doc_id):
    doc = store.get_document(db.session, user.id, doc_id)
    store.ensure_can_delete(db.session, user.id, doc)
    name, image_path = doc.name, doc.image_path

    store.delete_document(db.session, doc)
    if image_path:
        remove_file(os.path.join(app.config["UPLOAD_FOLDER"], image_path))
    audit(user.id, "delete", document_id=doc_id, changes={"name": name})
    return jsonify({"message": "deleted"})


@app.route("/documents/<int:doc_id>/history")
@login_required
def document_history(user, doc_id):
    doc = store.get_document(db.session, user.id, doc_id)
    return jsonify([h.to_dict() for h in store.list_history(db.session, doc.id)])


@app.route("/documents/<int:doc_id>/reminders")
@login_required
def document_reminders(user, doc_id):
    doc = store.get_document(db.session, user.id, doc_id)
    return jsonify([r.to_dict() for r in store.list_reminders(db.session, doc.user_id, document_id=doc.id)])


@app.route("/documents/<int:doc_id>/image", methods=["POST"])
@login_required
def upload_image(user, doc_id):
    doc = store.get_document(db.session, user.id, doc_id)
    store.ensure_can_edit(db.session, user.id, doc)

    if "file" not in request.files:
        return jsonify({"error": "no file provided"}), 400
    file = request.files["file"]
    if not file.filename:
        return jsonify({"error": "empty filename"}), 400
    if not allowed(file.filename):
        return jsonify({"error": "invalid file type"}), 400

    nonce_b64, cipher_b64 = encrypt_bytes(file.read())
    stored_name = str(uuid.uuid4()) + ".bin"
    save_file_bytes(os.path.join(app.config["UPLOAD_FOLDER"], stored_name), cipher_b64)

    previous = doc.image_path
    store.attach_image(db.session, doc, stored_name, nonce_b64, secure_filename(file.filename))
    if previous:
        remove_file(os.path.join(app.config["UPLOAD_FOLDER"], previous))
    audit(user.id, "upload_image", document_id=doc.id, changes={"filename": doc.image_filename})
    return jsonify(doc.to_dict()), 201


@app.route("/documents/<int:doc_id>/image", methods=["GET"])
@login_required
def download_image(user, doc_id):
    doc = store.get_document(db.session, user.id, doc_id)
    if not doc.image_path:
        return jsonify({"error": "no image stored"}), 404
    cipher_b64 = read_file_bytes_as_b64(os.path.join(app.config["UPLOAD_FOLDER"], doc.image_path))
    plaintext = decrypt_bytes(doc.image_nonce_b64, cipher_b64)
    return send_file(io.BytesIO(plaintext), as_attachment=True, download_name=doc.image_filename)


def _sse(event, data):
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@app.route("/documents/stream")
@login_required
def document_stream(user):
    """Server-sent events: the full document list again after every change."""
    user_id = user.id
    watcher = store.DocumentWatcher(change_feed, user_id, lambda: store.list_documents(db.session, user_id))
    changes = queue.Queue()
    subscription = change_feed.subscribe(user_id, lambda event, doc_id: changes.put((event, doc_id)))

    @stream_with_context
    def events():
        try:
            yield _sse("snapshot", [d.to_dict() for d in watcher.documents])
            while True:
                try:
                    event_type, document_id = changes.get(timeout=STREAM_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                db.session.rollback()  # end the read transaction so the refetch sees the commit
                yield _sse("documents", {
                    "event": event_type,
                    "document_id": document_id,
                    "documents": [d.to_dict() for d in watcher.documents],
                })
        finally:
            subscription.unsubscribe()
            watcher.close()

    return Response(events(), mimetype="text/event-stream")


# ==========================================================
# EXPORT + DASHBOARD
# ==========================================================
@app.route("/export/csv")
@login_required
def export_csv(user):
    return csv_download(store.list_documents(db.session, user.id))


@app.route("/export/json")
@login_required
def export_json(user):
    return json_download(store.list_documents(db.session, user.id))


@app.route("/dashboard")
@login_required
def dashboard(user):
    today = date.today()
    docs = store.list_documents(db.session, user.id, sort_by="expiry_date")
    upcoming = [d for d in docs if d.expiry_date >= today][:TIMELINE_SIZE]
    return jsonify({
        "stats": summarize(docs, today),
        "timeline": [_document_view(d, today) for d in upcoming],
    })


# ==========================================================
# REMINDERS + NOTIFICATIONS
# ==========================================================
@app.route("/reminders")
@login_required
def list_reminders(user):
    pending = request.args.get("pending", "false").lower() == "true"
    reminders = store.list_reminders(db.session, user.id, pending_only=pending)
    out = []
    for r in reminders:
        data = r.to_dict()
        data["document_name"] = r.document.name
        data["document_type"] = r.document.document_type
        out.append(data)
    return jsonify(out)


@app.route("/notifications/schedule", methods=["POST"])
@login_required
def schedule_notifications(user):
    count = schedule_local_notifications(db.session, user.id, app.extensions["push_bridge"])
    return jsonify({"scheduled": count})


def run_reminder_email_job():
    with app.app_context():
        send_reminder_emails(db.session, base_url=app.config["APP_BASE_URL"])


if not scheduler.get_job("reminder_email_job"):
    scheduler.add_job(run_reminder_email_job, "cron", hour=app.config["REMINDER_EMAIL_HOUR"],
                      id="reminder_email_job", replace_existing=True)


# ==========================================================
# AI ADVISORY ROUTES
# ==========================================================
def _suggestion_candidates(user):
    today = date.today()
    docs = [d for d in store.list_documents(db.session, user.id) if needs_attention(d.expiry_date, today)]
    candidates = []
    for d in docs:
        data = d.to_dict()
        data["daysUntilExpiry"] = days_until_expiry(d.expiry_date, today)
        candidates.append(data)
    return candidates


@app.route("/ai/analyze", methods=["POST"])
@login_required
def ai_analyze(user):
    _check_body_size(app.config["MAX_ANALYSIS_BYTES"])
    req = AnalysisRequest.model_validate(_payload())
    client = app.extensions["advisory"]

    if req.analysis_type == "renewal_suggestions":
        candidates = _suggestion_candidates(user)
        if not candidates:
            return jsonify({"suggestions": []})
        return jsonify(client.suggest_renewals(candidates))

    if req.document_id is None:
        return jsonify({"success": False, "error": "document_id required"}), 400
    doc = store.get_document(db.session, user.id, req.document_id)
    analysis = client.analyze(req.analysis_type, doc.to_dict(), _profile_country(user))
    return jsonify({"success": True, "analysis": analysis})


@app.route("/ai/renewal-suggestions", methods=["POST"])
@login_required
def ai_renewal_suggestions(user):
    candidates = _suggestion_candidates(user)
    if not candidates:
        return jsonify({"suggestions": []})
    return jsonify(app.extensions["advisory"].suggest_renewals(candidates))


@app.route("/ai/scan", methods=["POST"])
@login_required
def ai_scan(user):
    _check_body_size(app.config["MAX_SCAN_BYTES"])
    req = ScanRequest.model_validate(_payload())
    country = req.country or _profile_country(user)
    data = app.extensions["advisory"].scan(req.imageBase64, country)
    return jsonify({"success": True, "data": data})


@app.route("/ai/advisor", methods=["POST"])
@login_required
def ai_advisor(user):
    req = AdvisorRequest.model_validate(_payload())
    user_docs = [d.to_dict() for d in store.list_documents(db.session, user.id)]
    advice = app.extensions["advisory"].advise(
        question=req.question,
        document_type=req.documentType,
        document_name=req.documentName,
        expiry_date=req.expiryDate.isoformat() if req.expiryDate else None,
        user_documents=user_docs,
    )
    return jsonify({"advice": advice})


# ==========================================================
# PROFILE, FEEDBACK, AUDIT
# ==========================================================
@app.route("/profile", methods=["GET"])
@login_required
def get_profile(user):
    profile = store.get_profile(db.session, user.id) or store.create_profile(db.session, user)
    return jsonify(profile.to_dict())


@app.route("/profile", methods=["PUT"])
@login_required
def update_profile(user):
    changes = ProfileUpdate.model_validate(_payload()).model_dump(exclude_unset=True)
    profile = store.get_profile(db.session, user.id) or store.create_profile(db.session, user)
    store.update_profile(db.session, profile, changes)
    return jsonify(profile.to_dict())


@app.route("/feedback", methods=["POST"])
@login_required
def submit_feedback(user):
    fb = FeedbackIn.model_validate(_payload())
    audit(user.id, "user_feedback", entity_type="feedback", changes={
        "category": fb.category,
        "feedback": fb.feedback,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    return jsonify({"message": "Your feedback has been submitted successfully"}), 201


@app.route("/audit-logs")
@login_required
def audit_logs(user):
    return jsonify([a.to_dict() for a in store.list_audit_logs(db.session, user.id)])


# ==========================================================
# ORGANIZATIONS
# ==========================================================
@app.route("/organizations", methods=["GET"])
@login_required
def list_organizations(user):
    out = []
    for org in store.list_organizations(db.session, user.id):
        data = org.to_dict()
        data["role"] = store.member_role(db.session, org.id, user.id)
        out.append(data)
    return jsonify(out)


@app.route("/organizations", methods=["POST"])
@login_required
def create_organization(user):
    req = OrganizationIn.model_validate(_payload())
    org = store.create_organization(db.session, user.id, req.name.strip())
    audit(user.id, "create", entity_type="organization", changes={"name": org.name})
    return jsonify(org.to_dict()), 201


@app.route("/organizations/<int:org_id>", methods=["DELETE"])
@login_required
def delete_organization(user, org_id):
    org = store.get_organization(db.session, org_id)
    store.ensure_org_owner(org, user.id)
    store.delete_organization(db.session, org)
    audit(user.id, "delete", entity_type="organization", changes={"organization_id": org_id})
    return jsonify({"message": "Organization deleted"})


@app.route("/organizations/<int:org_id>/members", methods=["GET"])
@login_required
def list_members(user, org_id):
    org = store.get_organization(db.session, org_id)
    if org.owner_id != user.id and store.member_role(db.session, org.id, user.id) is None:
        raise store.PermissionDenied("You are not a member of this organization")
    out = []
    for member in store.list_members(db.session, org.id):
        data = member.to_dict()
        profile = store.get_profile(db.session, member.user_id)
        data["display_name"] = profile.display_name if profile else None
        out.append(data)
    return jsonify(out)


@app.route("/organizations/<int:org_id>/members", methods=["POST"])
@login_required
def add_member(user, org_id):
    org = store.get_organization(db.session, org_id)
    store.ensure_org_admin(db.session, org, user.id)
    req = MemberIn.model_validate(_payload())
    member = store.add_member(db.session, org, req.email.strip(), req.role.value)
    return jsonify(member.to_dict()), 201


@app.route("/organizations/<int:org_id>/members/<int:member_id>", methods=["PUT"])
@login_required
def update_member_role(user, org_id, member_id):
    org = store.get_organization(db.session, org_id)
    store.ensure_org_admin(db.session, org, user.id)
    req = RoleUpdate.model_validate(_payload())
    member = store.update_member_role(db.session, store.get_member(db.session, org, member_id), req.role.value)
    return jsonify(member.to_dict())


@app.route("/organizations/<int:org_id>/members/<int:member_id>", methods=["DELETE"])
@login_required
def remove_member(user, org_id, member_id):
    org = store.get_organization(db.session, org_id)
    store.ensure_org_admin(db.session, org, user.id)
    store.remove_member(db.session, store.get_member(db.session, org, member_id))
    return jsonify({"message": "Member removed from organization"})


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=8080, debug=True)
