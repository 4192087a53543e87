import csv
import io
import json
from datetime import date, datetime, timedelta

import pytest

import store
from app import allowed
from expiry import ExpiryStatus, classify, days_until_expiry, needs_attention, summarize
from export import CSV_HEADERS, to_csv, to_json
from models import AuditLog, Document, DocumentHistory, Reminder, User, db
from reminders import schedule, stage_offsets
from utils import audit, decrypt_bytes, encrypt_bytes

TODAY = date(2026, 3, 1)


def make_user(email="owner@example.com"):
    user = User(email=email, password_hash="x")
    db.session.add(user)
    db.session.commit()
    return user


def make_doc(user, **overrides):
    fields = {
        "name": "Driver's License",
        "document_type": "license",
        "issuing_authority": "DMV",
        "expiry_date": TODAY + timedelta(days=60),
        "renewal_period_days": 30,
        "notes": None,
    }
    fields.update(overrides)
    return store.create_document(db.session, user.id, fields)


# ==========================================================
# ✅ EXPIRY CLASSIFIER
# ==========================================================
def test_classify_boundaries():
    assert classify(TODAY - timedelta(days=1), TODAY) is ExpiryStatus.EXPIRED
    assert classify(TODAY, TODAY) is ExpiryStatus.EXPIRING_SOON
    assert classify(TODAY + timedelta(days=30), TODAY) is ExpiryStatus.EXPIRING_SOON
    assert classify(TODAY + timedelta(days=31), TODAY) is ExpiryStatus.VALID


def test_classify_matches_day_difference():
    for offset in range(-40, 60):
        expiry = TODAY + timedelta(days=offset)
        status = classify(expiry, TODAY)
        if expiry < TODAY:
            assert status is ExpiryStatus.EXPIRED
        elif offset <= 30:
            assert status is ExpiryStatus.EXPIRING_SOON
        else:
            assert status is ExpiryStatus.VALID


'''Test Case: a document that expired five days ago is expired whatever its renewal period.'''
def test_expired_five_days_ago():
    assert classify(TODAY - timedelta(days=5), TODAY) is ExpiryStatus.EXPIRED


def test_days_until_expiry_rounds_partial_days_up():
    now = datetime(2026, 3, 1, 18, 0)
    assert days_until_expiry(datetime(2026, 3, 3, 0, 0), now) == 2
    assert days_until_expiry(TODAY + timedelta(days=10), TODAY) == 10


def test_needs_attention_window():
    assert needs_attention(TODAY + timedelta(days=90), TODAY)
    assert needs_attention(TODAY - timedelta(days=30), TODAY)
    assert not needs_attention(TODAY + timedelta(days=91), TODAY)
    assert not needs_attention(TODAY - timedelta(days=31), TODAY)


def test_summarize_counts():
    class Doc:
        def __init__(self, days, kind):
            self.expiry_date = TODAY + timedelta(days=days)
            self.document_type = kind

    docs = [Doc(-3, "passport"), Doc(10, "license"), Doc(100, "license"), Doc(200, "permit")]
    stats = summarize(docs, TODAY)
    assert stats["total"] == 4
    assert (stats["expired"], stats["expiring_soon"], stats["valid"]) == (1, 1, 2)
    assert stats["by_type"] == {"passport": 1, "license": 2, "permit": 1}


# ==========================================================
# ✅ REMINDER SCHEDULER
# ==========================================================
@pytest.mark.parametrize("period, offsets", [
    (365, (60, 30, 7)),
    (90, (60, 30, 7)),
    (89, (30, 14, 3)),
    (30, (30, 14, 3)),
    (29, (14, 7, 2)),
    (14, (14, 7, 2)),
    (13, (7, 3, 1)),
    (1, (7, 3, 1)),
])
def test_stage_offsets(period, offsets):
    assert stage_offsets(period) == offsets
    expiry = TODAY + timedelta(days=120)
    dates = [r.reminder_date for r in schedule(expiry, period)]
    assert dates == [expiry - timedelta(days=d) for d in offsets]


'''Test Case: expiry in 45 days with the 14/7/2 stage lands on days 31, 38 and 43.'''
def test_schedule_scenario_mid_stage():
    expiry = TODAY + timedelta(days=45)
    dates = [r.reminder_date for r in schedule(expiry, 20)]
    assert dates == [TODAY + timedelta(days=31), TODAY + timedelta(days=38), TODAY + timedelta(days=43)]


def test_schedule_is_idempotent():
    expiry = TODAY + timedelta(days=200)
    assert schedule(expiry, 120) == schedule(expiry, 120)


def test_custom_date_appended_without_dedup():
    expiry = TODAY + timedelta(days=100)
    custom = expiry - timedelta(days=30)   # same as a computed stage
    result = schedule(expiry, 60, custom)
    assert len(result) == 4
    assert result[-1].is_custom is True
    assert all(not r.is_custom for r in result[:3])
    assert [r.reminder_date for r in result].count(custom) == 2


def test_past_dates_are_kept():
    expiry = TODAY + timedelta(days=2)
    dates = [r.reminder_date for r in schedule(expiry, 5)]
    assert dates[0] < TODAY


# ==========================================================
# ✅ EXPORT
# ==========================================================
class _Row:
    def __init__(self, **kw):
        self.__dict__.update(kw)

    def to_dict(self):
        return {"name": self.name, "expiry_date": self.expiry_date.isoformat()}


def _export_doc(**kw):
    base = dict(name="Passport", document_type="passport", issuing_authority=None,
                expiry_date=date(2030, 1, 2), renewal_period_days=None, notes=None,
                created_at=datetime(2025, 5, 6, 12, 30))
    base.update(kw)
    return _Row(**base)


'''Test Case: exporting an empty list yields only the header row.'''
def test_csv_empty_is_header_only():
    assert to_csv([]) == "Name,Type,Issuing Authority,Expiry Date,Renewal Period (Days),Notes,Created At"


def test_csv_quotes_and_defaults():
    out = to_csv([_export_doc(name='The "Big" Permit')])
    header, row = out.split("\n")
    assert header == ",".join(CSV_HEADERS)
    assert row == '"The ""Big"" Permit","passport","","2030-01-02","30","","2025-05-06"'


def test_csv_reparses_to_same_values():
    docs = [
        _export_doc(name="A, with comma", notes='says "hi"\nnext line', renewal_period_days=90),
        _export_doc(name="Plain", issuing_authority="Gov", renewal_period_days=14),
    ]
    rows = list(csv.reader(io.StringIO(to_csv(docs))))
    assert rows[0] == CSV_HEADERS
    assert rows[1][0] == "A, with comma"
    assert rows[1][4] == "90"
    assert rows[1][5] == 'says "hi"\nnext line'
    assert rows[2][2] == "Gov"


def test_json_export_is_pretty_array():
    out = to_json([_export_doc()])
    assert out.startswith("[\n  {")
    assert json.loads(out) == [{"name": "Passport", "expiry_date": "2030-01-02"}]


# ==========================================================
# ✅ STORE GATEWAY
# ==========================================================
def test_replace_reminders_is_all_or_nothing(app):
    user = make_user()
    doc = make_doc(user)
    store.replace_reminders(db.session, doc, schedule(doc.expiry_date, 30, TODAY))
    assert Reminder.query.filter_by(document_id=doc.id).count() == 4

    store.replace_reminders(db.session, doc, schedule(doc.expiry_date, 10))
    rows = Reminder.query.filter_by(document_id=doc.id).all()
    assert len(rows) == 3
    assert not any(r.is_custom for r in rows)


def test_delete_document_cascades(app):
    user = make_user()
    doc = make_doc(user)
    store.replace_reminders(db.session, doc, schedule(doc.expiry_date, 30))
    store.add_history(db.session, doc, user.id, "created", new_expiry_date=doc.expiry_date)

    store.delete_document(db.session, doc)
    assert Reminder.query.count() == 0
    assert DocumentHistory.query.count() == 0


def test_list_documents_filters_and_sorts(app):
    user = make_user()
    other = make_user("other@example.com")
    make_doc(user, name="Zeta", expiry_date=date.today() - timedelta(days=2))
    make_doc(user, name="Alpha", document_type="passport", expiry_date=date.today() + timedelta(days=300))
    make_doc(other, name="Not mine")

    names = [d.name for d in store.list_documents(db.session, user.id, sort_by="name")]
    assert names == ["Alpha", "Zeta"]
    expired = store.list_documents(db.session, user.id, status="expired")
    assert [d.name for d in expired] == ["Zeta"]
    assert [d.name for d in store.list_documents(db.session, user.id, document_type="passport")] == ["Alpha"]
    assert [d.name for d in store.list_documents(db.session, user.id, search="alp")] == ["Alpha"]


def test_get_document_hidden_from_strangers(app):
    owner = make_user()
    stranger = make_user("stranger@example.com")
    doc = make_doc(owner)
    with pytest.raises(store.NotFound):
        store.get_document(db.session, stranger.id, doc.id)


def test_org_members_share_documents(app):
    owner = make_user()
    viewer = make_user("viewer@example.com")
    org = store.create_organization(db.session, owner.id, "Family")
    assert store.member_role(db.session, org.id, owner.id) == "admin"
    store.add_member(db.session, org, "viewer@example.com", "viewer")
    doc = make_doc(owner, organization_id=org.id)

    assert store.get_document(db.session, viewer.id, doc.id).id == doc.id
    with pytest.raises(store.PermissionDenied):
        store.ensure_can_edit(db.session, viewer.id, doc)
    with pytest.raises(store.Conflict):
        store.add_member(db.session, org, "viewer@example.com", "editor")


def test_create_organization_reports_failed_admin_membership(app, monkeypatch):
    owner = make_user()
    real_commit = store._commit
    commits = []

    def commit_then_fail(session):
        commits.append(session)
        if len(commits) == 2:
            session.rollback()
            raise store.StoreError()
        real_commit(session)

    monkeypatch.setattr(store, "_commit", commit_then_fail)
    with pytest.raises(store.StoreError):
        store.create_organization(db.session, owner.id, "Family")
    assert store.list_members(db.session, store.list_organizations(db.session, owner.id)[0].id) == []


# ==========================================================
# ✅ REALTIME CHANGE FEED
# ==========================================================
@pytest.fixture
def feed(app):
    feed = store.ChangeFeed().attach(Document)
    yield feed
    feed.detach()


def test_change_feed_notifies_owner_after_commit(feed):
    user = make_user()
    other = make_user("other@example.com")
    mine, theirs = [], []
    feed.subscribe(user.id, lambda event, doc_id: mine.append((event, doc_id)))
    feed.subscribe(other.id, lambda event, doc_id: theirs.append((event, doc_id)))

    doc = make_doc(user)
    store.update_document(db.session, doc, {"notes": "changed"})
    doc_id = doc.id
    store.delete_document(db.session, doc)

    assert mine == [("INSERT", doc_id), ("UPDATE", doc_id), ("DELETE", doc_id)]
    assert theirs == []


def test_change_feed_drops_rolled_back_changes(feed):
    user = make_user()
    seen = []
    feed.subscribe(user.id, lambda event, doc_id: seen.append(event))
    db.session.add(Document(user_id=user.id, name="tmp", document_type="other", expiry_date=TODAY))
    db.session.flush()
    db.session.rollback()
    assert seen == []


def test_document_watcher_refetches_on_change(feed):
    user = make_user()
    watcher = store.DocumentWatcher(feed, user.id, lambda: store.list_documents(db.session, user.id))
    assert watcher.documents == []
    assert watcher.fetch_count == 1

    make_doc(user)
    assert len(watcher.documents) == 1
    assert watcher.fetch_count == 2
    watcher.documents
    assert watcher.fetch_count == 2

    watcher.close()
    make_doc(user, name="Second")
    assert len(watcher.documents) == 1


# ==========================================================
# ✅ ENCRYPTION / FILE TYPES / AUDIT
# ==========================================================
def test_encrypt_decrypt_roundtrip():
    data = b"Confidential Data"
    nonce_b64, cipher_b64 = encrypt_bytes(data)
    decrypted = decrypt_bytes(nonce_b64, cipher_b64)
    assert decrypted == data, "Decrypted data does not match original input"


def test_unique_ciphertexts():
    data = b"same message"
    nonce1, cipher1 = encrypt_bytes(data)
    nonce2, cipher2 = encrypt_bytes(data)
    assert nonce1 != nonce2 or cipher1 != cipher2, \
        "Encryption must produce unique outputs for identical input data"


def test_allowed_file_types():
    assert allowed("scan.pdf") is True
    assert allowed("photo.JPG") is True
    assert allowed("malware.exe") is False


def test_audit_log(app):
    """audit() writes a row with the action, entity and change payload."""
    audit(1, "user_feedback", entity_type="feedback", changes={"feedback": "nice"})
    log = AuditLog.query.filter_by(user_id=1).first()
    assert log is not None
    assert log.action == "user_feedback"
    assert log.entity_type == "feedback"
    assert log.changes == {"feedback": "nice"}
