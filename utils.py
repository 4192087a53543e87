import os
import base64
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from flask import has_request_context, request
from config import Config
from models import db
import store

logger = logging.getLogger(__name__)

# --- Encryption setup ---
if not Config.ENCRYPTION_KEY_B64:
    raise RuntimeError("ENCRYPTION_KEY not set in .env; generate one using base64 key generator")

ENCRYPTION_KEY = base64.b64decode(Config.ENCRYPTION_KEY_B64)


# ==========================================================
# ENCRYPTION / DECRYPTION
# ==========================================================
def encrypt_bytes(data: bytes):
    """Encrypt file bytes using AES-GCM (256-bit)."""
    aesgcm = AESGCM(ENCRYPTION_KEY)
    nonce = os.urandom(12)  # 96-bit nonce
    ciphertext = aesgcm.encrypt(nonce, data, None)
    return base64.b64encode(nonce).decode(), base64.b64encode(ciphertext).decode()


def decrypt_bytes(nonce_b64: str, cipher_b64: str) -> bytes:
    """Decrypt file bytes using AES-GCM."""
    aesgcm = AESGCM(ENCRYPTION_KEY)
    nonce = base64.b64decode(nonce_b64)
    ciphertext = base64.b64decode(cipher_b64)
    return aesgcm.decrypt(nonce, ciphertext, None)


# ==========================================================
# DOCUMENT IMAGES
# ==========================================================
def save_file_bytes(stored_path: str, cipher_b64: str):
    """Save encrypted base64 data to disk."""
    with open(stored_path, "wb") as f:
        f.write(base64.b64decode(cipher_b64))


def read_file_bytes_as_b64(stored_path: str) -> str:
    with open(stored_path, "rb") as f:
        return base64.b64encode(f.read()).decode()


def remove_file(stored_path: str):
    try:
        os.remove(stored_path)
    except FileNotFoundError:
        logger.warning("Stored image already missing: %s", stored_path)


# ==========================================================
# AUDIT LOGGING
# ==========================================================
def audit(user_id: int, action: str, entity_type: str = "document", document_id=None, changes=None):
    """Record a user action, with the caller's IP and user agent when inside a request."""
    ip_address = user_agent = None
    if has_request_context():
        ip_address = request.remote_addr
        user_agent = request.headers.get("User-Agent")
    return store.record_audit(
        db.session, user_id, action, entity_type,
        document_id=document_id, changes=changes,
        ip_address=ip_address, user_agent=user_agent,
    )


# ==========================================================
# EMAIL SENDING (UTF-8 SAFE)
# ==========================================================
def send_email(to_email, subject, body):
    """
    Send a plain-text UTF-8 email over SMTP with STARTTLS.
    Returns False instead of raising so batch jobs can count failures.
    """
    smtp_host = Config.SMTP_HOST
    smtp_port = Config.SMTP_PORT
    smtp_user = Config.SMTP_USER
    from_email = Config.FROM_EMAIL

    logger.info("Sending email via %s:%s as %s", smtp_host, smtp_port, smtp_user)

    try:
        msg = MIMEMultipart()
        msg["From"] = formataddr(("DocExpiry Reminders", from_email))
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", "utf-8"))

        with smtplib.SMTP(smtp_host, smtp_port, timeout=20) as server:
            server.starttls()
            server.login(smtp_user, Config.SMTP_PASS)
            server.send_message(msg)

        logger.info("Email sent to %s", to_email)
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email send failed to %s: %s", to_email, e)
        return False
