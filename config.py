import os
from dotenv import load_dotenv
load_dotenv()

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
UPLOAD_DIR = os.getenv("UPLOAD_DIR") or os.path.join(BASE_DIR, "uploads")
os.makedirs(UPLOAD_DIR, exist_ok=True)


def _flag(name, default="false"):
    return (os.getenv(name) or default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "dev-secret")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL") or f"sqlite:///{os.path.join(BASE_DIR, 'app.db')}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    UPLOAD_FOLDER = UPLOAD_DIR
    ALLOWED_EXT = {"pdf", "png", "jpg", "jpeg"}

    # AES-256-GCM key in base64 (decode before use)
    ENCRYPTION_KEY_B64 = os.getenv("ENCRYPTION_KEY")

    # SMTP (optional)
    SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
    SMTP_PORT = int(os.getenv("SMTP_PORT") or 587)
    SMTP_USER = os.getenv("SMTP_USER")
    SMTP_PASS = os.getenv("SMTP_PASS")
    FROM_EMAIL = os.getenv("FROM_EMAIL") or os.getenv("SMTP_USER")

    # LLM gateway (OpenAI-compatible chat completions)
    AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1/chat/completions")
    AI_GATEWAY_API_KEY = os.getenv("AI_GATEWAY_API_KEY")
    AI_MODEL = os.getenv("AI_MODEL", "google/gemini-2.5-flash")
    AI_REQUEST_TIMEOUT = float(os.getenv("AI_REQUEST_TIMEOUT")) if os.getenv("AI_REQUEST_TIMEOUT") else None
    MAX_ANALYSIS_BYTES = 5 * 1024 * 1024
    MAX_SCAN_BYTES = 15 * 1024 * 1024

    # Push bridge + deep links
    PUSH_WEBHOOK_URL = os.getenv("PUSH_WEBHOOK_URL")
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:8080")

    # Background jobs
    SCHEDULER_ENABLED = _flag("SCHEDULER_ENABLED", "true")
    REMINDER_EMAIL_HOUR = int(os.getenv("REMINDER_EMAIL_HOUR") or 8)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON = _flag("LOG_JSON")
