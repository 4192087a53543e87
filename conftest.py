import base64
import os
import tempfile

# must be set before config.py is imported
os.environ.setdefault("ENCRYPTION_KEY", base64.b64encode(b"0123456789abcdef0123456789abcdef").decode())
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="docexpiry-uploads-")

import pytest

from app import app as flask_app
from models import db


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


def signup_and_login(client, email="user@example.com", password="pass"):
    client.post("/signup", data={"email": email, "password": password})
    resp = client.post("/login", data={"email": email, "password": password})
    return resp.get_json()["user_id"]


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (str(payload) if payload is not None else "")

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeHTTP:
    """Stands in for requests.Session; records every POST."""

    def __init__(self, response=None, exc=None):
        self.response = response or FakeResponse(200, {"choices": [{"message": {"content": ""}}]})
        self.exc = exc
        self.calls = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response


def tool_call_reply(arguments):
    import json
    return FakeResponse(200, {"choices": [{"message": {"tool_calls": [
        {"type": "function", "function": {"name": "analyze_document", "arguments": json.dumps(arguments)}}
    ]}}]})


def content_reply(content):
    return FakeResponse(200, {"choices": [{"message": {"content": content}}]})
