import json

import pytest
import requests

from ai import (
    AdvisoryClient, AIError, AIRequestError, PaymentRequiredError, RateLimitError,
    parse_json_reply,
)
from conftest import FakeHTTP, FakeResponse, content_reply, tool_call_reply

DOC = {
    "id": 7,
    "name": "Passport",
    "document_type": "passport",
    "issuing_authority": "Passport Office",
    "expiry_date": "2030-01-01",
    "renewal_period_days": 90,
    "notes": None,
    "daysUntilExpiry": 120,
}


def make_client(response=None, exc=None, api_key="test-key"):
    http = FakeHTTP(response, exc)
    client = AdvisoryClient(api_key, "http://gateway.test/v1/chat/completions", "test-model", session=http)
    return client, http


# ==========================================================
# ✅ GATEWAY FAILURES
# ==========================================================
def test_rate_limit_is_its_own_error():
    client, http = make_client(FakeResponse(429, text="Too many requests"))
    with pytest.raises(RateLimitError) as exc:
        client.analyze("classify", DOC)
    assert exc.value.status_code == 429
    assert exc.value.message == "Rate limit exceeded. Please try again later."
    assert len(http.calls) == 1


def test_payment_required():
    client, _ = make_client(FakeResponse(402, text="Payment required"))
    with pytest.raises(PaymentRequiredError) as exc:
        client.analyze("cost_estimate", DOC)
    assert exc.value.status_code == 402


def test_other_status_is_generic_failure():
    client, _ = make_client(FakeResponse(500, text="upstream exploded"))
    with pytest.raises(AIError) as exc:
        client.analyze("classify", DOC)
    assert type(exc.value) is AIError
    assert exc.value.message == "Analysis failed. Please try again."


def test_network_error_is_generic_failure():
    client, _ = make_client(exc=requests.ConnectionError("refused"))
    with pytest.raises(AIError) as exc:
        client.analyze("classify", DOC)
    assert type(exc.value) is AIError


def test_missing_api_key_never_calls_gateway():
    client, http = make_client(api_key=None)
    with pytest.raises(AIError):
        client.analyze("classify", DOC)
    assert http.calls == []


# ==========================================================
# ✅ STRUCTURED ANALYSIS
# ==========================================================
'''Test Case: analyze forces the analyze_document tool and returns
    its parsed arguments.'''
def test_analyze_returns_tool_arguments():
    client, http = make_client(tool_call_reply({"priorityScore": 91, "urgencyLevel": "critical",
                                                "actionRecommendation": "Renew now", "factors": []}))
    result = client.analyze("priority_scoring", DOC, user_country="Canada")

    assert result["priorityScore"] == 91
    assert len(http.calls) == 1
    body = http.calls[0]["json"]
    assert body["model"] == "test-model"
    assert body["tool_choice"] == {"type": "function", "function": {"name": "analyze_document"}}
    params = body["tools"][0]["function"]["parameters"]
    assert params["required"] == ["priorityScore", "urgencyLevel", "actionRecommendation", "factors"]
    assert "Canada" in body["messages"][1]["content"]
    assert http.calls[0]["headers"]["Authorization"] == "Bearer test-key"


def test_analyze_computes_days_left_when_missing():
    client, http = make_client(tool_call_reply({"x": 1}))
    doc = dict(DOC, daysUntilExpiry=None, expiry_date="2000-01-01")
    client.analyze("compliance_check", doc)
    assert "Days Until Expiry: -" in http.calls[0]["json"]["messages"][1]["content"]


def test_analyze_without_tool_call_fails():
    client, _ = make_client(content_reply("I think it is a passport."))
    with pytest.raises(AIError):
        client.analyze("classify", DOC)


@pytest.mark.parametrize("analysis_type, country", [
    ("horoscope", None),
    ("classify", "x" * 101),
])
def test_analyze_rejects_bad_input(analysis_type, country):
    client, http = make_client()
    with pytest.raises(AIRequestError):
        client.analyze(analysis_type, DOC, user_country=country)
    assert http.calls == []


# ==========================================================
# ✅ SUGGESTIONS, SCAN, ADVISOR
# ==========================================================
def test_suggestions_parse_fenced_json():
    reply = "Here you go:\n```json\n" + json.dumps({"suggestions": [
        {"documentId": "7", "priority": "high", "suggestion": "Renew", "actionItems": ["Book"]}
    ]}) + "\n```"
    client, http = make_client(content_reply(reply))
    result = client.suggest_renewals([DOC])
    assert result["suggestions"][0]["priority"] == "high"
    assert "tools" not in http.calls[0]["json"]


def test_suggestions_wrap_bare_list():
    client, _ = make_client(content_reply(json.dumps([{"documentId": "7"}])))
    assert client.suggest_renewals([DOC]) == {"suggestions": [{"documentId": "7"}]}


def test_scan_extracts_json_from_prose():
    reply = ('Sure! {"document_type": "license", "name": "Driver\'s License", '
             '"expiry_date": "2027-05-01", "renewal_period_days": 45} Hope that helps.')
    client, http = make_client(content_reply(reply))
    data = client.scan("data:image/png;base64,AAAA", country="Spain")
    assert data["renewal_period_days"] == 45
    user_content = http.calls[0]["json"]["messages"][1]["content"]
    assert user_content[1]["image_url"]["url"] == "data:image/png;base64,AAAA"
    assert "Spain" in http.calls[0]["json"]["messages"][0]["content"]


def test_scan_without_json_fails():
    client, _ = make_client(content_reply("I cannot read this image."))
    with pytest.raises(AIError) as exc:
        client.scan("data:image/png;base64,AAAA")
    assert exc.value.message == "Failed to process document. Please try again."


def test_advisor_builds_question_from_document_type():
    client, http = make_client(content_reply("Bring two photos."))
    advice = client.advise(document_type="passport", document_name="My Passport",
                           expiry_date="2030-01-01", user_documents=[DOC])
    assert advice == "Bring two photos."
    messages = http.calls[0]["json"]["messages"]
    assert messages[1]["content"] == \
        "What documents are required to renew a passport (My Passport) that expires on 2030-01-01?"
    assert "- Passport (passport): expires on 2030-01-01" in messages[0]["content"]


def test_advisor_needs_question_or_type():
    client, _ = make_client()
    with pytest.raises(AIRequestError):
        client.advise()


def test_parse_json_reply_garbage():
    with pytest.raises(AIError):
        parse_json_reply("no json here")
