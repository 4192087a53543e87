"""
Proxy to the LLM gateway for document analysis, image scans and renewal advice.

Each call makes exactly one request to the gateway. The gateway's rate-limit
(429) and payment-required (402) replies get their own exceptions; anything
else that goes wrong is reported as a generic failure and only detailed in the
log.
"""

import json
import logging
import re
from datetime import date

import requests

from expiry import days_until_expiry

logger = logging.getLogger(__name__)

ANALYSIS_TYPES = (
    "classify",
    "renewal_prediction",
    "priority_scoring",
    "cost_estimate",
    "compliance_check",
    "full_analysis",
    "renewal_requirements",
    "renewal_suggestions",
)
MAX_COUNTRY_LENGTH = 100

_URGENCY = {"type": "string", "enum": ["low", "medium", "high", "critical"]}
_STRINGS = {"type": "array", "items": {"type": "string"}}


class AIError(Exception):
    status_code = 500
    default_message = "Analysis failed. Please try again."

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class AIRequestError(AIError):
    status_code = 400
    default_message = "Invalid request"


class RequestTooLarge(AIError):
    status_code = 413
    default_message = "Request too large"


class RateLimitError(AIError):
    status_code = 429
    default_message = "Rate limit exceeded. Please try again later."


class PaymentRequiredError(AIError):
    status_code = 402
    default_message = "Payment required. Please add credits to your workspace."


def validate_country(country):
    if country is not None and (not isinstance(country, str) or len(country) > MAX_COUNTRY_LENGTH):
        raise AIRequestError("Invalid country format")
    return country


def _with_days_left(document_data, today=None):
    data = dict(document_data)
    if data.get("daysUntilExpiry") is None and data.get("expiry_date"):
        expiry = data["expiry_date"]
        if isinstance(expiry, str):
            expiry = date.fromisoformat(expiry)
        data["daysUntilExpiry"] = days_until_expiry(expiry, today)
    return data


def _country_context(country):
    if not country:
        return ""
    return (f"\nUser's Country: {country} - Consider country-specific regulations, "
            "costs, and procedures.")


# ==========================================================
# PROMPTS
# ==========================================================
def _classify_prompt(d, ctx):
    system = ("You are an expert document classification AI with deep knowledge of international "
              "document types, legal requirements, and categorization standards.")
    user = (f"Analyze this document and provide detailed classification:\n"
            f"Name: {d.get('name')}\n"
            f"Current Type: {d.get('document_type')}\n"
            f"Issuing Authority: {d.get('issuing_authority') or 'Not specified'}\n"
            f"Notes: {d.get('notes') or 'None'}\n"
            f"Expiry Date: {d.get('expiry_date')}{ctx}\n\n"
            "Consider: document purpose, legal category, regulatory requirements, and "
            "international standards.")
    params = {
        "suggestedType": {"type": "string", "description": "Most appropriate document type"},
        "confidence": {"type": "number", "description": "Confidence level 0-1"},
        "reasoning": {"type": "string", "description": "Explanation for the classification"},
        "alternativeTypes": dict(_STRINGS, description="Other possible classifications"),
    }
    return system, user, params


def _renewal_prediction_prompt(d, ctx):
    system = ("You are a renewal planning expert who knows government processing times, "
              "international regulations and good practice for document renewals.")
    user = (f"Analyze renewal strategy for this document:\n"
            f"Document: {d.get('name')}\n"
            f"Type: {d.get('document_type')}\n"
            f"Current Expiry: {d.get('expiry_date')}\n"
            f"Days Until Expiry: {d.get('daysUntilExpiry')}\n"
            f"Current Reminder Period: {d.get('renewal_period_days')} days{ctx}\n\n"
            "Consider: processing delays, peak seasons, required documentation, and typical "
            "complications.")
    params = {
        "suggestedReminderDays": {"type": "number",
                                  "description": "Days before expiry to start the renewal"},
        "reasoning": {"type": "string", "description": "Rationale for the recommendation"},
        "urgencyLevel": _URGENCY,
        "estimatedProcessingTime": {"type": "string", "description": "Expected processing duration"},
        "renewalTips": dict(_STRINGS, description="Practical renewal tips"),
    }
    return system, user, params


def _priority_scoring_prompt(d, ctx):
    system = ("You are a document priority assessment specialist. You weigh expiry timeline, "
              "document importance and the consequences of letting it lapse.")
    user = (f"Assess priority for this document:\n"
            f"Name: {d.get('name')}\n"
            f"Type: {d.get('document_type')}\n"
            f"Days Until Expiry: {d.get('daysUntilExpiry')}\n"
            f"Issuing Authority: {d.get('issuing_authority') or 'Unknown'}{ctx}\n\n"
            "Consider: legal consequences of expiry, replacement difficulty, daily usage "
            "importance, and grace periods.")
    params = {
        "priorityScore": {"type": "number", "description": "Priority score 0-100"},
        "urgencyLevel": _URGENCY,
        "actionRecommendation": {"type": "string", "description": "Specific action to take"},
        "factors": dict(_STRINGS, description="Key factors affecting priority"),
    }
    return system, user, params


def _cost_estimate_prompt(d, ctx):
    system = ("You are a financial analyst specializing in document renewal costs, government "
              "fees and related expenses across countries.")
    user = (f"Estimate renewal costs for this document:\n"
            f"Document: {d.get('name')}\n"
            f"Type: {d.get('document_type')}\n"
            f"Issuing Authority: {d.get('issuing_authority') or 'Unknown'}{ctx}\n\n"
            "Provide realistic cost estimates including government fees, service charges, and "
            "potential additional costs.")
    params = {
        "estimatedCost": {"type": "string", "description": "Cost range in local currency"},
        "additionalFees": dict(_STRINGS, description="Potential additional fees"),
        "costSavingTips": dict(_STRINGS, description="Ways to reduce renewal costs"),
    }
    return system, user, params


def _compliance_check_prompt(d, ctx):
    system = ("You are a legal compliance expert familiar with document requirements, renewal "
              "regulations and legal obligations across jurisdictions.")
    user = (f"Check compliance requirements for this document:\n"
            f"Document: {d.get('name')}\n"
            f"Type: {d.get('document_type')}\n"
            f"Days Until Expiry: {d.get('daysUntilExpiry')}\n"
            f"Issuing Authority: {d.get('issuing_authority') or 'Unknown'}{ctx}\n\n"
            "Identify: legal requirements, necessary documentation, deadlines, and potential "
            "compliance issues.")
    params = {
        "isCompliant": {"type": "boolean", "description": "Current compliance status"},
        "complianceDetails": {"type": "string", "description": "Compliance explanation"},
        "requiredDocuments": dict(_STRINGS, description="Documents needed for renewal"),
        "warnings": dict(_STRINGS, description="Important compliance warnings"),
    }
    return system, user, params


def _full_analysis_prompt(d, ctx):
    system = ("You are a document management assistant giving a complete analysis: "
              "classification, renewal strategy, costs, compliance and next steps.")
    user = (f"Provide complete analysis for this document:\n"
            f"Document: {d.get('name')}\n"
            f"Type: {d.get('document_type')}\n"
            f"Expiry Date: {d.get('expiry_date')}\n"
            f"Days Until Expiry: {d.get('daysUntilExpiry')}\n"
            f"Issuing Authority: {d.get('issuing_authority') or 'Unknown'}\n"
            f"Notes: {d.get('notes') or 'None'}{ctx}\n\n"
            "Deliver: overview, key insights, priority assessment, cost considerations, and a "
            "step-by-step action plan.")
    params = {
        "summary": {"type": "string", "description": "Overview of the document situation"},
        "keyInsights": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"title": {"type": "string"}, "description": {"type": "string"}},
            },
            "description": "Important insights about the document",
        },
        "actionPlan": dict(_STRINGS, description="Step-by-step action plan"),
        "urgencyLevel": _URGENCY,
    }
    return system, user, params


def _renewal_requirements_prompt(d, ctx):
    system = ("You are a document renewal specialist who knows exactly which documents, items "
              "and steps each renewal needs in different countries and jurisdictions.")
    user = (f"Identify all documents and items required for renewal of this document:\n"
            f"Document: {d.get('name')}\n"
            f"Type: {d.get('document_type')}\n"
            f"Expiry Date: {d.get('expiry_date')}\n"
            f"Days Until Expiry: {d.get('daysUntilExpiry')}\n"
            f"Issuing Authority: {d.get('issuing_authority') or 'Unknown'}{ctx}\n\n"
            "Provide a checklist of required documents (originals, copies, certified copies), "
            "identification, photo specifications, fees and payment methods, forms, medical "
            "certificates, proof of residence, and anything specific to the document type and "
            "country. Include quantities (e.g. \"2 passport-sized photos\").")
    params = {
        "requiredDocuments": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "category": {"type": "string",
                                 "description": "Category like 'Identity Proof', 'Photos', 'Fees'"},
                    "items": dict(_STRINGS, description="Specific items"),
                },
            },
            "description": "Categorized list of required documents and items",
        },
        "processingSteps": dict(_STRINGS, description="Step-by-step renewal process"),
        "importantNotes": dict(_STRINGS, description="Critical things to remember"),
        "estimatedTimeframe": {"type": "string", "description": "Expected processing time"},
        "whereToApply": {"type": "string", "description": "Where to submit the application"},
    }
    return system, user, params


PROMPT_BUILDERS = {
    "classify": _classify_prompt,
    "renewal_prediction": _renewal_prediction_prompt,
    "priority_scoring": _priority_scoring_prompt,
    "cost_estimate": _cost_estimate_prompt,
    "compliance_check": _compliance_check_prompt,
    "full_analysis": _full_analysis_prompt,
    "renewal_requirements": _renewal_requirements_prompt,
}

SUGGESTIONS_SYSTEM = "You are a helpful document renewal assistant. Always respond with valid JSON."

SCAN_SYSTEM = """You extract document data from images and suggest how early the owner should be reminded to renew.

Extract:
- document_type: one of (license, passport, permit, insurance, certification, other)
- name: the document name/title
- issuing_authority: the organization that issued the document
- expiry_date: expiration date in YYYY-MM-DD format
- renewal_period_days: suggested reminder days before expiry

Base renewal_period_days on document type, processing time, local regulations and how complex the renewal is.
Typical ranges: passports 90-180, driver's licenses 30-60, insurance 30-45, work permits/visas 60-90,
professional certifications 60-90, vehicle registration 30, simple permits 14-30.

{country_line}

Respond ONLY with valid JSON:
{{"document_type": "license", "name": "Driver's License", "issuing_authority": "Department of Motor Vehicles", "expiry_date": "2025-12-31", "renewal_period_days": 45}}"""

ADVISOR_SYSTEM = """You are a helpful document renewal advisor.
Give clear, concise information about document renewal requirements.

Context about the user's documents:
{documents}

When advising about renewals:
1. List the documents required for renewal
2. Mention typical processing times
3. Point out deadlines or other considerations
4. Suggest documents the user may already have that can be used
5. Be specific to the document type mentioned

Keep responses clear, organized, and actionable."""

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```")
_BARE_JSON = re.compile(r"\{[\s\S]*\}")


def _suggestions_prompt(documents):
    lines = []
    for doc in documents:
        lines.append(
            f"- Document ID: {doc.get('id')}\n"
            f"- Document: {doc.get('name')}\n"
            f"- Type: {doc.get('document_type')}\n"
            f"- Expiry Date: {doc.get('expiry_date')}\n"
            f"- Days Until Expiry: {doc.get('daysUntilExpiry')}\n"
            f"- Issuing Authority: {doc.get('issuing_authority') or 'Not specified'}\n"
        )
    return (
        "Analyze the following documents and provide actionable renewal suggestions.\n\n"
        "Documents requiring attention:\n" + "\n".join(lines) + "\n"
        "For each document, provide:\n"
        "1. Priority level (high/medium/low) based on urgency\n"
        "2. A concise suggestion explaining what needs to be done\n"
        "3. 2-3 specific action items to complete the renewal\n\n"
        "Respond with a JSON object of this shape:\n"
        '{"suggestions": [{"documentId": "id", "documentName": "string", '
        '"priority": "high|medium|low", "suggestion": "brief explanation", '
        '"actionItems": ["item1", "item2"]}]}'
    )


def parse_json_reply(content):
    """Parse a model reply that should be JSON, possibly inside a code fence."""
    try:
        return json.loads(content)
    except (TypeError, ValueError):
        pass
    for pattern in (_FENCED_JSON, _BARE_JSON):
        match = pattern.search(content or "")
        if match:
            try:
                return json.loads(match.group(1) if pattern is _FENCED_JSON else match.group(0))
            except ValueError:
                continue
    raise AIError()


# ==========================================================
# CLIENT
# ==========================================================
class AdvisoryClient:
    def __init__(self, api_key, gateway_url, model, timeout=None, session=None):
        self.api_key = api_key
        self.gateway_url = gateway_url
        self.model = model
        self.timeout = timeout
        self.http = session or requests.Session()

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config["AI_GATEWAY_API_KEY"],
            gateway_url=config["AI_GATEWAY_URL"],
            model=config["AI_MODEL"],
            timeout=config.get("AI_REQUEST_TIMEOUT"),
        )

    def _complete(self, messages, **extra):
        if not self.api_key:
            logger.error("AI gateway API key is not configured")
            raise AIError()

        body = {"model": self.model, "messages": messages}
        body.update(extra)
        try:
            response = self.http.post(
                self.gateway_url,
                headers={"Authorization": f"Bearer {self.api_key}",
                         "Content-Type": "application/json"},
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("AI gateway unreachable: %s", e)
            raise AIError() from e

        if response.status_code == 429:
            logger.warning("AI gateway rate limit hit")
            raise RateLimitError()
        if response.status_code == 402:
            logger.warning("AI gateway reports payment required")
            raise PaymentRequiredError()
        if not response.ok:
            logger.error("AI gateway error: %s %s", response.status_code, response.text)
            raise AIError()

        try:
            return response.json()["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error("Malformed AI gateway response: %s", e)
            raise AIError() from e

    def analyze(self, analysis_type, document_data, user_country=None):
        """Run one structured analysis of a single document."""
        if analysis_type not in ANALYSIS_TYPES:
            raise AIRequestError("Invalid analysis type")
        validate_country(user_country)
        if analysis_type == "renewal_suggestions":
            raise AIRequestError("renewal_suggestions requires a list of documents")

        data = _with_days_left(document_data)
        system, user, params = PROMPT_BUILDERS[analysis_type](data, _country_context(user_country))
        logger.info("Starting %s analysis for document: %s", analysis_type, data.get("name"))

        message = self._complete(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            tools=[{
                "type": "function",
                "function": {
                    "name": "analyze_document",
                    "description": "Analyze document and provide structured, actionable insights",
                    "parameters": {
                        "type": "object",
                        "properties": params,
                        "required": list(params),
                        "additionalProperties": False,
                    },
                },
            }],
            tool_choice={"type": "function", "function": {"name": "analyze_document"}},
        )

        tool_calls = message.get("tool_calls") or []
        if not tool_calls:
            logger.error("No tool call in %s analysis response", analysis_type)
            raise AIError()
        try:
            return json.loads(tool_calls[0]["function"]["arguments"])
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Could not parse %s analysis arguments: %s", analysis_type, e)
            raise AIError() from e

    def suggest_renewals(self, documents):
        if not documents:
            raise AIRequestError("No documents to analyze")
        documents = [_with_days_left(doc) for doc in documents]
        logger.info("Generating renewal suggestions for %d documents", len(documents))
        message = self._complete([
            {"role": "system", "content": SUGGESTIONS_SYSTEM},
            {"role": "user", "content": _suggestions_prompt(documents)},
        ])
        parsed = parse_json_reply(message.get("content"))
        if isinstance(parsed, list):
            parsed = {"suggestions": parsed}
        return parsed

    def scan(self, image_base64, country=None):
        """Extract document fields from a base64 image (data URL)."""
        validate_country(country)
        if not image_base64:
            raise AIRequestError("No image provided")
        country_line = (f"User is in: {country}. Consider this country's renewal timelines."
                        if country else "Country unknown - use general best practices.")
        prompt = ("Extract the document information from this image and suggest a renewal "
                  "reminder period based on the document type"
                  + (f" and {country}'s regulations." if country else "."))
        message = self._complete([
            {"role": "system", "content": SCAN_SYSTEM.format(country_line=country_line)},
            {"role": "user", "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image_base64}},
            ]},
        ])
        content = message.get("content")
        match = _BARE_JSON.search(content or "")
        if not match:
            logger.error("No JSON found in scan response")
            raise AIError("Failed to process document. Please try again.")
        try:
            return json.loads(match.group(0))
        except ValueError as e:
            logger.error("Could not parse scan response: %s", e)
            raise AIError("Failed to process document. Please try again.") from e

    def advise(self, question=None, document_type=None, document_name=None, expiry_date=None,
               user_documents=()):
        context = "\n".join(
            f"- {d.get('name')} ({d.get('document_type')}): expires on {d.get('expiry_date')}"
            for d in user_documents
        ) or "No documents yet"

        prompt = question
        if not prompt:
            if not document_type:
                raise AIRequestError("Ask a question or pick a document type")
            prompt = f"What documents are required to renew a {document_type}"
            if document_name:
                prompt += f" ({document_name})"
            if expiry_date:
                prompt += f" that expires on {expiry_date}"
            prompt += "?"

        message = self._complete([
            {"role": "system", "content": ADVISOR_SYSTEM.format(documents=context)},
            {"role": "user", "content": prompt},
        ])
        return message.get("content") or ""
