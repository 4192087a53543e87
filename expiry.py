"""Expiry status bucketing for documents."""

import enum
import math
from collections import Counter
from datetime import date

EXPIRING_SOON_DAYS = 30

# window used to pick documents for batch renewal suggestions
ATTENTION_AHEAD_DAYS = 90
ATTENTION_BEHIND_DAYS = 30


class ExpiryStatus(str, enum.Enum):
    EXPIRED = "expired"
    EXPIRING_SOON = "expiring_soon"
    VALID = "valid"


def days_until_expiry(expiry_date, today=None):
    """Whole days from ``today`` until ``expiry_date``, rounded up."""
    today = today or date.today()
    delta = expiry_date - today
    return math.ceil(delta.total_seconds() / 86400)


def classify(expiry_date, today=None):
    days = days_until_expiry(expiry_date, today)
    if days < 0:
        return ExpiryStatus.EXPIRED
    if days <= EXPIRING_SOON_DAYS:
        return ExpiryStatus.EXPIRING_SOON
    return ExpiryStatus.VALID


def needs_attention(expiry_date, today=None):
    days = days_until_expiry(expiry_date, today)
    return -ATTENTION_BEHIND_DAYS <= days <= ATTENTION_AHEAD_DAYS


def summarize(documents, today=None):
    """Dashboard counts: totals per expiry status and per document type."""
    today = today or date.today()
    statuses = Counter(classify(doc.expiry_date, today) for doc in documents)
    return {
        "total": len(documents),
        "valid": statuses[ExpiryStatus.VALID],
        "expiring_soon": statuses[ExpiryStatus.EXPIRING_SOON],
        "expired": statuses[ExpiryStatus.EXPIRED],
        "by_type": dict(Counter(doc.document_type for doc in documents)),
    }
