import csv
import io
import json
from datetime import date

from flask import make_response

CSV_HEADERS = [
    "Name",
    "Type",
    "Issuing Authority",
    "Expiry Date",
    "Renewal Period (Days)",
    "Notes",
    "Created At",
]
DEFAULT_RENEWAL_PERIOD = "30"


def _csv_row(doc):
    return [
        doc.name,
        doc.document_type,
        doc.issuing_authority or "",
        doc.expiry_date.isoformat(),
        str(doc.renewal_period_days) if doc.renewal_period_days is not None else DEFAULT_RENEWAL_PERIOD,
        doc.notes or "",
        doc.created_at.date().isoformat() if doc.created_at else "",
    ]


def to_csv(documents):
    """Header row, then one fully quoted row per document."""
    buf = io.StringIO()
    buf.write(",".join(CSV_HEADERS))
    if documents:
        buf.write("\n")
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerows(_csv_row(doc) for doc in documents)
    return buf.getvalue().rstrip("\n")


def to_json(documents):
    return json.dumps([doc.to_dict() for doc in documents], indent=2)


def _download(body, extension, mimetype):
    response = make_response(body)
    filename = f"documents_{date.today().isoformat()}.{extension}"
    response.headers["Content-Disposition"] = f"attachment; filename={filename}"
    response.mimetype = mimetype
    return response


def csv_download(documents):
    return _download(to_csv(documents), "csv", "text/csv")


def json_download(documents):
    return _download(to_json(documents), "json", "application/json")
