"""
Logging setup for the expiry tracker.
Plain text by default, JSON lines when LOG_JSON is enabled.
"""

import logging
from datetime import datetime, timezone

from pythonjsonlogger import jsonlogger

from config import Config

PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps level, logger and UTC time on every record."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        if hasattr(record, "user_id"):
            log_record["user_id"] = record.user_id


def setup_logging(level=None, json_output=None):
    level = level or Config.LOG_LEVEL
    json_output = Config.LOG_JSON if json_output is None else json_output

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(CustomJsonFormatter("%(message)s"))
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # werkzeug request lines are noisy at INFO
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    return root
