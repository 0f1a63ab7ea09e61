"""
Structured logging for the publisher.

JSON lines in staging / production, a readable single-line format in
development. Request and app ids travel in context variables so every log
line emitted during a publish can be correlated. Private key material never
reaches a handler.
"""

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from flagpub.config import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
app_id_ctx: ContextVar[str] = ContextVar("app_id", default="-")

_PRIVATE_KEY_PATTERN = re.compile(
    r"-----BEGIN (?:RSA |EC )?PRIVATE KEY-----.*?-----END (?:RSA |EC )?PRIVATE KEY-----",
    re.S,
)

# Attributes every LogRecord has; anything else came in through ``extra=``
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id"}


def generate_request_id() -> str:
    return str(uuid.uuid4())[:8]


def redact(text: str) -> str:
    return _PRIVATE_KEY_PATTERN.sub("[REDACTED PRIVATE KEY]", text)


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S.000Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
            "request_id": request_id_ctx.get("-"),
            "app_id": app_id_ctx.get("-"),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and key not in log_entry:
                log_entry[key] = value

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = redact(self.formatException(record.exc_info))

        log_entry = {k: v for k, v in log_entry.items() if v is not None and v != "-"}
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):

    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-24s | [%(request_id)s] %(message)s"

    def format(self, record: logging.LogRecord) -> str:
        record.request_id = request_id_ctx.get("-")
        return redact(super().format(record))


def setup_logging() -> None:
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if settings.is_production or settings.is_staging:
        handler.setFormatter(JSONFormatter())
        root.setLevel(logging.INFO)
    else:
        handler.setFormatter(HumanFormatter(HumanFormatter.FORMAT, datefmt="%H:%M:%S"))
        root.setLevel(logging.DEBUG)

    root.addHandler(handler)

    for name in ("uvicorn.access", "botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(name).setLevel(logging.WARNING)
