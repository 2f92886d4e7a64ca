"""
Structured logging for the lead sync service.

- Module-scoped loggers with keyword fields
- PII redaction applied before any record reaches a handler
- Contact sanitizers (allow-list) and correlation IDs
"""

import json
import logging
import os
import uuid
from collections.abc import Mapping
from typing import Any

ROOT_LOGGER_NAME = "leadsync"
REDACTION_MARKER = "[REDACTED]"

# PII fields to redact from logs
REDACT_PATHS = [
    "email",
    "contact.email",
    "contact.properties.email",
    "lead.email",
    "leadData.email",
    "*.email",
    "firstName",
    "lastName",
    "firstname",
    "lastname",
    "contact.properties.firstname",
    "contact.properties.lastname",
    "*.firstName",
    "*.lastName",
]

# Non-PII HubSpot contact properties that are safe to log
SAFE_CONTACT_FIELDS = ["id", "createdAt", "updatedAt"]
SAFE_CONTACT_PROPERTIES = [
    "enriched",
    "lemlist_processing",
    "lemlist_sequenced",
    "lemlist_sequence_id",
    "lead_source",
    "createdate",
]

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Keyword arguments that belong to the logging API, not to structured fields
_LOGGING_KWARGS = {"exc_info", "stack_info", "stacklevel", "extra"}


# --- Redaction ---

def _compile_paths(paths) -> list[list[str]]:
    return [p.split(".") for p in paths]


def _matches(path: tuple[str, ...], patterns: list[list[str]]) -> bool:
    for pattern in patterns:
        if len(pattern) > len(path):
            continue
        tail = path[-len(pattern):]
        if all(seg == "*" or seg == key for seg, key in zip(pattern, tail)):
            return True
    return False


def _redact(value: Any, path: tuple[str, ...], patterns: list[list[str]]) -> Any:
    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            child = path + (str(key),)
            if _matches(child, patterns):
                result[key] = REDACTION_MARKER
            else:
                result[key] = _redact(item, child, patterns)
        return result
    if isinstance(value, (list, tuple)):
        # List indices don't count as path segments
        return [_redact(item, path, patterns) for item in value]
    return value


def redact(data: Any, paths=None) -> Any:
    """Return a copy of ``data`` with PII fields replaced by the redaction marker.

    A path pattern matches the trailing segments of a field's key path, so
    ``email`` catches an email key at any depth while
    ``contact.properties.firstname`` only catches it under that chain.
    ``*`` matches any single segment.
    """
    patterns = _compile_paths(REDACT_PATHS if paths is None else paths)
    return _redact(data, (), patterns)


class RedactingFilter(logging.Filter):
    """Handler filter that redacts structured fields, mapping messages and args.

    Attach to any handler added outside this module (file, remote sink) so
    the redaction rule holds regardless of destination.
    """

    def __init__(self, paths=None):
        super().__init__()
        self.paths = REDACT_PATHS if paths is None else paths

    def filter(self, record: logging.LogRecord) -> bool:
        fields = getattr(record, "fields", None)
        if fields:
            record.fields = redact(fields, self.paths)
        if isinstance(record.msg, Mapping):
            record.msg = redact(record.msg, self.paths)
        if isinstance(record.args, Mapping):
            record.args = redact(record.args, self.paths)
        elif isinstance(record.args, tuple):
            record.args = tuple(redact(arg, self.paths) for arg in record.args)
        return True


# --- Formatters ---

class StructuredFormatter(logging.Formatter):
    """Human-readable line with structured fields appended as JSON."""

    def __init__(self):
        super().__init__(TEXT_FORMAT, datefmt=DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if fields:
            line = f"{line} {json.dumps(fields, default=str, sort_keys=True)}"
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, DATE_FORMAT),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        module = getattr(record, "module_tag", None)
        if module:
            payload["module"] = module
        for key, value in (getattr(record, "fields", None) or {}).items():
            # Record keys win over call fields of the same name
            payload.setdefault(key, value)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None, fmt: str | None = None) -> logging.Logger:
    """Install the stream handler on the service root logger.

    Safe to call repeatedly; a handler is only added once. Level and format
    default to LOG_LEVEL / LOG_FORMAT ("text" or "json").
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    level = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    fmt = (fmt or os.environ.get("LOG_FORMAT") or "text").lower()

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.addFilter(RedactingFilter())
        root.addHandler(handler)
        root.propagate = False

    for handler in root.handlers:
        handler.setFormatter(JsonFormatter() if fmt == "json" else StructuredFormatter())
    root.setLevel(getattr(logging, level, logging.INFO))
    return root


# --- Structured logger ---

class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter that accepts keyword fields and redacts them up front.

    Usage:
        logger = create_logger("retry")
        logger.info("Retrying after transient error", attempt=2, delay=1.4)
    """

    def __init__(self, logger: logging.Logger, module_name: str, fields: dict | None = None):
        super().__init__(logger, {"module_tag": module_name})
        self.module_name = module_name
        self.fields = dict(fields or {})

    def bind(self, **fields) -> "StructuredLogger":
        """Return a child logger that carries extra fields on every record."""
        return StructuredLogger(self.logger, self.module_name, {**self.fields, **fields})

    def log(self, level, msg, *args, **kwargs):
        if args:
            args = tuple(redact(arg) for arg in args)
            # Report the caller, not this frame
            kwargs["stacklevel"] = kwargs.get("stacklevel", 1) + 1
        super().log(level, msg, *args, **kwargs)

    def process(self, msg, kwargs):
        if isinstance(msg, Mapping):
            msg = redact(msg)
        call_fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in _LOGGING_KWARGS}
        fields = redact({"module": self.module_name, **self.fields, **call_fields})
        extra = dict(kwargs.get("extra") or {})
        extra.update({"module_tag": self.module_name, "fields": fields})
        kwargs["extra"] = extra
        return msg, kwargs


def create_logger(module_name: str) -> StructuredLogger:
    """Create a logger scoped to a module of the service."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        configure_logging()
    return StructuredLogger(logging.getLogger(f"{ROOT_LOGGER_NAME}.{module_name}"), module_name)


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return str(uuid.uuid4())


# --- Contact sanitizers ---

def sanitize_contact(contact) -> dict | None:
    """Strip a contact record down to non-PII fields for logging.

    Only allow-listed keys are copied, and the result is run through
    ``redact`` as well.
    """
    if not isinstance(contact, Mapping):
        return None

    sanitized = {k: contact[k] for k in SAFE_CONTACT_FIELDS if k in contact}

    properties = contact.get("properties")
    if isinstance(properties, Mapping):
        sanitized["properties"] = {
            k: properties[k] for k in SAFE_CONTACT_PROPERTIES if k in properties
        }

    return redact(sanitized)


def sanitize_contacts(contacts) -> list:
    """Sanitize a list of contacts for safe logging."""
    if not isinstance(contacts, (list, tuple)):
        return []
    return [sanitize_contact(c) for c in contacts]
