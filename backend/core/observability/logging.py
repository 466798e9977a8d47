"""JSON structured logging with mandatory fields and PII redaction."""
import hmac
import json
import logging
import re
import sys
from datetime import UTC, datetime
from hashlib import sha256

from backend.core.config import settings

_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction.

    Agency and run identifiers are not taken from ambient state; callers pass
    them per record via ``extra={"agency_id": ..., "run_id": ...}``.
    """

    def __init__(self):
        super().__init__()
        # PII patterns
        self.email_pattern = re.compile(r'(\b\S+@\S+\.\S+\b)')
        self.phone_pattern = re.compile(r'(\+?\d[\d \-/]{6,})')

    def _redact_pii(self, text: str) -> str:
        """Redact PII from text."""
        if not isinstance(text, str):
            return text
        text = self.email_pattern.sub(self._mask_email, text)
        text = self.phone_pattern.sub(self._mask_phone, text)
        return text

    def _mask_email(self, match) -> str:
        """Mask email: show first char of user, keep domain."""
        email = match.group(1)
        if "@" not in email:
            return email
        user, domain = email.split("@", 1)
        if len(user) <= 1:
            masked_user = "*"
        else:
            masked_user = user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def _mask_phone(self, match) -> str:
        """Mask phone: show first 2 chars, mask the rest."""
        phone = match.group(1)
        if len(phone) <= 2:
            return "*" * len(phone)
        return phone[:2] + "*" * (len(phone) - 2)

    def format(self, record):
        """Format log record as JSON with mandatory fields and PII redaction."""
        message = record.getMessage()

        log_entry = {
            'run_id': getattr(record, 'run_id', None) or 'unknown',
            'agency_id': getattr(record, 'agency_id', None) or 'unknown',
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': self._redact_pii(message),
            'ts_utc': datetime.now(UTC).isoformat(),
        }

        if record.exc_info:
            log_entry['exc_info'] = self.formatException(record.exc_info)

        # Extra fields from record (with PII redaction)
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in log_entry:
                continue
            if isinstance(value, str):
                value = self._redact_pii(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def init_logging() -> None:
    """Initialize JSON logging with mandatory fields."""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)


# Convenience logger
logger = get_logger(__name__)


def hash_actor_token(token: str) -> str:
    """Return an HMAC-SHA256 hash of a sensitive token using CURSOR_HMAC_KEY.

    The raw token must never be logged. This helper produces a stable hash for
    audit purposes without exposing the original value.
    """
    key = settings.CURSOR_HMAC_KEY.encode()
    return hmac.new(key, token.encode(), sha256).hexdigest()
