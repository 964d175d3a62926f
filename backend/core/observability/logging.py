"""JSON structured logging with mandatory fields and PII redaction.

Guardian phone numbers, CPF numbers and e-mail addresses are masked in the
message and in string ``extra`` values. Dates and school UUIDs pass through.
"""
import json
import logging
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Optional

from backend.core.config import settings

# Thread-local storage for context
_context = threading.local()

_RESERVED_ATTRS = frozenset(
    (
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
        'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'message', 'taskName',
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction."""

    def __init__(self):
        super().__init__()
        # PII patterns
        self.cpf_pattern = re.compile(r'(?<![\w.-])(\d{3}\.\d{3}\.\d{3}-\d{2})(?![\w-])')
        self.email_pattern = re.compile(r'(\b\S+@\S+\.\S+\b)')
        # "(11) 98765-4321", "+55 11 98765-4321" or bare "5511987654321"
        self.phone_pattern = re.compile(
            r'(?<![\w-])((?:\+?55[ ]?)?\(?\d{2}\)?[ ]?9?\d{4}-?\d{4}|\d{10,13})(?![\w-])'
        )

    def _redact_pii(self, text: str) -> str:
        """Redact PII from text."""
        if not isinstance(text, str):
            return text

        text = self.cpf_pattern.sub(self._mask_cpf, text)
        text = self.email_pattern.sub(self._mask_email, text)
        text = self.phone_pattern.sub(self._mask_phone, text)

        return text

    def _mask_cpf(self, match) -> str:
        """Mask CPF: keep only the check digits."""
        return "***.***.***-" + match.group(1)[-2:]

    def _mask_email(self, match) -> str:
        """Mask email: show first char of user, mask the rest of the user part."""
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
        """Mask phone: keep the last 4 digits."""
        phone = match.group(1)
        digits = re.sub(r'\D', '', phone)
        return "*" * (len(digits) - 4) + digits[-4:]

    def format(self, record):
        """Format log record as JSON with mandatory fields and PII redaction."""
        trace_id = getattr(_context, 'trace_id', None) or 'unknown'
        tenant_id = getattr(_context, 'tenant_id', None) or 'unknown'

        log_entry = {
            'trace_id': trace_id,
            'tenant_id': tenant_id,
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': self._redact_pii(record.getMessage()),
            'ts_utc': datetime.now(UTC).isoformat().replace('+00:00', 'Z'),
        }

        if record.exc_info:
            log_entry['exc_info'] = self.formatException(record.exc_info)

        # Extra fields passed via `extra=` (string values are redacted)
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith('_'):
                continue
            if isinstance(value, str):
                value = self._redact_pii(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def set_trace_id(trace_id: Optional[str]) -> None:
    """Set trace ID for current thread context."""
    _context.trace_id = trace_id


def set_tenant_id(tenant_id: Optional[str]) -> None:
    """Set tenant ID for current thread context."""
    _context.tenant_id = tenant_id


def clear_context() -> None:
    """Drop trace/tenant IDs from the current thread (worker threads are reused)."""
    _context.trace_id = None
    _context.tenant_id = None


def init_logging(level: Optional[str] = None) -> None:
    """Initialize JSON logging with mandatory fields."""
    logger = logging.getLogger()
    level_name = (level or settings.log_level).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
