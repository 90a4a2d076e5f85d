"""PII (Personally Identifiable Information) redaction utilities.

Alumni, donor and lead records flow through task payloads and error
messages; this keeps contact and payment data out of the logs.
"""

import re
from typing import Any, Optional


class PIIRedactor:
    """Redact PII from text before logging."""

    PATTERNS = {
        'email': r'\b[\w.+-]+@[\w.-]+\.\w{2,}\b',
        'credit_card': r'\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b',
        'iban': r'\b[A-Z]{2}\d{2}\s?(?:[\dA-Z]{4}\s?){3,5}[\dA-Z]{0,4}\b',
        'phone': r'(?<!\w)\+?\d{1,3}?[\s.-]?\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4}\b',
    }

    # Payload keys whose values are always masked, whatever they contain
    SENSITIVE_KEYS = {'email', 'phone', 'secret', 'token', 'password', 'card_number', 'iban'}

    @classmethod
    def redact(cls, text: Optional[str]) -> str:
        """
        Redact PII from text.

        Returns:
            Redacted text with PII replaced by [TYPE_REDACTED]
        """
        if not text:
            return ""

        result = text
        for name, pattern in cls.PATTERNS.items():
            result = re.sub(pattern, f'[{name.upper()}_REDACTED]', result, flags=re.IGNORECASE)
        return result

    @classmethod
    def redact_for_logging(cls, text: Optional[str]) -> str:
        """Redact PII for logging purposes."""
        return cls.redact(text)

    @classmethod
    def redact_mapping(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``data`` safe to attach to a log record."""
        redacted: dict[str, Any] = {}
        for key, value in data.items():
            if key.lower() in cls.SENSITIVE_KEYS:
                redacted[key] = '[REDACTED]'
            elif isinstance(value, str):
                redacted[key] = cls.redact(value)
            elif isinstance(value, dict):
                redacted[key] = cls.redact_mapping(value)
            else:
                redacted[key] = value
        return redacted

    @classmethod
    def contains_pii(cls, text: Optional[str]) -> bool:
        """Check if text contains any PII patterns."""
        if not text:
            return False

        for pattern in cls.PATTERNS.values():
            if re.search(pattern, text, re.IGNORECASE):
                return True
        return False
