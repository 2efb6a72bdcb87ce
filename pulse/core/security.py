"""PULSE — Secret scrubbing and identifiers."""

import re
import uuid

MAX_ERROR_LENGTH = 500
REDACTED = "[REDACTED]"

# (pattern, replacement) pairs applied in order.
SECRET_PATTERNS = [
    # Stripe secret / restricted keys and webhook secrets
    (re.compile(r"\b(?:sk|rk)_(?:live|test)_[a-zA-Z0-9]{10,}\b"), REDACTED),
    (re.compile(r"\bwhsec_[a-zA-Z0-9]{10,}\b"), REDACTED),
    # Tokens echoed back in query strings
    (re.compile(r"(access_token=)[^&\s\"']+", re.IGNORECASE), r"\1" + REDACTED),
    # Generic key-like prefixes followed by a long token
    (
        re.compile(r"\b(?:api|key|token|secret|password|auth)[_-]?[a-zA-Z0-9]{20,}\b", re.IGNORECASE),
        REDACTED,
    ),
    # Bearer tokens (base64 alphabet included)
    (re.compile(r"Bearer\s+[a-zA-Z0-9._\-+/=]+", re.IGNORECASE), "Bearer " + REDACTED),
    # Long hex strings
    (re.compile(r"\b[0-9a-f]{32,}\b", re.IGNORECASE), REDACTED),
]


def sanitize_error_message(message: str) -> str:
    """Redact anything resembling a credential and cap the length."""
    sanitized = message
    for pattern, replacement in SECRET_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)

    if len(sanitized) > MAX_ERROR_LENGTH:
        sanitized = sanitized[:MAX_ERROR_LENGTH] + "... (truncated)"
    return sanitized


def generate_secure_id() -> str:
    """Random v4 UUID string."""
    return str(uuid.uuid4())
