"""
Security Logging Utilities for Mundoctor
Prevents log injection (CWE-117) when user-supplied values reach the logs.

Identity-provider subject ids, emails, paths and error strings all arrive
from outside the process and are passed through these helpers before being
interpolated into log messages.
"""

import re
from typing import Any, Optional

LOG_INJECTION_PATTERNS = [
    r"[\r\n]",  # CRLF injection
    r"%0[ad]",  # URL-encoded CRLF
    r"\\[rn]",  # Escaped newlines
    r"\x00",  # Null bytes
    r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]",  # Control characters
]

SAFE_LOG_PATTERN = re.compile(r"^[a-zA-Z0-9._@:/\-\s]+$")

SENSITIVE_PATTERNS = [
    (r"bearer\s+[^\s]+", "Bearer [REDACTED]"),
    (r"token[=:\s]+[^\s]+", "token=[REDACTED]"),
    (r"secret[=:\s]+[^\s]+", "secret=[REDACTED]"),
    (r"whsec_[a-zA-Z0-9+/=]+", "whsec_[REDACTED]"),
    (r"sk_(live|test)_[a-zA-Z0-9]+", "sk_[REDACTED]"),
]


def sanitize_for_log(value: Optional[Any], max_length: int = 100, allow_special: bool = False) -> str:
    """
    Sanitize any value for safe logging.

    Args:
        value: Value to sanitize
        max_length: Maximum length of output
        allow_special: Whether to keep characters outside the safe set

    Returns:
        str: Sanitized string safe for logging
    """
    if value is None:
        return "null"

    str_value = str(value)

    if len(str_value) > max_length:
        str_value = str_value[:max_length] + "..."

    for pattern in LOG_INJECTION_PATTERNS:
        str_value = re.sub(pattern, "", str_value)

    if not allow_special and not SAFE_LOG_PATTERN.match(str_value):
        str_value = re.sub(r"[^a-zA-Z0-9._@:/\-\s]", "", str_value)

    if not str_value.strip():
        return "[sanitized]"

    return str_value.strip()


def sanitize_id_for_log(id_value: Optional[Any]) -> str:
    """
    Sanitize provider subject ids and other identifiers for logging.

    Provider ids look like ``user_2abcDEF``; anything else is reduced to the
    safe character set and truncated.
    """
    if id_value is None:
        return "[no_id]"

    str_id = str(id_value)
    if re.match(r"^[a-zA-Z0-9_\-]{1,64}$", str_id):
        return str_id

    return sanitize_for_log(str_id, max_length=64)


def sanitize_error_message_for_log(error_msg: Optional[Any]) -> str:
    """Redact credentials and secrets that may be embedded in an error message."""
    if not error_msg:
        return "[no_error_message]"

    str_msg = str(error_msg)
    for pattern, replacement in SENSITIVE_PATTERNS:
        str_msg = re.sub(pattern, replacement, str_msg, flags=re.IGNORECASE)

    return sanitize_for_log(str_msg, max_length=300, allow_special=True)
