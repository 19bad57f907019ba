"""
Log hygiene for attacker-influenced values.

Webhook bodies, provider metadata and request headers are controlled by
whoever can reach the endpoint. Anything taken from them goes through
sanitize_for_log() before it reaches a log line, and header/secret maps go
through redact_sensitive_fields().

Security References:
- OWASP Logging Cheat Sheet: https://cheatsheetseries.owasp.org/cheatsheets/Logging_Cheat_Sheet.html
- CodeQL Log Injection: https://codeql.github.com/codeql-query-help/python/py-log-injection/
"""

import re
from typing import Any

MAX_LOG_INPUT_LENGTH = 200

REDACTED = "***REDACTED***"

# Substrings of (normalized) key names whose values never reach the logs
SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "apikey",
        "authorization",
        "signature",
        "credential",
        "cookie",
    }
)

# CR, LF, TAB and every other C0/C1 control character
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_for_log(value: Any, max_length: int = MAX_LOG_INPUT_LENGTH) -> str:
    """
    Make a value safe to embed in a log line.

    Control characters become spaces so a forged "\\n[INFO] ..." cannot start
    a new log entry, and long values are truncated with "...".

    Example:
        >>> sanitize_for_log("user_1\\n[INFO] refund issued")
        'user_1 [INFO] refund issued'
    """
    if value is None:
        return ""
    text = _CONTROL_CHARS.sub(" ", str(value))
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def get_safe_error_info(exception: Exception) -> dict[str, str]:
    """
    Loggable description of an exception: its type name only.

    Provider SDK messages echo request parameters (customer ids, emails).

    Example:
        >>> get_safe_error_info(ValueError("cus_123 not found"))
        {'error_type': 'ValueError'}
    """
    return {"error_type": type(exception).__name__}


def _is_sensitive(key: str) -> bool:
    normalized = key.lower().replace("-", "_")
    return any(fragment in normalized for fragment in SENSITIVE_FIELDS)


def redact_sensitive_fields(data: dict[str, Any]) -> dict[str, Any]:
    """
    Copy of data with sensitive values replaced, recursing into dicts.

    Header names are matched case-insensitively with "-" treated as "_",
    so both "Stripe-Signature" and "X-Api-Key" are caught.

    Example:
        >>> redact_sensitive_fields({"event": "evt_1", "stripe-signature": "t=1,v1=abc"})
        {'event': 'evt_1', 'stripe-signature': '***REDACTED***'}
    """
    redacted: dict[str, Any] = {}
    for key, value in data.items():
        if _is_sensitive(key):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_sensitive_fields(value)
        else:
            redacted[key] = value
    return redacted
