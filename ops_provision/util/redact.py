"""Utilities for redacting sensitive data from strings."""

import re
from collections.abc import Iterable

# Patterns for sensitive data that should be redacted
SENSITIVE_PATTERNS = [
    # KEY=value / KEY: value assignments, as printed by env dumps and xray
    (r'((?:password|passwd|secret|token|private[ _-]?key)\s*[=:]\s*"?)[^\s"]+', r"\1REDACTED"),
    # Bearer tokens
    (r"Bearer\s+\S+", "Bearer REDACTED"),
]

# Shorter values produce too many false positives
MIN_REDACT_LENGTH = 4


def redact_sensitive(text: str) -> str:
    """
    Redact sensitive data from text using pattern matching.

    Args:
        text: Text potentially containing sensitive data

    Returns:
        Text with sensitive data replaced with REDACTED markers

    Example:
        >>> redact_sensitive('SUDO_PASSWORD = "hunter22"')
        'SUDO_PASSWORD = "REDACTED"'
    """
    result = text
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)
    return result


def redact_values(text: str, values: Iterable[str]) -> str:
    """
    Replace every occurrence of known secret values, then apply the patterns.

    Args:
        text: Text that may contain secrets (command output, error messages)
        values: Secret values generated or captured during the run

    Returns:
        Redacted text
    """
    result = text
    # Longest first so a secret containing another is replaced whole
    for value in sorted(set(values), key=len, reverse=True):
        if len(value) >= MIN_REDACT_LENGTH:
            result = result.replace(value, "REDACTED")
    return redact_sensitive(result)
