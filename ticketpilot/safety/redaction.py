"""Secret redaction for log lines, exception messages and sandbox output."""

import re

_SENSITIVE_ASSIGNMENT_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?token|refresh[_-]?token|token|password|passwd|secret)\b"
    r"(\s*[:=]\s*)([^\s,;]+)"
)
_SENSITIVE_QUERY_RE = re.compile(
    r"(?i)([?&](?:api[_-]?key|access[_-]?token|refresh[_-]?token|token|password|secret)=)([^&\s]+)"
)
_SENSITIVE_BEARER_RE = re.compile(r"(?i)\b(authorization\s*[:=]\s*(?:bearer|basic)\s+)([^\s,;]+)")
_URL_CREDENTIALS_RE = re.compile(r"(?i)\b(https?://)([^/\s:@]+(?::[^/\s@]*)?)@")
_KNOWN_TOKEN_RE = re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{20,}|lin_api_[A-Za-z0-9]{20,}|sk-[A-Za-z0-9_-]{20,})\b")


def redact_sensitive_text(value: str | None) -> str | None:
    """Replace credentials in free text with a [REDACTED] placeholder.

    Covers key=value assignments, query parameters, bearer and basic auth headers, credentials embedded
    in URLs (``https://oauth2:<token>@host``) and well-known token prefixes.
    """
    if value is None:
        return None

    redacted = _SENSITIVE_ASSIGNMENT_RE.sub(r"\1\2[REDACTED]", value)
    redacted = _SENSITIVE_QUERY_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _SENSITIVE_BEARER_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _URL_CREDENTIALS_RE.sub(r"\1[REDACTED]@", redacted)
    redacted = _KNOWN_TOKEN_RE.sub("[REDACTED]", redacted)
    return redacted
