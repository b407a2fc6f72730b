"""
Log redaction for broker credentials.

Two levels:
    - secrets (auth token, password, api key, Authorization header): the
      value is replaced entirely
    - identifiers (account, username): only the last 4 characters survive,
      enough to tell accounts apart in logs

Pagination cursors contain "token" but are not credentials and pass through.
"""

from __future__ import annotations

from typing import Any, Mapping

REDACTED = "***REDACTED***"

SECRET_MARKERS = ("token", "password", "secret", "key", "authorization", "signature")
IDENTIFIER_MARKERS = ("account", "username")
PASSTHROUGH_KEYS = frozenset({"page_token", "next_page_token"})


def classify_key(key: Any) -> str:
    """'secret', 'identifier' or 'plain' for a mapping key."""
    name = str(key).lower().replace("-", "_")
    if name in PASSTHROUGH_KEYS:
        return "plain"
    if any(marker in name for marker in SECRET_MARKERS):
        return "secret"
    if any(marker in name for marker in IDENTIFIER_MARKERS):
        return "identifier"
    return "plain"


def mask_identifier(value: Any) -> Any:
    if value is None:
        return None
    text = str(value)
    if len(text) <= 4:
        return "***"
    return "***" + text[-4:]


def redact(obj: Any) -> Any:
    """Return a copy of obj with secrets replaced and identifiers masked."""
    if isinstance(obj, Mapping):
        out = {}
        for key, value in obj.items():
            kind = classify_key(key)
            if kind == "secret":
                out[key] = REDACTED
            elif kind == "identifier" and not isinstance(value, (Mapping, list, tuple)):
                out[key] = mask_identifier(value)
            else:
                out[key] = redact(value)
        return out
    if isinstance(obj, (list, tuple)):
        return [redact(item) for item in obj]
    return obj


def structlog_redaction_processor(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    return redact(event_dict)
