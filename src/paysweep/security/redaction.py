from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

# Substrings that mark a mapping key as carrying key material or access tokens.
_SENSITIVE_PARTS = (
    "private_key",
    "privatekey",
    "credential",
    "secret",
    "token",
    "password",
    "authorization",
    "api_key",
    "apikey",
    "pro_api_key",
)

_PLAIN_SECRET_PATTERNS = (
    re.compile(r"(?im)(authorization\s*[:=]\s*)(bearer\s+)?([^\s,;]+)"),
    re.compile(r"(?im)(tron-pro-api-key\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(private_?key\s*[:=]\s*)([^\s,;]+)"),
)
_JSON_KEY_VALUE_PATTERN = re.compile(
    r'("(?:private_key|privateKey|source_credential|credential|token|api_key|apiKey)"\s*:\s*")([^"\\]*)(")',
    re.IGNORECASE,
)


def is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    return any(part in normalized for part in _SENSITIVE_PARTS)


def mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    return "*" * len(value)


def _redact_match(match: re.Match[str]) -> str:
    prefix = match.group(1)
    scheme = ""
    if match.lastindex and match.lastindex >= 3:
        scheme = match.group(2) or ""
    return f"{prefix}{scheme}[REDACTED]"


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    redacted = str(text)
    for secret in known_secrets:
        if secret:
            redacted = redacted.replace(secret, mask_secret(secret))
    for pattern in _PLAIN_SECRET_PATTERNS:
        redacted = pattern.sub(_redact_match, redacted)
    redacted = _JSON_KEY_VALUE_PATTERN.sub(
        lambda m: f"{m.group(1)}{mask_secret(m.group(2))}{m.group(3)}", redacted
    )
    return redacted


def sanitize_mapping(data: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in data.items():
        key_str = str(key)
        if is_sensitive_key(key_str):
            sanitized[key_str] = mask_secret(str(value)) if value is not None else None
            continue
        sanitized[key_str] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, list):
        return [redact_data(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_data(item) for item in value)
    if isinstance(value, str):
        return sanitize_text(value)
    return value
