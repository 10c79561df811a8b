from __future__ import annotations

import hashlib
import re
from typing import Any, Dict, Mapping

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
# Optional +52, separators allowed, at least 10 digits end to end.
PHONE_RE = re.compile(r"\+?\d[\d\s().-]{8,}\d")

MAX_LOGGED_TEXT = 500

# Lead, contact and credential keys that are hashed or summarized outright.
SENSITIVE_FIELDS = frozenset(
    {
        "email",
        "phone",
        "name",
        "lead_message",
        "contacts",
        "contact_requests",
        "requests",
        "leads",
        "x-authorization",
        "authorization",
        "api_key",
    }
)

# Phones go first: an email hash can contain a digit run the phone pattern would match.
_TEXT_PATTERNS = (("PHONE", PHONE_RE), ("EMAIL", EMAIL_RE))


def fingerprint(text: str) -> str:
    return "[HASH:%s]" % hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]


def scrub_text(text: str) -> str:
    """Swap e-mails and phone numbers in free text for stable fingerprints."""
    if not text:
        return text
    for label, pattern in _TEXT_PATTERNS:
        text = pattern.sub(lambda m, label=label: "[%s_%s]" % (label, fingerprint(m.group(0))), text)
    return text


def _redacted(value: Any) -> Any:
    if isinstance(value, str):
        return fingerprint(value)
    try:
        count = len(value)
    except TypeError:
        count = None
    return {"redacted": True, "items": count}


def _sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return lowered in SENSITIVE_FIELDS or lowered.endswith("_token") or "secret" in lowered


def scrub_value(value: Any) -> Any:
    if isinstance(value, str):
        cleaned = scrub_text(value)
        return fingerprint(cleaned) if len(cleaned) > MAX_LOGGED_TEXT else cleaned
    if isinstance(value, Mapping):
        return sanitize_log_payload(value)
    if isinstance(value, (list, tuple)):
        # record lists (contacts, leads) are only counted
        if any(isinstance(entry, Mapping) for entry in value):
            return _redacted(value)
        return [scrub_value(entry) for entry in value]
    return value


def sanitize_log_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(payload, Mapping):
        return {}
    return {
        key: value if value is None else (_redacted(value) if _sensitive(key) else scrub_value(value))
        for key, value in payload.items()
    }
