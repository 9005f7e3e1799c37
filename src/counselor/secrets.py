from __future__ import annotations

import re
from typing import Any, Mapping, MutableMapping, Sequence


SENSITIVE_KEYS = {
    "api_key",
    "authorization",
    "x-api-key",
    "access_token",
    "token",
    "secret",
    "password",
}

# student contact fields never belong in the event log
CONTACT_KEYS = {"email", "phone", "phone_number", "parent_email", "address"}

_KEY_PATTERN = re.compile(r"\b(sk-ant-[A-Za-z0-9_\-]{8,}|sk-[A-Za-z0-9_\-]{16,}|gsk_[A-Za-z0-9]{16,}|AIza[0-9A-Za-z_\-]{20,})")


def _is_sensitive_key(key: str) -> bool:
    k = key.lower()
    if k in SENSITIVE_KEYS or k in CONTACT_KEYS:
        return True
    return any(t in k for t in ["api_key", "apikey", "token", "secret", "password"])


def redact_text(text: str) -> str:
    """Mask vendor API keys that leaked into free text (error messages, raw bodies)."""
    return _KEY_PATTERN.sub("REDACTED", text)


def redact_secrets(obj: Any) -> Any:
    """Recursively redact sensitive values in mappings/lists.

    - For dict keys that look sensitive or hold contact details, replace values with "REDACTED".
    - For strings, mask anything shaped like a vendor API key.
    - For lists/tuples, redact each element.
    """
    if isinstance(obj, Mapping):
        out: MutableMapping[str, Any] = {}
        for k, v in obj.items():
            if _is_sensitive_key(str(k)):
                out[k] = "REDACTED"
            else:
                out[k] = redact_secrets(v)
        return dict(out)
    if isinstance(obj, str):
        return redact_text(obj)
    if isinstance(obj, Sequence) and not isinstance(obj, (bytes, bytearray)):
        return [redact_secrets(x) for x in obj]
    return obj
