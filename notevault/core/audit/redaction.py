from __future__ import annotations

import hashlib
import re
from typing import Any, Dict, Optional


_SECRET_KEYS = {
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "token",
    "access_key",
    "authorization",
    "secret",
    "key",
}

# Note content never lands in the audit trail verbatim.
_CONTENT_KEYS = {"body", "content", "text", "text_content"}

_KV_RE = re.compile(r"(?i)\b(password|passphrase|token|api[_-]?key|access[_-]?key)\s*=\s*([^\s,;]+)")


def content_fingerprint(value: str) -> Dict[str, Any]:
    raw = str(value or "").encode("utf-8", errors="ignore")
    return {"sha256": hashlib.sha256(raw).hexdigest()[:16], "length": len(raw)}


def redact_value(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, (int, float, bool)):
        return v
    if isinstance(v, (bytes, bytearray)):
        return "<bytes>"
    if isinstance(v, str):
        s = _KV_RE.sub(r"\1=<redacted>", v)
        if len(s) > 300:
            s = s[:300] + "…"
        return s
    if isinstance(v, (list, tuple, set)):
        items = sorted(v) if isinstance(v, set) else list(v)
        return [redact_value(x) for x in items[:100]]
    if isinstance(v, dict):
        out: Dict[str, Any] = {}
        for k, vv in list(v.items())[:100]:
            kk = str(k)
            if kk.lower() in _SECRET_KEYS:
                out[kk] = "<redacted>"
                continue
            if kk.lower() in _CONTENT_KEYS and isinstance(vv, str):
                out[kk] = content_fingerprint(vv)
                continue
            out[kk] = redact_value(vv)
        return out
    if hasattr(v, "value"):
        return redact_value(getattr(v, "value"))
    return str(v)[:300]


def redact_diff(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Prepare previous/new value maps for the audit trail:
    - body/content is replaced with a fingerprint
    - secrets are masked
    """
    if values is None:
        return None
    out = redact_value(dict(values))
    return out if isinstance(out, dict) else {}
