"""HMAC-SHA256 webhook signing and verification."""

import hashlib
import hmac
import time
from typing import NamedTuple, Optional, Union

from collab_webhooks.config import get_settings

SIGNATURE_PREFIX = "sha256="

Payload = Union[bytes, str]


class ParsedSignature(NamedTuple):
    timestamp: int
    signature: str  # "sha256=<hex>"


def _to_bytes(value: Payload) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(payload: Payload, secret: str, timestamp: int) -> str:
    """Sign ``"{timestamp}.{payload}"`` and return ``sha256=<hex>``."""
    message = f"{timestamp}.".encode("utf-8") + _to_bytes(payload)
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def format_signature_header(signature: str, timestamp: int) -> str:
    """Build ``t=<ts>,sha256=<hex>`` from a ``sha256=<hex>`` signature."""
    hex_digest = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
    return f"t={timestamp},{SIGNATURE_PREFIX}{hex_digest}"


def parse_signature_header(header: Optional[str]) -> Optional[ParsedSignature]:
    """Inverse of :func:`format_signature_header`. Returns None when malformed."""
    if not header or not isinstance(header, str):
        return None

    fields: dict[str, str] = {}
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep or not key or not value or key in fields:
            return None
        fields[key] = value

    if set(fields) != {"t", "sha256"}:
        return None
    try:
        timestamp = int(fields["t"])
    except ValueError:
        return None
    hex_digest = fields["sha256"].lower()
    if len(hex_digest) != 64 or any(c not in "0123456789abcdef" for c in hex_digest):
        return None
    return ParsedSignature(timestamp=timestamp, signature=f"{SIGNATURE_PREFIX}{hex_digest}")


def _constant_time_equals(a: str, b: str) -> bool:
    # Hash both sides first so unequal lengths cost the same as equal ones
    da = hashlib.sha256(a.encode("utf-8")).digest()
    db = hashlib.sha256(b.encode("utf-8")).digest()
    return hmac.compare_digest(da, db)


def verify(
    payload: Payload,
    signature_header: Optional[str],
    secret: str,
    timestamp: int,
    tolerance_ms: Optional[int] = None,
    now_ms: Optional[int] = None,
) -> bool:
    """Check a signature for ``payload`` signed at ``timestamp`` (epoch ms).

    ``signature_header`` may be the bare ``sha256=<hex>`` value or the full
    ``t=<ts>,sha256=<hex>`` header; in the latter case its timestamp must
    match ``timestamp``. ``tolerance_ms`` defaults to
    ``settings.webhook_signature_tolerance_ms``.
    """
    if not signature_header:
        return False
    if tolerance_ms is None:
        tolerance_ms = get_settings().webhook_signature_tolerance_ms
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if abs(now_ms - timestamp) > tolerance_ms:
        return False

    candidate = signature_header
    if signature_header.startswith("t=") or ",t=" in signature_header:
        parsed = parse_signature_header(signature_header)
        if parsed is None or parsed.timestamp != timestamp:
            return False
        candidate = parsed.signature

    expected = sign(payload, secret, timestamp)
    return _constant_time_equals(expected, candidate)
