"""Webhook signature verification for Polar deliveries.

Pure functions, no I/O. Tolerates the header shapes Polar integrations have
used over time:

- a single opaque token (``polar-signature: <hex-or-base64>``)
- ``key=value`` pairs separated by commas/spaces (``t=1700000000,v1=<sig>``)
- Standard Webhooks entries (``webhook-signature: v1,<base64> v1,<base64>``)
  together with ``webhook-id`` / ``webhook-timestamp`` headers

Every extracted signature is compared against every candidate digest with
``hmac.compare_digest``. The replay-window check is separate from the HMAC
check so a stale delivery is reported as such.
"""

import base64
import binascii
import hashlib
import hmac
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field

from app.core.exceptions import InvalidSignatureError, StaleTimestampError

SECRET_PREFIX = "whsec_"
_NON_BASE64_RE = re.compile(r"[^A-Za-z0-9+/]")
DEFAULT_TOLERANCE_SECONDS = 300

# Header names checked in order; values are looked up case-insensitively.
SIGNATURE_HEADERS = ("polar-signature", "x-polar-signature", "webhook-signature")
WEBHOOK_ID_HEADER = "webhook-id"
WEBHOOK_TIMESTAMP_HEADER = "webhook-timestamp"

TIMESTAMP_KEYS = frozenset({"t", "timestamp"})
SIGNATURE_KEYS = frozenset({"v1", "s", "sig", "signature"})

_KEY_VALUE_RE = re.compile(r"(?:^|[\s,])(t|timestamp|v\d+|s|sig|signature)=", re.IGNORECASE)
_STANDARD_ENTRY_RE = re.compile(r"^v\d+,\S+$")


@dataclass(frozen=True)
class ParsedSignatureHeader:
    signatures: list[str] = field(default_factory=list)
    timestamp: str | None = None


def parse_signature_header(value: str) -> ParsedSignatureHeader:
    """Extract signatures (and an embedded timestamp) from a header value."""
    value = (value or "").strip()
    if not value:
        return ParsedSignatureHeader()

    entries = value.split()
    if all(_STANDARD_ENTRY_RE.match(entry) for entry in entries):
        signatures = [
            sig for version, _, sig in (entry.partition(",") for entry in entries) if version.lower() == "v1"
        ]
        return ParsedSignatureHeader(signatures=signatures)

    if not _KEY_VALUE_RE.search(value):
        return ParsedSignatureHeader(signatures=[value])

    signatures: list[str] = []
    timestamp = None
    for part in re.split(r"[,\s]+", value):
        key, sep, raw = part.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        raw = raw.strip()
        if not raw:
            continue
        if key in TIMESTAMP_KEYS:
            timestamp = raw
        elif key in SIGNATURE_KEYS:
            signatures.append(raw)
    return ParsedSignatureHeader(signatures=signatures, timestamp=timestamp)


def secret_keys(secret: str) -> list[bytes]:
    """HMAC keys derived from a configured secret.

    ``whsec_`` secrets carry a base64 key after the prefix, decoded leniently:
    URL-safe characters are accepted and missing padding is restored. The
    literal secret is also kept as a key because some senders sign with the
    raw string.
    """
    keys: list[bytes] = []
    if secret.startswith(SECRET_PREFIX):
        encoded = secret[len(SECRET_PREFIX):].replace("-", "+").replace("_", "/")
        encoded = _NON_BASE64_RE.sub("", encoded)
        try:
            decoded = base64.b64decode(encoded + "=" * (-len(encoded) % 4))
        except (binascii.Error, ValueError):
            decoded = b""
        if decoded:
            keys.append(decoded)
    keys.append(secret.encode("utf-8"))
    return keys


def signed_payloads(raw_body: bytes, timestamp: str | None = None, webhook_id: str | None = None) -> list[bytes]:
    payloads = [raw_body]
    if timestamp:
        payloads.append(f"{timestamp}.".encode() + raw_body)
        if webhook_id:
            payloads.append(f"{webhook_id}.{timestamp}.".encode() + raw_body)
    return payloads


def compute_candidates(
    raw_body: bytes,
    secret: str,
    timestamp: str | None = None,
    webhook_id: str | None = None,
) -> set[str]:
    """All hex and base64 HMAC-SHA256 digests the sender may have produced."""
    candidates: set[str] = set()
    for key in secret_keys(secret):
        for payload in signed_payloads(raw_body, timestamp, webhook_id):
            digest = hmac.new(key, payload, hashlib.sha256).digest()
            candidates.add(digest.hex())
            candidates.add(base64.b64encode(digest).decode("ascii"))
    return candidates


def _secure_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_signature(
    raw_body: bytes,
    signature_header: str,
    secret: str,
    *,
    webhook_id: str | None = None,
    timestamp: str | None = None,
) -> bool:
    """Return True if any signature in the header matches any candidate digest.

    ``timestamp`` overrides a timestamp embedded in the header (it comes from
    ``webhook-timestamp`` in the three-header scheme).
    """
    if not secret:
        return False
    parsed = parse_signature_header(signature_header)
    if not parsed.signatures:
        return False

    candidates = compute_candidates(raw_body, secret, timestamp or parsed.timestamp, webhook_id)
    matched = False
    # No early exit: every pair is compared.
    for signature in parsed.signatures:
        for candidate in candidates:
            matched |= _secure_equals(signature, candidate)
    return matched


def check_timestamp(timestamp: str, tolerance_seconds: int, now: float | None = None) -> None:
    """Raise if ``timestamp`` (unix seconds) is outside the replay window."""
    try:
        signed_at = int(str(timestamp).strip())
    except (TypeError, ValueError):
        raise InvalidSignatureError("Invalid webhook timestamp", reason="invalid_timestamp") from None

    now = time.time() if now is None else now
    if abs(now - signed_at) > tolerance_seconds:
        raise StaleTimestampError("Webhook timestamp is outside the allowed tolerance")


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        lowered = {key.lower(): val for key, val in headers.items()}
        value = lowered.get(name)
    return value.strip() if value else None


@dataclass(frozen=True)
class VerifiedDelivery:
    """What the headers told us about a delivery that passed verification."""

    header_name: str
    webhook_id: str | None
    timestamp: str | None


def verify_webhook_headers(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> VerifiedDelivery:
    """Authenticate a delivery from its request headers.

    Raises:
        InvalidSignatureError: missing header (``missing_header``), bad
            timestamp (``invalid_timestamp``) or no matching digest
            (``signature_mismatch``)
        StaleTimestampError: timestamp outside ``tolerance_seconds``
    """
    header_name = next((name for name in SIGNATURE_HEADERS if _header(headers, name)), None)
    if header_name is None:
        raise InvalidSignatureError("Missing webhook signature header", reason="missing_header")

    signature_header = _header(headers, header_name)
    webhook_id = _header(headers, WEBHOOK_ID_HEADER)
    timestamp = _header(headers, WEBHOOK_TIMESTAMP_HEADER) or parse_signature_header(signature_header).timestamp

    if timestamp and tolerance_seconds > 0:
        check_timestamp(timestamp, tolerance_seconds, now)

    if not verify_signature(raw_body, signature_header, secret, webhook_id=webhook_id, timestamp=timestamp):
        raise InvalidSignatureError("Invalid webhook signature", reason="signature_mismatch")

    return VerifiedDelivery(header_name=header_name, webhook_id=webhook_id, timestamp=timestamp)
