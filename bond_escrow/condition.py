"""
PREIMAGE-SHA-256 crypto-condition codec for XRPL escrows.

Encoding follows draft-thomas-crypto-conditions-04, restricted to the one
shape this system ever produces: a 32-byte preimage.

    Fulfillment  =  A0  22  80  20  {32-byte preimage}
                    tag len tag len

    Condition    =  A0  25  80  20  {SHA-256(preimage)}  81  01  20
                    tag len tag len                      tag len cost=32

The fingerprint is SHA-256 of the RAW preimage, not of the fulfillment
encoding. XRPL rejects anything else as temMALFORMED, so every structural
deviation here is a hard failure, never a warning.

The condition is public (it goes into EscrowCreate). The fulfillment is the
settler's secret (it goes into EscrowFinish) and must stay server-side until
a verdict is chosen.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field

from .exceptions import IntegrityError, ValidationError

# ─── Encoding Constants ──────────────────────────────────────────────

PREIMAGE_LENGTH = 32
FULFILLMENT_LENGTH = 36
CONDITION_LENGTH = 39

FULFILLMENT_PREFIX = bytes([0xA0, 0x22, 0x80, 0x20])
CONDITION_PREFIX = bytes([0xA0, 0x25, 0x80, 0x20])
# Cost of a 32-byte preimage is 32, minimal DER integer → 81 01 20
COST_TRAILER = bytes([0x81, 0x01, 0x20])

_HEX_RE = re.compile(r"[0-9A-Fa-f]*")


# ─── Data Structures ────────────────────────────────────────────────


@dataclass(frozen=True)
class ConditionPair:
    """Hex-encoded condition/fulfillment pair backed by one preimage."""

    condition: str  # EscrowCreate.Condition / EscrowFinish.Condition
    fulfillment: str = field(repr=False)  # EscrowFinish.Fulfillment, secret


# ─── Boundary Parsing ────────────────────────────────────────────────


def parse_hex(value: object, byte_length: int, name: str) -> bytes:
    """Decode a hex field arriving from outside the core.

    Rejects non-strings, odd or wrong lengths and non-hex characters BEFORE
    any structural decoding is attempted.

    Raises:
        ValidationError: if the value is not exactly ``byte_length`` bytes of hex.
    """
    if not isinstance(value, str):
        raise ValidationError(
            f"{name} must be a hex string.", {"field": name, "type": type(value).__name__}
        )
    if len(value) != byte_length * 2:
        raise ValidationError(
            f"{name} must be exactly {byte_length} bytes ({byte_length * 2} hex characters), "
            f"got {len(value)} characters.",
            {"field": name, "expected_bytes": byte_length, "length": len(value)},
        )
    if not _HEX_RE.fullmatch(value):
        raise ValidationError(
            f"{name} contains non-hexadecimal characters.", {"field": name}
        )
    return bytes.fromhex(value)


# ─── Public API ──────────────────────────────────────────────────────


def generate() -> ConditionPair:
    """Generate a fresh pair backed by a CSPRNG 32-byte preimage."""
    return encode(secrets.token_bytes(PREIMAGE_LENGTH))


def generate_distinct(count: int) -> list[ConditionPair]:
    """Generate ``count`` pairs, none of which share a preimage.

    A shared preimage would let the secret of one escrow unlock another,
    so duplicates are discarded and redrawn.
    """
    pairs: list[ConditionPair] = []
    seen: set[str] = set()
    while len(pairs) < count:
        pair = generate()
        if pair.condition in seen:
            continue
        seen.add(pair.condition)
        pairs.append(pair)
    return pairs


def encode(preimage: bytes) -> ConditionPair:
    """Encode the condition/fulfillment pair for a given preimage.

    Pure and deterministic — exposed so fixed vectors can be tested.

    Raises:
        ValidationError: if the preimage is not exactly 32 bytes.
    """
    if not isinstance(preimage, (bytes, bytearray)) or len(preimage) != PREIMAGE_LENGTH:
        raise ValidationError(
            f"Preimage must be exactly {PREIMAGE_LENGTH} bytes.",
            {"length": len(preimage) if isinstance(preimage, (bytes, bytearray)) else None},
        )

    preimage = bytes(preimage)
    fulfillment = FULFILLMENT_PREFIX + preimage
    fingerprint = hashlib.sha256(preimage).digest()
    condition = CONDITION_PREFIX + fingerprint + COST_TRAILER

    return ConditionPair(
        condition=condition.hex().upper(),
        fulfillment=fulfillment.hex().upper(),
    )


def decode_fulfillment(fulfillment: str) -> bytes:
    """Extract the 32-byte preimage from a stored fulfillment.

    Raises:
        IntegrityError: on any structural deviation.
    """
    raw = _strict_bytes(fulfillment, FULFILLMENT_LENGTH, "fulfillment")
    if raw[:4] != FULFILLMENT_PREFIX:
        raise IntegrityError(
            "Fulfillment prefix is not A0228020 (PREIMAGE-SHA-256, 32-byte preimage).",
            {"prefix": raw[:4].hex().upper()},
        )
    return raw[4:]


def decode_condition(condition: str) -> bytes:
    """Extract the 32-byte fingerprint from a stored condition.

    Raises:
        IntegrityError: on any structural deviation.
    """
    raw = _strict_bytes(condition, CONDITION_LENGTH, "condition")
    if raw[:4] != CONDITION_PREFIX:
        raise IntegrityError(
            "Condition prefix is not A0258020 (PREIMAGE-SHA-256 fingerprint).",
            {"prefix": raw[:4].hex().upper()},
        )
    if raw[36:] != COST_TRAILER:
        raise IntegrityError(
            "Condition cost field is not 810120 (cost = 32).",
            {"trailer": raw[36:].hex().upper()},
        )
    return raw[4:36]


def verify(pair: ConditionPair) -> bool:
    """Check that a condition/fulfillment pair is internally consistent.

    Total and side-effect free: returns False for any structural mismatch,
    non-hex input or wrong types, and never raises. This is the last check
    before a secret is handed to a caller.
    """
    condition = getattr(pair, "condition", None)
    fulfillment = getattr(pair, "fulfillment", None)

    f = _loose_bytes(fulfillment, FULFILLMENT_LENGTH)
    c = _loose_bytes(condition, CONDITION_LENGTH)
    if f is None or c is None:
        return False

    if f[:4] != FULFILLMENT_PREFIX:
        return False
    if c[:4] != CONDITION_PREFIX or c[36:] != COST_TRAILER:
        return False

    expected = hashlib.sha256(f[4:]).digest()
    return hmac.compare_digest(c[4:36], expected)


# ─── Helpers ─────────────────────────────────────────────────────────


def _loose_bytes(value: object, byte_length: int) -> bytes | None:
    if not isinstance(value, str) or len(value) != byte_length * 2:
        return None
    if not _HEX_RE.fullmatch(value):
        return None
    return bytes.fromhex(value)


def _strict_bytes(value: object, byte_length: int, name: str) -> bytes:
    raw = _loose_bytes(value, byte_length)
    if raw is None:
        raise IntegrityError(
            f"Stored {name} is not {byte_length} bytes of hex.",
            {"field": name, "expected_bytes": byte_length},
        )
    return raw
