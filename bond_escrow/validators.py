"""
Deterministic input validation — the shape checks at the core's boundary.

These validators run PURE CODE checks on caller-supplied values. They never
touch storage and never talk to the ledger.

Each validator either returns the normalised value or raises
ValidationError. validate_lease_draft() collects every problem with a
draft before raising, so the caller can fix everything in one resubmission.
"""

from __future__ import annotations

import hashlib
import re

from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .exceptions import AuthorizationError, ValidationError
from .models import LeaseDraft

# ─── Constants ───────────────────────────────────────────────────────

# Classic XRPL address: "r" followed by base58 (no 0, O, I, l), 25–35 chars total
XRPL_ADDRESS_RE = re.compile(r"r[1-9A-HJ-NP-Za-km-z]{24,34}")
XRPL_ALPHABET = "rpshnaf39wBUDNEGHJKLM4PQRST7VWXYZ2bcdeCg65jkm8oFqi1tuvAxyz"
ACCOUNT_ID_PREFIX = b"\x00"
ACCOUNT_ID_LENGTH = 20

DROPS_PER_XRP = 1_000_000
MAX_DROPS = 100_000_000_000 * DROPS_PER_XRP  # Total XRP supply

MAX_NARRATIVE_LENGTH = 2000
MAX_ATTACHMENTS = 20

_HTTP_URL = TypeAdapter(HttpUrl)


# ─── Individual Validators ───────────────────────────────────────────


def decode_account_id(address: str) -> bytes | None:
    """Base58Check-decode a classic address to its 20-byte account ID.

    Returns None if the decoded payload has the wrong size, the wrong type
    prefix, or a checksum that does not match.
    """
    if not XRPL_ADDRESS_RE.fullmatch(address):
        return None

    number = 0
    for char in address:
        number = number * 58 + XRPL_ALPHABET.index(char)
    leading = len(address) - len(address.lstrip(XRPL_ALPHABET[0]))
    raw = b"\x00" * leading + number.to_bytes((number.bit_length() + 7) // 8, "big")

    if len(raw) != len(ACCOUNT_ID_PREFIX) + ACCOUNT_ID_LENGTH + 4:
        return None
    payload, checksum = raw[:-4], raw[-4:]
    if not payload.startswith(ACCOUNT_ID_PREFIX):
        return None
    if hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4] != checksum:
        return None
    return payload[len(ACCOUNT_ID_PREFIX):]


def validate_address(value: object, field: str) -> str:
    """A ledger identity must be a classic XRPL address with a valid checksum."""
    if not isinstance(value, str) or decode_account_id(value) is None:
        raise ValidationError(
            f"'{field}' is not a valid XRPL classic address.",
            {"field": field, "value": str(value)[:64]},
        )
    return value


def require_identity(caller: object) -> str:
    """Check the shape of a caller identity before it is compared to a lease.

    A missing identity fails closed as an authorization failure; a present
    but malformed one is the caller's input error.
    """
    if caller is None or (isinstance(caller, str) and not caller.strip()):
        raise AuthorizationError("A caller identity is required for this action.")
    return validate_address(caller, "caller_address")


def validate_sequence(value: object, field: str) -> int:
    """Ledger sequence numbers are strictly positive integers."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(
            f"'{field}' must be a positive integer sequence number.",
            {"field": field, "value": str(value)},
        )
    return value


def validate_drops(value: object, field: str) -> int:
    """Amounts are whole drops, at least one and no more than the XRP supply."""
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= MAX_DROPS:
        raise ValidationError(
            f"'{field}' must be between 1 and {MAX_DROPS} drops.",
            {"field": field, "value": str(value)},
        )
    return value


def validate_attachment_urls(urls: list[str], field: str) -> list[str]:
    """Attachments are references to externally hosted files (http/https only)."""
    if len(urls) > MAX_ATTACHMENTS:
        raise ValidationError(
            f"'{field}' accepts at most {MAX_ATTACHMENTS} attachments.",
            {"field": field, "count": len(urls)},
        )
    for url in urls:
        try:
            _HTTP_URL.validate_python(url)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"'{field}' contains an invalid URL: '{url}'.",
                {"field": field, "url": url},
            ) from exc
    return list(urls)


def validate_narrative(text: object, field: str, *, required: bool) -> str:
    """Free-text condition reports: bounded length, optionally non-empty."""
    if not isinstance(text, str):
        raise ValidationError(f"'{field}' must be text.", {"field": field})
    if required and not text.strip():
        raise ValidationError(f"'{field}' must not be empty.", {"field": field})
    if len(text) > MAX_NARRATIVE_LENGTH:
        raise ValidationError(
            f"'{field}' exceeds {MAX_NARRATIVE_LENGTH} characters.",
            {"field": field, "length": len(text)},
        )
    return text


# ─── Orchestrator ────────────────────────────────────────────────────


def validate_lease_draft(draft: LeaseDraft) -> None:
    """Run ALL draft checks and raise once with every problem found.

    Beyond field shapes, the settler must be independent of the money:
    a settler who is also a payer or recipient could release a bond to
    themselves.
    """
    problems: dict[str, str] = {}

    for field in ("payer", "primary_recipient", "alternate_recipient", "settler"):
        try:
            validate_address(getattr(draft, field), field)
        except ValidationError as exc:
            problems[field] = exc.message

    try:
        validate_drops(draft.bond_amount_drops, "bond_amount_drops")
    except ValidationError as exc:
        problems["bond_amount_drops"] = exc.message

    if "settler" not in problems and draft.settler in {
        draft.payer,
        draft.primary_recipient,
        draft.alternate_recipient,
    }:
        problems["settler"] = "The settler must not be the payer or a recipient."

    if draft.primary_recipient == draft.alternate_recipient:
        problems["alternate_recipient"] = "The two recipients must be different accounts."

    try:
        validate_narrative(draft.baseline_narrative, "baseline_narrative", required=False)
    except ValidationError as exc:
        problems["baseline_narrative"] = exc.message

    try:
        validate_attachment_urls(draft.baseline_attachment_urls, "baseline_attachment_urls")
    except ValidationError as exc:
        problems["baseline_attachment_urls"] = exc.message

    if problems:
        raise ValidationError(
            f"Lease draft rejected ({len(problems)} problem(s)).", {"problems": problems}
        )
