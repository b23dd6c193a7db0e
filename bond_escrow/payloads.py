"""
XRPL transaction template builders.

These functions produce the UNSIGNED transaction fields that callers sign
and submit elsewhere. Network-assigned fields (Sequence, Fee,
LastLedgerSequence, SigningPubKey) are intentionally omitted: the
submission layer autofills them from live network state, which prevents
stale-nonce failures when there is latency between this core and the
signer.

Builders are pure. They check the shape of what they are given but make no
authorization decisions — that belongs to the settlement coordinator.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_pascal

from .condition import CONDITION_LENGTH, FULFILLMENT_LENGTH, parse_hex
from .exceptions import ValidationError
from .validators import (
    DROPS_PER_XRP,
    MAX_DROPS,
    validate_address,
    validate_drops,
    validate_sequence,
)

# ─── Constants ───────────────────────────────────────────────────────

# Seconds between the Unix epoch and the Ripple epoch (2000-01-01T00:00:00Z)
RIPPLE_EPOCH_OFFSET = 946_684_800

DEFAULT_RECLAIM_AFTER_DAYS = 90
DEFAULT_BASE_FEE_DROPS = 10

_DROPS_RE = re.compile(r"[0-9]+")


# ─── Transaction Templates ──────────────────────────────────────────


class TransactionTemplate(BaseModel):
    """Common shape of every unsigned template."""

    model_config = ConfigDict(frozen=True)

    transaction_type: str
    account: str

    def to_ledger_json(self) -> dict[str, Any]:
        """Render with XRPL field names (``OfferSequence``, ``CancelAfter``, ...)."""
        return {
            to_pascal(name): value
            for name, value in self.model_dump(mode="json", exclude_none=True).items()
        }


class LockTemplate(TransactionTemplate):
    """EscrowCreate — the payer locks the bond behind a condition."""

    transaction_type: Literal["EscrowCreate"] = "EscrowCreate"
    amount: str  # Drops, as a decimal string
    destination: str
    condition: str
    cancel_after: int  # Ripple-epoch seconds; the payer's unwind path


class ReleaseTemplate(TransactionTemplate):
    """EscrowFinish — the settler releases a lock with its fulfillment."""

    transaction_type: Literal["EscrowFinish"] = "EscrowFinish"
    owner: str
    offer_sequence: int
    condition: str
    fulfillment: str = Field(repr=False)


class ReclaimTemplate(TransactionTemplate):
    """EscrowCancel — the payer recovers an expired, unreleased lock."""

    transaction_type: Literal["EscrowCancel"] = "EscrowCancel"
    owner: str
    offer_sequence: int


# ─── Amount & Time Helpers ───────────────────────────────────────────


def parse_drops(value: object) -> int:
    """Parse a decimal-string drop amount from the boundary.

    Floats are refused outright; amounts never pass through binary floating point.
    """
    if not isinstance(value, str) or not _DROPS_RE.fullmatch(value):
        raise ValidationError(
            "Amount must be a decimal string of whole drops.", {"value": str(value)[:32]}
        )
    drops = int(value)
    if drops <= 0 or drops > MAX_DROPS:
        raise ValidationError(
            f"Amount must be between 1 and {MAX_DROPS} drops.", {"value": value}
        )
    return drops


def xrp_to_drops(xrp: str | Decimal) -> int:
    """Convert an XRP amount (at most 6 decimal places) to integer drops."""
    try:
        amount = Decimal(xrp)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"'{xrp}' is not a decimal XRP amount.", {"value": str(xrp)}) from exc

    if not amount.is_finite() or amount <= 0:
        raise ValidationError("XRP amount must be a positive number.", {"value": str(xrp)})

    drops = amount * DROPS_PER_XRP
    if drops != drops.to_integral_value():
        raise ValidationError(
            "XRP amounts have at most 6 decimal places.", {"value": str(xrp)}
        )
    return int(drops)


def drops_to_xrp(drops: int) -> Decimal:
    return Decimal(drops) / DROPS_PER_XRP


def to_ripple_time(moment: datetime) -> int:
    """Express an aware datetime in Ripple-epoch seconds."""
    return int(moment.timestamp()) - RIPPLE_EPOCH_OFFSET


def release_fee(fulfillment: str, base_fee: int = DEFAULT_BASE_FEE_DROPS) -> int:
    """Minimum fee (drops) for an EscrowFinish carrying ``fulfillment``.

    A conditional finish costs ``base × ceil((33 + fulfillment bytes) / 16)``,
    so a larger secret means a proportionally larger fee. A plain autofill
    underestimates this; the submission layer should pass it explicitly.
    """
    size = len(parse_hex(fulfillment, FULFILLMENT_LENGTH, "fulfillment"))
    return base_fee * math.ceil((33 + size) / 16)


# ─── Builders ────────────────────────────────────────────────────────


def build_lock(
    payer: str,
    recipient: str,
    amount_drops: int,
    condition: str,
    *,
    reclaim_after_days: int = DEFAULT_RECLAIM_AFTER_DAYS,
    now: datetime | None = None,
) -> LockTemplate:
    """Build the EscrowCreate the payer signs to lock the bond.

    Design choices:
      • No FinishAfter — with only a Condition present the settler can
        release at any time. A FinishAfter would block early settlement.
      • CancelAfter = now + reclaim_after_days — the payer's guaranteed
        refund path if the settler never acts.
    """
    validate_address(payer, "payer")
    validate_address(recipient, "recipient")
    parse_hex(condition, CONDITION_LENGTH, "condition")

    validate_drops(amount_drops, "amount_drops")
    if reclaim_after_days < 1:
        raise ValidationError(
            "Reclaim window must be at least one day.", {"reclaim_after_days": reclaim_after_days}
        )

    if now is None:
        now = datetime.now(timezone.utc)

    return LockTemplate(
        account=payer,
        amount=str(amount_drops),
        destination=recipient,
        condition=condition.upper(),
        cancel_after=to_ripple_time(now + timedelta(days=reclaim_after_days)),
    )


def build_release(
    settler: str,
    lock_owner: str,
    lock_sequence: int,
    condition: str,
    fulfillment: str,
) -> ReleaseTemplate:
    """Build the EscrowFinish the settler signs to execute a verdict.

    The caller must already hold the fulfillment. Fee is left to the
    submission layer; compute it with release_fee().
    """
    validate_address(settler, "settler")
    validate_address(lock_owner, "lock_owner")
    validate_sequence(lock_sequence, "lock_sequence")
    parse_hex(condition, CONDITION_LENGTH, "condition")
    parse_hex(fulfillment, FULFILLMENT_LENGTH, "fulfillment")

    return ReleaseTemplate(
        account=settler,
        owner=lock_owner,
        offer_sequence=lock_sequence,
        condition=condition.upper(),
        fulfillment=fulfillment.upper(),
    )


def build_reclaim(payer: str, lock_sequence: int) -> ReclaimTemplate:
    """Build the EscrowCancel that returns an unreleased lock to its payer.

    Valid on-ledger once CancelAfter has passed. If the lock was already
    released or cancelled the ledger answers tecNO_TARGET, which callers
    should treat as success (see ledger.reclaim_settled).
    """
    validate_address(payer, "payer")
    validate_sequence(lock_sequence, "lock_sequence")

    return ReclaimTemplate(account=payer, owner=payer, offer_sequence=lock_sequence)
