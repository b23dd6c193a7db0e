"""
Pydantic models for leases — strict typing as our first line of defense.

Statuses and outcomes are closed enums. Invariants that span fields (one
settled escrow at most, verdict iff settled) are enforced by the model
itself, so a record that violates them cannot even be constructed.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from .condition import ConditionPair


# ─── Lifecycle Enums ────────────────────────────────────────────────


class LeaseStatus(str, Enum):
    """Lease lifecycle. Strictly forward; SETTLED is terminal."""

    AWAITING_DEPOSIT = "AWAITING_DEPOSIT"  # Lease created, no funds on-ledger
    FUNDS_LOCKED = "FUNDS_LOCKED"  # Payer's escrows confirmed on-ledger
    EXIT_REPORTED = "EXIT_REPORTED"  # Occupant submitted move-out evidence
    SETTLED = "SETTLED"  # Settler's verdict executed on-ledger


class Outcome(str, Enum):
    """The two verdicts a settler can execute."""

    PRIMARY_FAVORABLE = "primary_favorable"  # Refund: bond returns to the occupant
    ALTERNATE_FAVORABLE = "alternate_favorable"  # Penalty: bond goes to the landlord


# ─── Escrow Record ──────────────────────────────────────────────────


class EscrowRecord(BaseModel):
    """One conditional lock on the ledger, gating exactly one outcome."""

    outcome: Outcome
    destination: str  # Who receives the funds if this lock is released
    condition: str
    fulfillment: str = Field(repr=False)  # Secret; never leaves the server unprompted
    sequence: Optional[int] = None  # EscrowCreate sequence, known after deposit
    owner: Optional[str] = None  # Account that created the lock
    settled: bool = False

    @property
    def pair(self) -> ConditionPair:
        return ConditionPair(condition=self.condition, fulfillment=self.fulfillment)

    @property
    def is_locked(self) -> bool:
        return self.sequence is not None and self.owner is not None


# ─── Evidence ───────────────────────────────────────────────────────


class Evidence(BaseModel):
    """Move-out evidence. At most one per lease."""

    lease_id: str
    exit_narrative: str
    attachment_urls: list[str] = Field(default_factory=list)
    submitted_at: datetime


# ─── Lease ──────────────────────────────────────────────────────────


class LeaseDraft(BaseModel):
    """Fields supplied by the party standing up a lease."""

    payer: str  # Locks the bond (the tenant in practice)
    primary_recipient: str  # The occupant; receives the refund
    alternate_recipient: str  # The landlord; receives the penalty
    settler: str  # The notary; sole authority over the verdict
    bond_amount_drops: int
    property_address: Optional[str] = None
    baseline_narrative: str = ""
    baseline_attachment_urls: list[str] = Field(default_factory=list)


class Lease(LeaseDraft):
    """A rental bond agreement and its escrow state."""

    id: str
    status: LeaseStatus = LeaseStatus.AWAITING_DEPOSIT
    escrows: list[EscrowRecord] = Field(default_factory=list)
    disclosed_outcome: Optional[Outcome] = None  # Fulfillment already handed to the settler
    verdict: Optional[Outcome] = None
    evidence: Optional[Evidence] = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _check_invariants(self) -> Lease:
        outcomes = [e.outcome for e in self.escrows]
        if len(outcomes) != len(set(outcomes)):
            raise ValueError("each outcome may be gated by at most one escrow")

        settled = [e for e in self.escrows if e.settled]
        if len(settled) > 1:
            raise ValueError("at most one escrow may ever be settled")

        if (self.status == LeaseStatus.SETTLED) != (self.verdict is not None):
            raise ValueError("a verdict is recorded if and only if the lease is settled")
        if self.verdict is not None:
            # An outcome with no lock of its own (one-branch leases) settles nothing.
            gated = self.escrow_for(self.verdict) is not None
            if [e.outcome for e in settled] != ([self.verdict] if gated else []):
                raise ValueError("the settled escrow must match the recorded verdict")
        if self.verdict is None and settled:
            raise ValueError("an escrow cannot be settled without a verdict")

        if self.evidence is not None and self.status in (
            LeaseStatus.AWAITING_DEPOSIT,
            LeaseStatus.FUNDS_LOCKED,
        ):
            raise ValueError(f"evidence cannot exist while the lease is {self.status.value}")
        return self

    def escrow_for(self, outcome: Outcome) -> EscrowRecord | None:
        for escrow in self.escrows:
            if escrow.outcome == outcome:
                return escrow
        return None

    def parties(self) -> set[str]:
        return {self.payer, self.primary_recipient, self.alternate_recipient, self.settler}
