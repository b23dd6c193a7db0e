"""
Settlement coordinator — the dual-escrow verdict protocol.

Flow:
  ┌──────────────┐
  │ create_lease │   ← one independent condition pair per outcome branch
  └──────┬───────┘
         │
  ┌──────▼────────┐
  │ lock_payloads │   ← EscrowCreate per branch (conditions only, no secrets)
  └──────┬────────┘
         │            payer signs + submits externally, reports sequences
  ┌──────▼──────────┐
  │ confirm_deposit │
  └──────┬──────────┘
         │
  ┌──────▼──────┐
  │ report_exit │   ← occupant's move-out evidence
  └──────┬──────┘
         │
  ┌──────▼──────────┐
  │ release_payload │   ← settler names ONE outcome; only its fulfillment leaves
  └──────┬──────────┘
         │            settler signs + submits externally, reports the result
  ┌──────▼──────────┐
  │ confirm_release │   ← verdict recorded, lease SETTLED
  └──────┬──────────┘
         │
  ┌──────▼─────────┐
  │ reclaim_payload│   ← payer recovers the other lock after its expiry
  └────────────────┘

Design principles:
  - A fulfillment is disclosed only in EXIT_REPORTED, only to the settler,
    only for the outcome the settler explicitly named. Once one outcome is
    disclosed the other is locked out for good.
  - Stored pairs are re-verified on every read path that hands out a
    template. A corrupt pair halts the lease; it is never "repaired".
  - One code path for one or two branches (ProtocolSettings.outcome_branches).
"""

from __future__ import annotations

import logging
from datetime import datetime

from . import condition
from .config import ProtocolSettings
from .exceptions import IntegrityError, StateConflictError, ValidationError
from .ledger import SubmissionResult
from .models import EscrowRecord, Lease, LeaseDraft, LeaseStatus, Outcome
from .payloads import (
    LockTemplate,
    ReclaimTemplate,
    ReleaseTemplate,
    build_lock,
    build_reclaim,
    build_release,
    release_fee,
)
from .state_machine import LeaseStateMachine, Role, authorize, coerce_outcome
from .store import LeaseStore
from .validators import require_identity, validate_lease_draft

logger = logging.getLogger(__name__)


class SettlementCoordinator:
    """Orchestrates the escrow protocol for every lease in a store.

    Usage:
        coordinator = SettlementCoordinator(InMemoryLeaseStore())
        lease = coordinator.create_lease(draft)
        templates = coordinator.lock_payloads(lease.id)
        ...
    """

    def __init__(self, store: LeaseStore, settings: ProtocolSettings | None = None):
        self.store = store
        self.settings = settings or ProtocolSettings()
        self.state_machine = LeaseStateMachine(store)

    # ─── Lease Creation ─────────────────────────────────────────────

    def create_lease(self, draft: LeaseDraft) -> Lease:
        """Validate the draft and store it with fresh, independent condition pairs."""
        validate_lease_draft(draft)

        outcomes = self.settings.outcomes()
        pairs = condition.generate_distinct(len(outcomes))
        escrows = [
            EscrowRecord(
                outcome=outcome,
                destination=self._destination(draft, outcome),
                condition=pair.condition,
                fulfillment=pair.fulfillment,
            )
            for outcome, pair in zip(outcomes, pairs)
        ]

        lease = self.store.create({**draft.model_dump(), "escrows": escrows})
        logger.info(
            "Created lease %s: %d drops, %d escrow branch(es)",
            lease.id,
            lease.bond_amount_drops,
            len(escrows),
        )
        return lease

    def get_lease(self, lease_id: str) -> Lease:
        return self.state_machine.load(lease_id)

    def leases_for(self, address: str) -> list[Lease]:
        return self.store.find_by_party(address)

    # ─── Deposit ────────────────────────────────────────────────────

    def lock_payloads(self, lease_id: str, *, now: datetime | None = None) -> list[LockTemplate]:
        """Unsigned EscrowCreate templates for every branch of a new lease.

        Each stored pair is verified first, so a corrupt record surfaces here
        rather than as an on-ledger temMALFORMED.
        """
        lease = self.get_lease(lease_id)
        if lease.status != LeaseStatus.AWAITING_DEPOSIT:
            raise StateConflictError(
                f"Lease is not awaiting deposit (current status: {lease.status.value}).",
                {"lease_id": lease_id, "status": lease.status.value},
            )

        templates = []
        for escrow in lease.escrows:
            pair = self._verified_pair(lease, escrow)
            templates.append(
                build_lock(
                    lease.payer,
                    escrow.destination,
                    lease.bond_amount_drops,
                    pair.condition,
                    reclaim_after_days=self.settings.reclaim_after_days(escrow.outcome),
                    now=now,
                )
            )
        return templates

    def confirm_deposit(self, lease_id: str, caller: str | None, sequences: dict) -> Lease:
        return self.state_machine.confirm_deposit(lease_id, caller, sequences)

    def report_exit(
        self,
        lease_id: str,
        caller: str | None,
        exit_narrative: str,
        attachment_urls: list[str] | None = None,
    ) -> Lease:
        return self.state_machine.report_exit(lease_id, caller, exit_narrative, attachment_urls)

    # ─── Verdict ────────────────────────────────────────────────────

    def release_payload(
        self, lease_id: str, caller: str | None, outcome: Outcome | str
    ) -> ReleaseTemplate:
        """Hand the settler the EscrowFinish for the outcome they chose.

        This is the only place a fulfillment ever leaves the core. Status is
        checked before identity: before exit is reported no caller, not even
        the settler, gets anything.
        """
        caller = require_identity(caller)
        lease = self.get_lease(lease_id)

        if lease.status != LeaseStatus.EXIT_REPORTED:
            logger.warning(
                "Refused fulfillment for lease %s in status %s", lease_id, lease.status.value
            )
            raise StateConflictError(
                f"Lease is not awaiting a verdict (status: {lease.status.value}).",
                {"lease_id": lease_id, "status": lease.status.value},
            )
        authorize(lease, Role.SETTLER, caller)
        outcome = coerce_outcome(outcome)

        if lease.disclosed_outcome is not None and lease.disclosed_outcome != outcome:
            logger.warning(
                "Settler asked lease %s for %s after choosing %s",
                lease_id,
                outcome.value,
                lease.disclosed_outcome.value,
            )
            raise StateConflictError(
                f"A verdict was already chosen for this lease ({lease.disclosed_outcome.value}).",
                {"lease_id": lease_id, "disclosed_outcome": lease.disclosed_outcome.value},
            )

        escrow = lease.escrow_for(outcome)
        if escrow is None:
            raise ValidationError(
                f"No escrow on this lease gates the {outcome.value} outcome.",
                {"lease_id": lease_id, "outcome": outcome.value},
            )
        if not escrow.is_locked:
            logger.error("Lease %s escrow %s has no sequence/owner", lease_id, outcome.value)
            raise IntegrityError(
                "Escrow metadata is incomplete on this lease record.",
                {"lease_id": lease_id, "outcome": outcome.value},
            )
        pair = self._verified_pair(lease, escrow)

        if lease.disclosed_outcome is None:
            # Pin the choice before anything is returned; a racing request
            # for the other outcome now fails its compare-and-swap.
            self.store.update(
                lease_id,
                {"disclosed_outcome": outcome},
                expect={"status": LeaseStatus.EXIT_REPORTED, "disclosed_outcome": None},
            )
        logger.info("Disclosed %s fulfillment of lease %s to its settler", outcome.value, lease_id)

        return build_release(
            settler=caller,
            lock_owner=escrow.owner,
            lock_sequence=escrow.sequence,
            condition=pair.condition,
            fulfillment=pair.fulfillment,
        )

    def release_fee(self, template: ReleaseTemplate) -> int:
        """Minimum fee the submission layer must attach to ``template``."""
        return release_fee(template.fulfillment, base_fee=self.settings.base_fee_drops)

    def confirm_release(
        self,
        lease_id: str,
        caller: str | None,
        outcome: Outcome | str,
        result: SubmissionResult | None,
    ) -> Lease:
        """Record the verdict once its release is final on-ledger.

        An outcome gated by a lock needs the successful result of the
        release built by release_payload(). On a one-branch lease the
        outcome without a lock has no release; ``result`` may be None and
        the lease settles with the remaining lock left for the payer to
        reclaim.
        """
        caller = require_identity(caller)
        lease = self.get_lease(lease_id)
        authorize(lease, Role.SETTLER, caller)
        outcome = coerce_outcome(outcome)

        gated = lease.escrow_for(outcome) is not None
        if gated and (result is None or not result.success):
            raise ValidationError(
                "The release was not confirmed on-ledger; the verdict is not recorded.",
                {
                    "lease_id": lease_id,
                    "result_code": result.result_code if result is not None else None,
                },
            )
        return self.state_machine.record_verdict(lease_id, caller, outcome)

    # ─── Reclaim ────────────────────────────────────────────────────

    def reclaim_payload(
        self, lease_id: str, caller: str | None, outcome: Outcome | str
    ) -> ReclaimTemplate:
        """EscrowCancel for one of the lease's locks, for the account that created it.

        The ledger decides whether CancelAfter has passed. Asking for a lock
        that was already released is allowed; the ledger answers tecNO_TARGET,
        which counts as settled.
        """
        caller = require_identity(caller)
        lease = self.get_lease(lease_id)
        authorize(lease, Role.PAYER, caller)
        outcome = coerce_outcome(outcome)

        escrow = lease.escrow_for(outcome)
        if escrow is None:
            raise ValidationError(
                f"No escrow on this lease gates the {outcome.value} outcome.",
                {"lease_id": lease_id, "outcome": outcome.value},
            )
        if not escrow.is_locked:
            raise StateConflictError(
                "This escrow has not been confirmed on-ledger yet.",
                {"lease_id": lease_id, "status": lease.status.value},
            )
        if caller != escrow.owner:
            raise IntegrityError(
                "Escrow owner does not match the lease payer.",
                {"lease_id": lease_id, "outcome": outcome.value},
            )

        if escrow.settled:
            logger.info("Reclaim requested for released %s lock of lease %s", outcome.value, lease_id)
        return build_reclaim(caller, escrow.sequence)

    # ─── Helpers ────────────────────────────────────────────────────

    @staticmethod
    def _destination(draft: LeaseDraft, outcome: Outcome) -> str:
        if outcome == Outcome.PRIMARY_FAVORABLE:
            return draft.primary_recipient
        return draft.alternate_recipient

    @staticmethod
    def _verified_pair(lease: Lease, escrow: EscrowRecord) -> condition.ConditionPair:
        pair = escrow.pair
        if not condition.verify(pair):
            logger.error(
                "Stored condition pair for lease %s (%s) failed verification",
                lease.id,
                escrow.outcome.value,
            )
            raise IntegrityError(
                "Stored crypto-condition is corrupt. Recreate the lease to generate a fresh pair.",
                {"lease_id": lease.id, "outcome": escrow.outcome.value},
            )
        return pair
