"""
Lease state machine — who may do what, when, and exactly once.

    AWAITING_DEPOSIT ──confirm_deposit (payer)──────────▶ FUNDS_LOCKED
    FUNDS_LOCKED     ──report_exit (primary recipient)──▶ EXIT_REPORTED
    EXIT_REPORTED    ──record_verdict (settler)─────────▶ SETTLED

Every handler follows the same discipline:
  1. Check the caller's identity shape (missing identity fails closed).
  2. Re-read the persisted lease.
  3. Check the caller is the party the transition names (AuthorizationError).
  4. Check the lease is in the transition's source status (StateConflictError).
  5. Commit with a compare-and-swap on that source status, so a concurrent
     duplicate of the same action loses instead of applying twice.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from .exceptions import (
    AuthorizationError,
    IntegrityError,
    LeaseNotFoundError,
    StateConflictError,
    ValidationError,
)
from .models import Lease, LeaseStatus, Outcome
from .store import LeaseStore
from .validators import (
    require_identity,
    validate_attachment_urls,
    validate_narrative,
    validate_sequence,
)

logger = logging.getLogger(__name__)


# ─── Transition Table ────────────────────────────────────────────────


class Action(str, Enum):
    CONFIRM_DEPOSIT = "confirm_deposit"
    REPORT_EXIT = "report_exit"
    RECORD_VERDICT = "record_verdict"


class Role(str, Enum):
    """Which lease party an action belongs to."""

    PAYER = "payer"
    PRIMARY_RECIPIENT = "primary_recipient"
    ALTERNATE_RECIPIENT = "alternate_recipient"
    SETTLER = "settler"


@dataclass(frozen=True)
class Transition:
    action: Action
    source: LeaseStatus
    target: LeaseStatus
    actor: Role


TRANSITIONS: dict[Action, Transition] = {
    Action.CONFIRM_DEPOSIT: Transition(
        Action.CONFIRM_DEPOSIT, LeaseStatus.AWAITING_DEPOSIT, LeaseStatus.FUNDS_LOCKED, Role.PAYER
    ),
    Action.REPORT_EXIT: Transition(
        Action.REPORT_EXIT, LeaseStatus.FUNDS_LOCKED, LeaseStatus.EXIT_REPORTED, Role.PRIMARY_RECIPIENT
    ),
    Action.RECORD_VERDICT: Transition(
        Action.RECORD_VERDICT, LeaseStatus.EXIT_REPORTED, LeaseStatus.SETTLED, Role.SETTLER
    ),
}

TERMINAL_STATUSES: frozenset[LeaseStatus] = frozenset({LeaseStatus.SETTLED})

_missing = set(Action) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"Actions without a transition: {sorted(a.value for a in _missing)}")


# ─── Pure Guards ─────────────────────────────────────────────────────


def party_for(lease: Lease, role: Role) -> str:
    """The address holding ``role`` on ``lease``."""
    return getattr(lease, role.value)


def authorize(lease: Lease, role: Role, caller: str | None) -> None:
    """Fail closed unless ``caller`` is exactly the party holding ``role``."""
    if not caller or caller != party_for(lease, role):
        logger.warning(
            "Rejected caller %s for role %s on lease %s", caller, role.value, lease.id
        )
        raise AuthorizationError(
            "You are not authorised to perform this action.",
            {"lease_id": lease.id, "required_role": role.value},
        )


def check_transition(lease: Lease, action: Action, caller: str | None) -> Transition:
    """Return the transition if ``caller`` may take ``action`` on ``lease`` now.

    Identity is checked before status, so a stranger learns nothing about
    where the lease is in its lifecycle.
    """
    transition = TRANSITIONS[action]
    authorize(lease, transition.actor, caller)

    if lease.status != transition.source:
        logger.warning(
            "Rejected %s on lease %s: status is %s, expected %s",
            action.value,
            lease.id,
            lease.status.value,
            transition.source.value,
        )
        raise StateConflictError(
            f"Cannot {action.value.replace('_', ' ')} — current status is {lease.status.value}.",
            {
                "lease_id": lease.id,
                "status": lease.status.value,
                "expected_status": transition.source.value,
            },
        )
    return transition


def can_transition(lease: Lease, action: Action, caller: str | None) -> bool:
    """Predicate form of check_transition()."""
    try:
        check_transition(lease, action, caller)
    except (AuthorizationError, StateConflictError):
        return False
    return True


def available_actions(lease: Lease, caller: str | None) -> list[Action]:
    """Actions ``caller`` could legally take on ``lease`` right now."""
    return [action for action in Action if can_transition(lease, action, caller)]


def coerce_outcome(value: object) -> Outcome:
    try:
        return Outcome(value)
    except ValueError as exc:
        raise ValidationError(
            f"'{value}' is not a verdict outcome.",
            {"allowed": [o.value for o in Outcome]},
        ) from exc


# ─── Handlers ────────────────────────────────────────────────────────


class LeaseStateMachine:
    """Applies lease transitions against a LeaseStore.

    Usage:
        machine = LeaseStateMachine(store)
        machine.confirm_deposit(lease_id, payer, {Outcome.PRIMARY_FAVORABLE: 11, ...})
        machine.report_exit(lease_id, occupant, "Keys returned, walls repainted.")
        machine.record_verdict(lease_id, settler, Outcome.PRIMARY_FAVORABLE)
    """

    def __init__(self, store: LeaseStore):
        self._store = store

    def load(self, lease_id: str) -> Lease:
        lease = self._store.get(lease_id)
        if lease is None:
            raise LeaseNotFoundError(lease_id)
        return lease

    def confirm_deposit(
        self, lease_id: str, caller: str | None, sequences: Mapping[Outcome, int]
    ) -> Lease:
        """Record the on-ledger locks the payer just created.

        Every branch's sequence must arrive in the same call; a lease never
        sits in FUNDS_LOCKED with only part of its bond accounted for.
        """
        caller = require_identity(caller)
        lease = self.load(lease_id)
        transition = check_transition(lease, Action.CONFIRM_DEPOSIT, caller)

        supplied: dict[Outcome, int] = {}
        for key, sequence in sequences.items():
            outcome = coerce_outcome(key)
            supplied[outcome] = validate_sequence(sequence, f"sequences.{outcome.value}")

        expected = {escrow.outcome for escrow in lease.escrows}
        if set(supplied) != expected:
            raise ValidationError(
                "A sequence number is required for every escrow branch, all at once.",
                {
                    "missing": sorted(o.value for o in expected - set(supplied)),
                    "unexpected": sorted(o.value for o in set(supplied) - expected),
                },
            )
        if len(set(supplied.values())) != len(supplied):
            raise ValidationError(
                "Each escrow was created by a separate transaction; sequences must differ.",
                {"sequences": {o.value: s for o, s in supplied.items()}},
            )

        escrows = [
            escrow.model_copy(update={"sequence": supplied[escrow.outcome], "owner": caller})
            for escrow in lease.escrows
        ]
        updated = self._store.update(
            lease_id,
            {"status": transition.target, "escrows": escrows},
            expect={"status": transition.source},
        )
        logger.info(
            "Lease %s funds locked (sequences %s)",
            lease_id,
            ", ".join(f"{o.value}={s}" for o, s in supplied.items()),
        )
        return updated

    def report_exit(
        self,
        lease_id: str,
        caller: str | None,
        exit_narrative: str,
        attachment_urls: list[str] | None = None,
    ) -> Lease:
        """The occupant files move-out evidence. One shot per lease."""
        caller = require_identity(caller)
        exit_narrative = validate_narrative(exit_narrative, "exit_narrative", required=True)
        urls = validate_attachment_urls(attachment_urls or [], "attachment_urls")

        lease = self.load(lease_id)
        transition = check_transition(lease, Action.REPORT_EXIT, caller)
        if lease.evidence is not None:
            raise StateConflictError(
                "Move-out evidence has already been submitted.", {"lease_id": lease_id}
            )

        self._store.create_evidence(
            lease_id,
            {"exit_narrative": exit_narrative, "attachment_urls": urls},
            lease_patch={"status": transition.target},
            expect={"status": transition.source},
        )
        logger.info("Lease %s exit reported (%d attachment(s))", lease_id, len(urls))
        return self.load(lease_id)

    def record_verdict(self, lease_id: str, caller: str | None, outcome: Outcome | str) -> Lease:
        """Persist the settler's executed verdict and close the lease.

        A gated outcome is only recorded once its fulfillment was disclosed,
        since nothing else could have released its lock. On a one-branch
        lease the outcome without a lock is recorded with nothing disclosed;
        the payer then recovers the bond by reclaim.
        """
        caller = require_identity(caller)
        lease = self.load(lease_id)
        transition = check_transition(lease, Action.RECORD_VERDICT, caller)
        outcome = coerce_outcome(outcome)

        escrow = lease.escrow_for(outcome)
        if escrow is None:
            if len(lease.escrows) != 1:
                raise ValidationError(
                    f"No escrow on this lease gates the {outcome.value} outcome.",
                    {"lease_id": lease_id, "outcome": outcome.value},
                )
            required_disclosure = None
        else:
            if not escrow.is_locked:
                raise IntegrityError(
                    "Escrow metadata is incomplete on this lease record.",
                    {"lease_id": lease_id, "outcome": outcome.value},
                )
            required_disclosure = outcome

        if lease.disclosed_outcome != required_disclosure:
            disclosed = lease.disclosed_outcome.value if lease.disclosed_outcome else None
            logger.warning(
                "Rejected %s verdict on lease %s: disclosed outcome is %s",
                outcome.value,
                lease_id,
                disclosed,
            )
            raise StateConflictError(
                f"The {outcome.value} release was never handed to the settler."
                if disclosed is None
                else f"The settler already chose {disclosed}.",
                {"lease_id": lease_id, "outcome": outcome.value, "disclosed_outcome": disclosed},
            )

        escrows = [
            e.model_copy(update={"settled": True}) if e.outcome == outcome else e
            for e in lease.escrows
        ]
        updated = self._store.update(
            lease_id,
            {"status": transition.target, "verdict": outcome, "escrows": escrows},
            expect={"status": transition.source, "disclosed_outcome": required_disclosure},
        )
        logger.info("Lease %s settled: %s", lease_id, outcome.value)
        return updated
