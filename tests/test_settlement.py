"""
Tests for the settlement coordinator — the dual-escrow verdict protocol.

The scenarios walk a lease end to end the way the parties would; the
disclosure tests pin down the one property that matters most: a
fulfillment only ever leaves for the settler, after exit is reported, for
the single outcome they named.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from bond_escrow import condition
from bond_escrow.config import ProtocolSettings
from bond_escrow.exceptions import (
    AuthorizationError,
    IntegrityError,
    LeaseNotFoundError,
    StateConflictError,
    ValidationError,
)
from bond_escrow.ledger import (
    TEC_NO_PERMISSION,
    TEC_NO_TARGET,
    TES_SUCCESS,
    SubmissionResult,
    reclaim_settled,
    reclaim_too_early,
)
from bond_escrow.models import LeaseDraft, LeaseStatus, Outcome
from bond_escrow.payloads import RIPPLE_EPOCH_OFFSET
from bond_escrow.settlement import SettlementCoordinator
from bond_escrow.store import InMemoryLeaseStore
from bond_escrow.validators import MAX_DROPS

# ─── Test Data ───────────────────────────────────────────────────────

PAYER = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
OCCUPANT = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
LANDLORD = "rGWrZyQqhTp9Xu7G5Pkayo7bXjH4k4QYpf"
NOTARY = "rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn"
STRANGER = "rDsbeomae4FXwgQTJp9Rs64Qg9vDiTCdBv"

SEQUENCES = {Outcome.ALTERNATE_FAVORABLE: 10, Outcome.PRIMARY_FAVORABLE: 11}
SUCCESS = SubmissionResult(result_code=TES_SUCCESS, tx_hash="ABC123")
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_draft(**overrides) -> LeaseDraft:
    kwargs = {
        "payer": PAYER,
        "primary_recipient": OCCUPANT,
        "alternate_recipient": LANDLORD,
        "settler": NOTARY,
        "bond_amount_drops": 5_000_000,
        "property_address": "14 Harbour Street, Flat 2",
        "baseline_narrative": "Walls freshly painted.",
    }
    kwargs.update(overrides)
    return LeaseDraft(**kwargs)


def _make_coordinator(**settings) -> SettlementCoordinator:
    return SettlementCoordinator(InMemoryLeaseStore(), ProtocolSettings(**settings))


@pytest.fixture
def coordinator() -> SettlementCoordinator:
    return _make_coordinator()


def _funded(coordinator: SettlementCoordinator, sequences=None) -> str:
    lease = coordinator.create_lease(_make_draft())
    coordinator.confirm_deposit(lease.id, PAYER, sequences or SEQUENCES)
    return lease.id


def _exit_reported(coordinator: SettlementCoordinator) -> str:
    lease_id = _funded(coordinator)
    coordinator.report_exit(lease_id, OCCUPANT, "Fair: one scuffed wall.")
    return lease_id


# ═══════════════════════════════════════════════════════════════════════
# CREATE LEASE
# ═══════════════════════════════════════════════════════════════════════


class TestCreateLease:
    def test_one_independent_pair_per_outcome(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        assert lease.status == LeaseStatus.AWAITING_DEPOSIT
        assert {e.outcome for e in lease.escrows} == set(Outcome)
        refund = lease.escrow_for(Outcome.PRIMARY_FAVORABLE)
        penalty = lease.escrow_for(Outcome.ALTERNATE_FAVORABLE)
        assert refund.condition != penalty.condition
        assert refund.fulfillment != penalty.fulfillment
        assert condition.verify(refund.pair)
        assert condition.verify(penalty.pair)

    def test_destinations_follow_outcomes(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        assert lease.escrow_for(Outcome.PRIMARY_FAVORABLE).destination == OCCUPANT
        assert lease.escrow_for(Outcome.ALTERNATE_FAVORABLE).destination == LANDLORD

    def test_no_escrow_is_locked_yet(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        assert not any(e.is_locked for e in lease.escrows)

    def test_every_problem_reported_at_once(self, coordinator):
        draft = _make_draft(payer="nope", settler=OCCUPANT, bond_amount_drops=0)
        with pytest.raises(ValidationError) as exc:
            coordinator.create_lease(draft)
        assert set(exc.value.details["problems"]) == {"payer", "settler", "bond_amount_drops"}
        assert len(coordinator.store) == 0

    def test_bond_above_xrp_supply_rejected(self, coordinator):
        with pytest.raises(ValidationError) as exc:
            coordinator.create_lease(_make_draft(bond_amount_drops=MAX_DROPS + 1))
        assert "bond_amount_drops" in exc.value.details["problems"]
        assert len(coordinator.store) == 0

    def test_settler_cannot_hold_the_money(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.create_lease(_make_draft(settler=LANDLORD))

    def test_unknown_lease(self, coordinator):
        with pytest.raises(LeaseNotFoundError):
            coordinator.get_lease("lease_0000000000000000")

    def test_leases_for_party(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        assert [found.id for found in coordinator.leases_for(NOTARY)] == [lease.id]
        assert coordinator.leases_for(STRANGER) == []


# ═══════════════════════════════════════════════════════════════════════
# LOCK PAYLOADS
# ═══════════════════════════════════════════════════════════════════════


class TestLockPayloads:
    def test_one_template_per_branch_without_secrets(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        templates = coordinator.lock_payloads(lease.id, now=NOW)
        assert len(templates) == 2
        for template, escrow in zip(templates, lease.escrows):
            tx = template.to_ledger_json()
            assert tx["Condition"] == escrow.condition
            assert tx["Destination"] == escrow.destination
            assert tx["Amount"] == "5000000"
            assert "Fulfillment" not in tx
            assert escrow.fulfillment not in str(tx)

    def test_reclaim_window_per_outcome(self):
        coordinator = _make_coordinator(primary_reclaim_days=3, alternate_reclaim_days=60)
        lease = coordinator.create_lease(_make_draft())
        by_destination = {
            t.destination: t.cancel_after for t in coordinator.lock_payloads(lease.id, now=NOW)
        }
        base = int(NOW.timestamp()) - RIPPLE_EPOCH_OFFSET
        assert by_destination[OCCUPANT] == base + 3 * 86_400
        assert by_destination[LANDLORD] == base + 60 * 86_400

    def test_only_while_awaiting_deposit(self, coordinator):
        lease_id = _funded(coordinator)
        with pytest.raises(StateConflictError):
            coordinator.lock_payloads(lease_id)

    def test_corrupt_pair_halts_the_lease(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        escrows = [e.model_copy(update={"condition": "A0" * 39}) for e in lease.escrows]
        coordinator.store.update(lease.id, {"escrows": escrows})
        with pytest.raises(IntegrityError):
            coordinator.lock_payloads(lease.id)


# ═══════════════════════════════════════════════════════════════════════
# SCENARIOS
# ═══════════════════════════════════════════════════════════════════════


class TestScenarios:
    def test_refund_verdict(self, coordinator):
        lease_id = _exit_reported(coordinator)
        stored = coordinator.get_lease(lease_id).escrow_for(Outcome.PRIMARY_FAVORABLE)

        template = coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        tx = template.to_ledger_json()
        assert tx["TransactionType"] == "EscrowFinish"
        assert tx["Account"] == NOTARY
        assert tx["Owner"] == PAYER
        assert tx["OfferSequence"] == 11
        assert tx["Condition"] == stored.condition
        assert tx["Fulfillment"] == stored.fulfillment

        settled = coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, SUCCESS)
        assert settled.status == LeaseStatus.SETTLED
        assert settled.verdict == Outcome.PRIMARY_FAVORABLE
        assert settled.escrow_for(Outcome.PRIMARY_FAVORABLE).settled
        assert not settled.escrow_for(Outcome.ALTERNATE_FAVORABLE).settled

    def test_penalty_verdict(self, coordinator):
        lease_id = _exit_reported(coordinator)
        template = coordinator.release_payload(lease_id, NOTARY, Outcome.ALTERNATE_FAVORABLE)
        assert template.offer_sequence == 10

        settled = coordinator.confirm_release(
            lease_id, NOTARY, Outcome.ALTERNATE_FAVORABLE, SUCCESS
        )
        assert settled.verdict == Outcome.ALTERNATE_FAVORABLE

    def test_other_fulfillment_never_follows(self, coordinator):
        lease_id = _exit_reported(coordinator)
        penalty = coordinator.get_lease(lease_id).escrow_for(Outcome.ALTERNATE_FAVORABLE)

        coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        with pytest.raises(StateConflictError):
            coordinator.release_payload(lease_id, NOTARY, Outcome.ALTERNATE_FAVORABLE)

        coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, SUCCESS)
        with pytest.raises(StateConflictError):
            coordinator.release_payload(lease_id, NOTARY, Outcome.ALTERNATE_FAVORABLE)
        with pytest.raises(AuthorizationError):
            coordinator.reclaim_payload(lease_id, LANDLORD, Outcome.ALTERNATE_FAVORABLE)

        # The penalty secret is still only in storage.
        assert coordinator.get_lease(lease_id).escrow_for(
            Outcome.ALTERNATE_FAVORABLE
        ).fulfillment == penalty.fulfillment

    def test_repeat_request_for_same_outcome_is_allowed(self, coordinator):
        lease_id = _exit_reported(coordinator)
        first = coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        second = coordinator.release_payload(lease_id, NOTARY, "primary_favorable")
        assert first.fulfillment == second.fulfillment

    def test_verdict_for_other_outcome_after_disclosure_refused(self, coordinator):
        lease_id = _exit_reported(coordinator)
        coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        with pytest.raises(StateConflictError):
            coordinator.confirm_release(lease_id, NOTARY, Outcome.ALTERNATE_FAVORABLE, SUCCESS)
        assert coordinator.get_lease(lease_id).status == LeaseStatus.EXIT_REPORTED

    def test_release_fee(self, coordinator):
        lease_id = _exit_reported(coordinator)
        template = coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        assert coordinator.release_fee(template) == 50

    def test_release_fee_follows_base_fee(self):
        coordinator = _make_coordinator(base_fee_drops=12)
        lease_id = _exit_reported(coordinator)
        template = coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        assert coordinator.release_fee(template) == 60


# ═══════════════════════════════════════════════════════════════════════
# DISCLOSURE GATE
# ═══════════════════════════════════════════════════════════════════════


class TestDisclosureGate:
    @pytest.mark.parametrize("caller", [PAYER, OCCUPANT, LANDLORD, NOTARY, STRANGER])
    @pytest.mark.parametrize("outcome", list(Outcome))
    def test_nothing_leaves_while_funds_locked(self, coordinator, caller, outcome):
        lease_id = _funded(coordinator)
        with pytest.raises(StateConflictError):
            coordinator.release_payload(lease_id, caller, outcome)
        assert coordinator.get_lease(lease_id).disclosed_outcome is None

    def test_nothing_leaves_before_deposit(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        with pytest.raises(StateConflictError):
            coordinator.release_payload(lease.id, NOTARY, Outcome.PRIMARY_FAVORABLE)

    @pytest.mark.parametrize("caller", [PAYER, OCCUPANT, LANDLORD, STRANGER])
    def test_only_the_settler(self, coordinator, caller):
        lease_id = _exit_reported(coordinator)
        with pytest.raises(AuthorizationError):
            coordinator.release_payload(lease_id, caller, Outcome.PRIMARY_FAVORABLE)
        assert coordinator.get_lease(lease_id).disclosed_outcome is None

    @pytest.mark.parametrize("caller", [None, ""])
    def test_missing_identity(self, coordinator, caller):
        lease_id = _exit_reported(coordinator)
        with pytest.raises(AuthorizationError):
            coordinator.release_payload(lease_id, caller, Outcome.PRIMARY_FAVORABLE)

    def test_unknown_outcome(self, coordinator):
        lease_id = _exit_reported(coordinator)
        with pytest.raises(ValidationError):
            coordinator.release_payload(lease_id, NOTARY, "both")
        assert coordinator.get_lease(lease_id).disclosed_outcome is None

    def test_corrupt_pair_is_never_disclosed(self, coordinator):
        lease_id = _exit_reported(coordinator)
        lease = coordinator.get_lease(lease_id)
        escrows = [
            e.model_copy(update={"fulfillment": "A0228020" + "11" * 32})
            if e.outcome == Outcome.PRIMARY_FAVORABLE
            else e
            for e in lease.escrows
        ]
        coordinator.store.update(lease_id, {"escrows": escrows})

        with pytest.raises(IntegrityError):
            coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        assert coordinator.get_lease(lease_id).disclosed_outcome is None

    def test_incomplete_escrow_metadata_is_integrity_error(self, coordinator):
        lease_id = _exit_reported(coordinator)
        lease = coordinator.get_lease(lease_id)
        escrows = [e.model_copy(update={"sequence": None}) for e in lease.escrows]
        coordinator.store.update(lease_id, {"escrows": escrows})
        with pytest.raises(IntegrityError):
            coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)


# ═══════════════════════════════════════════════════════════════════════
# CONFIRM RELEASE
# ═══════════════════════════════════════════════════════════════════════


class TestConfirmRelease:
    def test_failed_release_leaves_lease_open(self, coordinator):
        lease_id = _exit_reported(coordinator)
        coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        failed = SubmissionResult(result_code="tecCRYPTOCONDITION_ERROR")
        with pytest.raises(ValidationError):
            coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, failed)
        assert coordinator.get_lease(lease_id).status == LeaseStatus.EXIT_REPORTED

    def test_non_settler_rejected_before_anything_else(self, coordinator):
        lease_id = _funded(coordinator)
        failed = SubmissionResult(result_code="tefFAILURE")
        with pytest.raises(AuthorizationError):
            coordinator.confirm_release(lease_id, LANDLORD, Outcome.ALTERNATE_FAVORABLE, failed)

    def test_verdict_without_disclosed_release_refused(self, coordinator):
        lease_id = _exit_reported(coordinator)
        with pytest.raises(StateConflictError):
            coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, SUCCESS)
        lease = coordinator.get_lease(lease_id)
        assert lease.status == LeaseStatus.EXIT_REPORTED
        assert lease.verdict is None
        assert lease.disclosed_outcome is None

    def test_missing_result_for_locked_outcome_rejected(self, coordinator):
        lease_id = _exit_reported(coordinator)
        coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        with pytest.raises(ValidationError) as exc:
            coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, None)
        assert exc.value.details["result_code"] is None
        assert coordinator.get_lease(lease_id).status == LeaseStatus.EXIT_REPORTED

    def test_replay_after_settled(self, coordinator):
        lease_id = _exit_reported(coordinator)
        coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, SUCCESS)
        with pytest.raises(StateConflictError):
            coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, SUCCESS)


# ═══════════════════════════════════════════════════════════════════════
# RECLAIM
# ═══════════════════════════════════════════════════════════════════════


class TestReclaim:
    def test_payer_reclaims_the_unreleased_lock(self, coordinator):
        lease_id = _exit_reported(coordinator)
        coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, SUCCESS)

        tx = coordinator.reclaim_payload(
            lease_id, PAYER, Outcome.ALTERNATE_FAVORABLE
        ).to_ledger_json()
        assert tx == {
            "TransactionType": "EscrowCancel",
            "Account": PAYER,
            "Owner": PAYER,
            "OfferSequence": 10,
        }

    def test_reclaim_of_released_lock_still_built(self, coordinator):
        lease_id = _exit_reported(coordinator)
        coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)
        coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, SUCCESS)
        template = coordinator.reclaim_payload(lease_id, PAYER, Outcome.PRIMARY_FAVORABLE)
        assert template.offer_sequence == 11

    def test_available_before_a_verdict(self, coordinator):
        lease_id = _funded(coordinator)
        template = coordinator.reclaim_payload(lease_id, PAYER, Outcome.PRIMARY_FAVORABLE)
        assert template.offer_sequence == 11

    @pytest.mark.parametrize("caller", [OCCUPANT, LANDLORD, NOTARY])
    def test_only_the_payer(self, coordinator, caller):
        lease_id = _funded(coordinator)
        with pytest.raises(AuthorizationError):
            coordinator.reclaim_payload(lease_id, caller, Outcome.PRIMARY_FAVORABLE)

    def test_not_before_locks_are_confirmed(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        with pytest.raises(StateConflictError):
            coordinator.reclaim_payload(lease.id, PAYER, Outcome.PRIMARY_FAVORABLE)

    def test_stranger_rejected_before_lock_status(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        with pytest.raises(AuthorizationError):
            coordinator.reclaim_payload(lease.id, STRANGER, Outcome.PRIMARY_FAVORABLE)

    def test_owner_mismatch_is_integrity_error(self, coordinator):
        lease_id = _funded(coordinator)
        lease = coordinator.get_lease(lease_id)
        escrows = [e.model_copy(update={"owner": STRANGER}) for e in lease.escrows]
        coordinator.store.update(lease_id, {"escrows": escrows})
        with pytest.raises(IntegrityError):
            coordinator.reclaim_payload(lease_id, PAYER, Outcome.PRIMARY_FAVORABLE)

    def test_result_interpretation(self):
        assert reclaim_settled(SubmissionResult(result_code=TES_SUCCESS))
        assert reclaim_settled(SubmissionResult(result_code=TEC_NO_TARGET))
        assert not reclaim_settled(SubmissionResult(result_code=TEC_NO_PERMISSION))
        assert reclaim_too_early(SubmissionResult(result_code=TEC_NO_PERMISSION))
        assert not reclaim_too_early(SubmissionResult(result_code=TEC_NO_TARGET))


# ═══════════════════════════════════════════════════════════════════════
# ONE-BRANCH MODE
# ═══════════════════════════════════════════════════════════════════════


class TestOneBranchMode:
    @pytest.fixture
    def coordinator(self) -> SettlementCoordinator:
        return _make_coordinator(outcome_branches=1)

    def test_single_penalty_lock(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        assert [e.outcome for e in lease.escrows] == [Outcome.ALTERNATE_FAVORABLE]
        assert len(coordinator.lock_payloads(lease.id)) == 1

    def test_deposit_needs_only_the_one_sequence(self, coordinator):
        lease_id = _funded(coordinator, {Outcome.ALTERNATE_FAVORABLE: 10})
        assert coordinator.get_lease(lease_id).status == LeaseStatus.FUNDS_LOCKED

    def test_deposit_rejects_a_second_branch(self, coordinator):
        lease = coordinator.create_lease(_make_draft())
        with pytest.raises(ValidationError):
            coordinator.confirm_deposit(lease.id, PAYER, SEQUENCES)

    def test_penalty_released_by_settler(self, coordinator):
        lease_id = _funded(coordinator, {Outcome.ALTERNATE_FAVORABLE: 10})
        coordinator.report_exit(lease_id, OCCUPANT, "Carpet destroyed.")
        template = coordinator.release_payload(lease_id, NOTARY, Outcome.ALTERNATE_FAVORABLE)
        assert template.offer_sequence == 10
        settled = coordinator.confirm_release(
            lease_id, NOTARY, Outcome.ALTERNATE_FAVORABLE, SUCCESS
        )
        assert settled.verdict == Outcome.ALTERNATE_FAVORABLE

    def test_refund_settles_without_release(self, coordinator):
        lease_id = _funded(coordinator, {Outcome.ALTERNATE_FAVORABLE: 10})
        coordinator.report_exit(lease_id, OCCUPANT, "Spotless.")
        with pytest.raises(ValidationError):
            coordinator.release_payload(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE)

        settled = coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, None)
        assert settled.status == LeaseStatus.SETTLED
        assert settled.verdict == Outcome.PRIMARY_FAVORABLE
        assert settled.disclosed_outcome is None
        assert not settled.escrow_for(Outcome.ALTERNATE_FAVORABLE).settled

        template = coordinator.reclaim_payload(lease_id, PAYER, Outcome.ALTERNATE_FAVORABLE)
        assert template.offer_sequence == 10
        with pytest.raises(StateConflictError):
            coordinator.release_payload(lease_id, NOTARY, Outcome.ALTERNATE_FAVORABLE)

    def test_refund_refused_once_penalty_disclosed(self, coordinator):
        lease_id = _funded(coordinator, {Outcome.ALTERNATE_FAVORABLE: 10})
        coordinator.report_exit(lease_id, OCCUPANT, "Carpet destroyed.")
        coordinator.release_payload(lease_id, NOTARY, Outcome.ALTERNATE_FAVORABLE)
        with pytest.raises(StateConflictError):
            coordinator.confirm_release(lease_id, NOTARY, Outcome.PRIMARY_FAVORABLE, None)
        assert coordinator.get_lease(lease_id).status == LeaseStatus.EXIT_REPORTED

    def test_window_uses_alternate_setting(self):
        coordinator = _make_coordinator(outcome_branches=1, alternate_reclaim_days=7)
        lease = coordinator.create_lease(_make_draft())
        (template,) = coordinator.lock_payloads(lease.id, now=NOW)
        expected = int((NOW + timedelta(days=7)).timestamp()) - RIPPLE_EPOCH_OFFSET
        assert template.cancel_after == expected
