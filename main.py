#!/usr/bin/env python3
"""
Bond Escrow — Walkthrough
==========================

Runs one lease through its whole life against the in-memory store, with a
scripted stand-in for the ledger, and prints what each party saw.

Usage:
    python main.py                  # Refund verdict (bond back to the occupant)
    python main.py penalty          # Penalty verdict (bond to the landlord)
"""

from __future__ import annotations

import sys

from bond_escrow.config import load_settings
from bond_escrow.ledger import TES_SUCCESS, SubmissionResult
from bond_escrow.models import Lease, LeaseDraft, Outcome
from bond_escrow.payloads import TransactionTemplate, drops_to_xrp
from bond_escrow.settlement import SettlementCoordinator
from bond_escrow.store import InMemoryLeaseStore

# ─── Cast ───────────────────────────────────────────────────────────

PAYER = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"  # Tenant, funds the bond
OCCUPANT = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"  # Tenant's move-out identity
LANDLORD = "rGWrZyQqhTp9Xu7G5Pkayo7bXjH4k4QYpf"
NOTARY = "rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn"

DRAFT = LeaseDraft(
    payer=PAYER,
    primary_recipient=OCCUPANT,
    alternate_recipient=LANDLORD,
    settler=NOTARY,
    bond_amount_drops=5_000_000,
    property_address="14 Harbour Street, Flat 2",
    baseline_narrative="Walls freshly painted, carpets clean, all appliances operational.",
)


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72


# ─── Scripted Ledger ────────────────────────────────────────────────


class ScriptedSubmitter:
    """Accepts every template and hands out consecutive sequence numbers."""

    def __init__(self, first_sequence: int = 10):
        self._next = first_sequence
        self.submitted: list[TransactionTemplate] = []

    def submit(self, template: TransactionTemplate) -> SubmissionResult:
        self.submitted.append(template)
        sequence = self._next
        self._next += 1
        return SubmissionResult(result_code=TES_SUCCESS, sequence=sequence)


# ─── Walkthrough ────────────────────────────────────────────────────


def run_walkthrough(
    verdict: Outcome = Outcome.PRIMARY_FAVORABLE,
    coordinator: SettlementCoordinator | None = None,
    submitter: ScriptedSubmitter | None = None,
) -> Lease:
    """Create, fund, vacate and settle one lease. Returns the settled lease."""
    coordinator = coordinator or SettlementCoordinator(InMemoryLeaseStore(), load_settings())
    submitter = submitter or ScriptedSubmitter()

    lease = coordinator.create_lease(DRAFT)

    sequences = {}
    for escrow, template in zip(lease.escrows, coordinator.lock_payloads(lease.id)):
        result = submitter.submit(template)
        sequences[escrow.outcome] = result.sequence
    coordinator.confirm_deposit(lease.id, PAYER, sequences)

    coordinator.report_exit(
        lease.id, OCCUPANT, "Good: minor scuff on bedroom wall, otherwise as at move-in."
    )

    if lease.escrow_for(verdict) is None:
        # One-branch lease: nothing to release, the payer reclaims later.
        return coordinator.confirm_release(lease.id, NOTARY, verdict, None)

    release = coordinator.release_payload(lease.id, NOTARY, verdict)
    result = submitter.submit(release)
    return coordinator.confirm_release(lease.id, NOTARY, verdict, result)


# ─── Pretty Printer ─────────────────────────────────────────────────


def print_report(lease: Lease) -> int:
    """Pretty-print the settled lease with ANSI color codes.

    Returns:
        0 if the lease settled, 1 otherwise.
    """
    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  BOND ESCROW WALKTHROUGH{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Lease:       {lease.id}")
    print(f"  Property:    {lease.property_address}")
    print(f"  Bond:        {drops_to_xrp(lease.bond_amount_drops)} XRP")
    print(f"  Status:      {lease.status.value}")
    print(f"{'─' * _WIDTH}")

    for escrow in lease.escrows:
        color = _GREEN if escrow.settled else _DIM
        state = "RELEASED" if escrow.settled else "left locked (payer reclaims after expiry)"
        print(f"  {color}[{escrow.outcome.value}]{_RESET} seq {escrow.sequence} → {escrow.destination}")
        print(f"    {_DIM}condition {escrow.condition[:24]}...{_RESET}")
        print(f"    {color}{state}{_RESET}")

    print(f"{'=' * _WIDTH}")
    if lease.verdict is None:
        print(f"  {_RED}{_BOLD}LEASE NOT SETTLED{_RESET}")
        print(f"{'=' * _WIDTH}\n")
        return 1
    print(f"  {_GREEN}{_BOLD}SETTLED  --  {lease.verdict.value}{_RESET}")
    print(f"{'=' * _WIDTH}\n")
    return 0


# ─── Main ────────────────────────────────────────────────────────────


def main():
    """Run the walkthrough and print the report."""
    verdict = Outcome.ALTERNATE_FAVORABLE if sys.argv[1:2] == ["penalty"] else Outcome.PRIMARY_FAVORABLE
    lease = run_walkthrough(verdict)
    sys.exit(print_report(lease))


if __name__ == "__main__":
    main()
