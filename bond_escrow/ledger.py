"""
Ledger submission collaborator — the interface, not an implementation.

The core never talks to the network. Whoever embeds it supplies a
LedgerSubmitter that owns its own client/session, autofills network fields,
signs, submits and reports back a SubmissionResult. No process-wide
connection lives in this package, and no retries happen here.
"""

from __future__ import annotations

from typing import Optional, Protocol

from pydantic import BaseModel

from .payloads import TransactionTemplate

# ─── Result Codes ────────────────────────────────────────────────────

TES_SUCCESS = "tesSUCCESS"
TEC_NO_TARGET = "tecNO_TARGET"  # Escrow no longer exists
TEC_NO_PERMISSION = "tecNO_PERMISSION"  # CancelAfter not yet reached

# A reclaim of a lock that is already gone has nothing left to do.
RECLAIM_SETTLED_CODES: frozenset[str] = frozenset({TES_SUCCESS, TEC_NO_TARGET})


class SubmissionResult(BaseModel):
    """What the submission layer reports after a transaction is final."""

    result_code: str
    sequence: Optional[int] = None  # Sequence the network assigned to the signer
    tx_hash: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result_code == TES_SUCCESS


class LedgerSubmitter(Protocol):
    """Signs and submits a template; blocks until the outcome is final."""

    def submit(self, template: TransactionTemplate) -> SubmissionResult: ...


def reclaim_settled(result: SubmissionResult) -> bool:
    """True if a reclaim left nothing locked — cancelled now or already gone."""
    return result.result_code in RECLAIM_SETTLED_CODES


def reclaim_too_early(result: SubmissionResult) -> bool:
    """True if the ledger refused the reclaim because the window is still open."""
    return result.result_code == TEC_NO_PERMISSION
