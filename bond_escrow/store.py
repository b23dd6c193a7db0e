"""
Lease storage collaborator.

LeaseStore is the interface the core consumes; any backend (a SQL table
pair, a document store) can stand behind it as long as every write is a
single atomic compare-and-swap:

  - ``expect`` names field values the stored lease must still hold at
    commit time. If any differ, nothing is written and StateConflictError
    is raised. This is what stops a second concurrent submission of the
    same action from applying twice.
  - create_evidence() writes the evidence AND the lease patch together,
    or neither.

InMemoryLeaseStore is the reference implementation, used by the HTTP app
and the walkthrough.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import ValidationError as PydanticValidationError

from .exceptions import IntegrityError, LeaseNotFoundError, StateConflictError
from .models import Evidence, Lease

logger = logging.getLogger(__name__)


class LeaseStore(Protocol):
    """Create / read / update leases and their evidence."""

    def get(self, lease_id: str) -> Lease | None: ...

    def create(self, fields: Mapping[str, Any]) -> Lease: ...

    def update(
        self,
        lease_id: str,
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> Lease: ...

    def create_evidence(
        self,
        lease_id: str,
        fields: Mapping[str, Any],
        *,
        lease_patch: Mapping[str, Any] | None = None,
        expect: Mapping[str, Any] | None = None,
    ) -> Evidence: ...

    def find_by_party(self, address: str) -> list[Lease]: ...


def new_lease_id() -> str:
    return f"lease_{uuid.uuid4().hex[:16]}"


class InMemoryLeaseStore:
    """Dictionary-backed LeaseStore guarded by a single lock.

    Leases are copied on the way in and on the way out, so callers can never
    mutate stored state except through update().
    """

    def __init__(self) -> None:
        self._leases: dict[str, Lease] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._leases)

    def get(self, lease_id: str) -> Lease | None:
        with self._lock:
            lease = self._leases.get(lease_id)
            return lease.model_copy(deep=True) if lease else None

    def create(self, fields: Mapping[str, Any]) -> Lease:
        now = datetime.now(timezone.utc)
        lease = self._build({**fields, "id": new_lease_id(), "created_at": now, "updated_at": now})
        with self._lock:
            self._leases[lease.id] = lease
        logger.info("Stored lease %s", lease.id)
        return lease.model_copy(deep=True)

    def update(
        self,
        lease_id: str,
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> Lease:
        with self._lock:
            current = self._current(lease_id, expect)
            updated = self._patched(current, patch)
            self._leases[lease_id] = updated
            return updated.model_copy(deep=True)

    def create_evidence(
        self,
        lease_id: str,
        fields: Mapping[str, Any],
        *,
        lease_patch: Mapping[str, Any] | None = None,
        expect: Mapping[str, Any] | None = None,
    ) -> Evidence:
        with self._lock:
            current = self._current(lease_id, expect)
            if current.evidence is not None:
                raise StateConflictError(
                    "Move-out evidence has already been submitted.", {"lease_id": lease_id}
                )

            evidence = Evidence(
                lease_id=lease_id, submitted_at=datetime.now(timezone.utc), **fields
            )
            # Both records are built before either is committed.
            updated = self._patched(current, {**(lease_patch or {}), "evidence": evidence})
            self._leases[lease_id] = updated
            return evidence.model_copy(deep=True)

    def find_by_party(self, address: str) -> list[Lease]:
        """All leases where ``address`` is payer, a recipient or the settler, newest first."""
        with self._lock:
            matches = [
                lease.model_copy(deep=True)
                for lease in self._leases.values()
                if address in lease.parties()
            ]
        return sorted(matches, key=lambda lease: lease.created_at, reverse=True)

    # ─── Internals (caller holds the lock) ──────────────────────────

    def _current(self, lease_id: str, expect: Mapping[str, Any] | None) -> Lease:
        current = self._leases.get(lease_id)
        if current is None:
            raise LeaseNotFoundError(lease_id)

        for field, expected in (expect or {}).items():
            actual = getattr(current, field)
            if actual != expected:
                logger.warning(
                    "Compare-and-swap failed on lease %s: %s is %r, expected %r",
                    lease_id,
                    field,
                    actual,
                    expected,
                )
                raise StateConflictError(
                    f"Lease {field} changed concurrently (now {_display(actual)}).",
                    {"lease_id": lease_id, "field": field, "actual": _display(actual)},
                )
        return current

    def _patched(self, current: Lease, patch: Mapping[str, Any]) -> Lease:
        data = current.model_dump()
        data.update(patch)
        data["updated_at"] = datetime.now(timezone.utc)
        return self._build(data)

    @staticmethod
    def _build(data: Mapping[str, Any]) -> Lease:
        try:
            return Lease.model_validate(dict(data))
        except PydanticValidationError as exc:
            logger.error("Refusing to store an invalid lease record: %s", exc)
            raise IntegrityError(
                "Lease record would violate its invariants; nothing was written.",
                {"errors": [e["msg"] for e in exc.errors()]},
            ) from exc


def _display(value: Any) -> Any:
    return getattr(value, "value", value)
