"""Narrow repository interfaces the engine depends on.

The engine never talks to the database or HTTP directly; it receives
implementations of these protocols (``SqlDunningStore`` in production,
``InMemoryDunningStore`` in tests and local runs).
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Collection, Iterable, Mapping, Optional, Protocol, runtime_checkable

from .config import SchoolProfile
from .dto import DunningLog, DunningStep, Installment, LogStatus, Template, UsageTracker


@runtime_checkable
class SchoolRepository(Protocol):
    """Schools and their stored settings (owned by the tenant subsystem)."""

    def list_schools(self) -> list[SchoolProfile]:
        ...

    def get_school(self, school_id: str) -> Optional[SchoolProfile]:
        ...


@runtime_checkable
class StepRepository(Protocol):
    """Dunning ruler steps of a school."""

    def list_steps(self, school_id: str, *, active_only: bool = False) -> list[DunningStep]:
        ...

    def save_steps(self, school_id: str, steps: Iterable[DunningStep]) -> list[DunningStep]:
        """Upsert ``steps`` by id and drop the school's steps not in the set, atomically."""
        ...


@runtime_checkable
class InstallmentRepository(Protocol):
    """Installments (read-only) and the per-school usage counter."""

    def list_installments(
        self,
        school_id: str,
        *,
        due_dates: Collection[date] = (),
        created_between: Optional[tuple[datetime, datetime]] = None,
        installment_ids: Optional[Collection[str]] = None,
    ) -> list[Installment]:
        """Non-cancelled installments whose due date is in ``due_dates`` or whose
        creation instant falls in the half-open ``created_between`` range.

        When ``installment_ids`` is given, only those installments are considered.
        """
        ...

    def get_usage(self, school_id: str) -> Optional[UsageTracker]:
        ...

    def reserve_usage(self, school_id: str) -> bool:
        """Atomically count one message unless the limit is already reached.

        A school without a tracker is unlimited; its tracker is created.
        """
        ...

    def release_usage(self, school_id: str) -> None:
        """Give back one message taken by ``reserve_usage`` (never below zero)."""
        ...


@runtime_checkable
class TemplateRepository(Protocol):
    """Global template library."""

    def get_template(self, key: str) -> Optional[Template]:
        ...


@runtime_checkable
class LogRepository(Protocol):
    """Append-only dunning log (also the idempotency mutex)."""

    def append_log(
        self,
        *,
        school_id: str,
        installment_id: str,
        step_id: str,
        status: LogStatus,
        error_message: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> DunningLog:
        """Insert one row.

        Raises:
            DuplicateSendError: If a SUCCESS row already exists for the pair
        """
        ...

    def find_logged_pairs(
        self,
        school_id: str,
        installment_ids: Collection[str],
        step_ids: Collection[str],
        status: LogStatus,
    ) -> set[tuple[str, str]]:
        """(installment_id, step_id) pairs that have at least one row with ``status``."""
        ...

    def list_logs(self, school_id: str, *, installment_id: Optional[str] = None) -> list[DunningLog]:
        ...
