"""In-memory repository implementations.

Used by tests and dry local runs. Semantics mirror ``SqlDunningStore``:
at most one SUCCESS log per (installment, step), usage reservations that
check and count in one step, and all-or-nothing step saves.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import UTC, date, datetime
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional

from .config import SchoolProfile
from .dto import (
    DunningLog,
    DunningStep,
    Installment,
    LogStatus,
    Template,
    UsageTracker,
)
from .errors import DuplicateSendError


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class InMemoryDunningStore:
    """Thread-safe store implementing every dunning repository protocol."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.schools: Dict[str, SchoolProfile] = {}
        self.steps: Dict[str, DunningStep] = {}
        self.installments: Dict[str, Installment] = {}
        self.templates: Dict[str, Template] = {}
        self.usage: Dict[str, UsageTracker] = {}
        self.logs: List[DunningLog] = []

    # Seeding helpers

    def add_school(self, profile: SchoolProfile) -> SchoolProfile:
        with self._lock:
            self.schools[profile.school_id] = profile
        return profile

    def add_installment(self, installment: Installment) -> Installment:
        with self._lock:
            self.installments[installment.id] = installment
        return installment

    def add_template(self, template: Template) -> Template:
        with self._lock:
            self.templates[template.key] = template
        return template

    def set_usage(self, school_id: str, *, count: int = 0, limit: int = 0) -> UsageTracker:
        tracker = UsageTracker(school_id=school_id, messages_sent_count=count, limit_messages=limit)
        with self._lock:
            self.usage[school_id] = tracker
        return tracker

    # SchoolRepository

    def list_schools(self) -> list[SchoolProfile]:
        with self._lock:
            return sorted(self.schools.values(), key=lambda s: s.school_id)

    def get_school(self, school_id: str) -> Optional[SchoolProfile]:
        with self._lock:
            return self.schools.get(school_id)

    # StepRepository

    def list_steps(self, school_id: str, *, active_only: bool = False) -> list[DunningStep]:
        with self._lock:
            steps = [
                replace(s)
                for s in self.steps.values()
                if s.school_id == school_id and (s.active or not active_only)
            ]
        return sorted(steps, key=lambda s: (s.event_type.value != "CREATION", s.day_offset, s.id))

    def save_steps(self, school_id: str, steps: Iterable[DunningStep]) -> list[DunningStep]:
        incoming = [replace(s, school_id=school_id) for s in steps]
        with self._lock:
            for step in incoming:
                current = self.steps.get(step.id)
                if current is not None and current.school_id != school_id:
                    raise ValueError(f"Step {step.id} belongs to another school")
            keep = {s.id for s in incoming}
            for step_id in [k for k, s in self.steps.items() if s.school_id == school_id and k not in keep]:
                del self.steps[step_id]
            for step in incoming:
                self.steps[step.id] = step
        return self.list_steps(school_id)

    # InstallmentRepository

    def list_installments(
        self,
        school_id: str,
        *,
        due_dates: Collection[date] = (),
        created_between: Optional[tuple[datetime, datetime]] = None,
        installment_ids: Optional[Collection[str]] = None,
    ) -> list[Installment]:
        wanted_dates = set(due_dates)
        if created_between is not None:
            start, end = (_as_utc(created_between[0]), _as_utc(created_between[1]))
        result = []
        with self._lock:
            for inst in self.installments.values():
                if inst.school_id != school_id or inst.is_cancelled:
                    continue
                if installment_ids is not None and inst.id not in installment_ids:
                    continue
                hit = inst.due_date in wanted_dates
                if not hit and created_between is not None:
                    hit = start <= _as_utc(inst.created_at) < end
                if hit:
                    result.append(inst)
        return sorted(result, key=lambda i: i.id)

    def get_usage(self, school_id: str) -> Optional[UsageTracker]:
        with self._lock:
            tracker = self.usage.get(school_id)
            return replace(tracker) if tracker else None

    def reserve_usage(self, school_id: str) -> bool:
        with self._lock:
            tracker = self.usage.get(school_id)
            if tracker is None:
                tracker = UsageTracker(school_id=school_id)
                self.usage[school_id] = tracker
            if tracker.is_limited and tracker.messages_sent_count >= tracker.limit_messages:
                return False
            tracker.messages_sent_count += 1
            return True

    def release_usage(self, school_id: str) -> None:
        with self._lock:
            tracker = self.usage.get(school_id)
            if tracker is not None and tracker.messages_sent_count > 0:
                tracker.messages_sent_count -= 1

    # TemplateRepository

    def get_template(self, key: str) -> Optional[Template]:
        with self._lock:
            return self.templates.get(key)

    # LogRepository

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
        with self._lock:
            if status == LogStatus.SUCCESS and any(
                log.installment_id == installment_id
                and log.step_id == step_id
                and log.status == LogStatus.SUCCESS
                for log in self.logs
            ):
                raise DuplicateSendError(installment_id, step_id)
            log = DunningLog(
                id=str(uuid.uuid4()),
                school_id=school_id,
                installment_id=installment_id,
                step_id=step_id,
                status=status,
                error_message=error_message,
                metadata=dict(metadata or {}),
                sent_at=datetime.now(UTC),
            )
            self.logs.append(log)
            return log

    def find_logged_pairs(
        self,
        school_id: str,
        installment_ids: Collection[str],
        step_ids: Collection[str],
        status: LogStatus,
    ) -> set[tuple[str, str]]:
        inst = set(installment_ids)
        steps = set(step_ids)
        with self._lock:
            return {
                (log.installment_id, log.step_id)
                for log in self.logs
                if log.school_id == school_id
                and log.status == status
                and log.installment_id in inst
                and log.step_id in steps
            }

    def list_logs(self, school_id: str, *, installment_id: Optional[str] = None) -> list[DunningLog]:
        with self._lock:
            return [
                log
                for log in self.logs
                if log.school_id == school_id
                and (installment_id is None or log.installment_id == installment_id)
            ]
