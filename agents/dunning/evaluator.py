"""Decide which (installment, step) pairs are due on a given day.

All date math happens on calendar dates in the school's timezone. Only the
CREATION anchor needs a timezone: ``created_at`` is an instant and is
converted to the school's local date before comparison.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, timedelta
from typing import Collection, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from .config import DunningConfig
from .dto import DueGroup, DuePair, DunningStep, EventType, Installment, LogStatus
from .repositories import InstallmentRepository, LogRepository, StepRepository

logger = logging.getLogger(__name__)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    """Calendar date of ``instant`` in ``tz`` (naive instants are UTC)."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    return instant.astimezone(tz).date()


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Half-open UTC range covering ``day`` in ``tz``."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)


def target_date(step: DunningStep, installment: Installment, tz: ZoneInfo) -> date:
    """Day on which ``step`` fires for ``installment``."""
    if step.event_type == EventType.CREATION:
        anchor = local_date(installment.created_at, tz)
    else:
        anchor = installment.due_date
    return anchor + timedelta(days=step.effective_offset)


def group_pairs(pairs: Iterable[DuePair]) -> List[DueGroup]:
    """Merge pairs of the same step, enrollment and target day into one message.

    Installments without an enrollment are never merged. Retries are kept
    apart from first attempts. Groups keep first-seen order; pairs inside a
    group are ordered by due date.
    """
    groups: Dict[tuple, DueGroup] = {}
    for pair in pairs:
        owner = pair.installment.enrollment_id or f"installment:{pair.installment.id}"
        key = (pair.step.id, owner, pair.target_date, pair.is_retry)
        group = groups.get(key)
        if group is None:
            group = groups[key] = DueGroup(pair.step, [])
        group.pairs.append(pair)
    for group in groups.values():
        group.pairs.sort(key=lambda p: (p.installment.due_date, p.installment.id))
    return list(groups.values())


class DunningEvaluator:
    """Pure selection logic on top of the step, installment and log repositories."""

    def __init__(
        self,
        steps: StepRepository,
        installments: InstallmentRepository,
        logs: LogRepository,
    ):
        self.steps = steps
        self.installments = installments
        self.logs = logs

    def due_pairs(
        self,
        school_id: str,
        today: date,
        config: Optional[DunningConfig] = None,
        *,
        event_types: Collection[EventType] = (EventType.CREATION, EventType.DUE_DATE),
        installment_ids: Optional[Collection[str]] = None,
    ) -> List[DuePair]:
        """Pairs due on ``today`` plus pairs eligible for a failed-send retry.

        Args:
            school_id: School to evaluate
            today: Reference date in the school's calendar
            config: Engine config (timezone, retry window)
            event_types: Restrict to these anchors
            installment_ids: Restrict to these installments

        Returns:
            Due pairs without a SUCCESS log, ordered by installment then step
        """
        config = config or DunningConfig.from_tenant(school_id)
        tz = config.tzinfo()
        steps = [
            s
            for s in self.steps.list_steps(school_id, active_only=True)
            if s.active and s.event_type in event_types
        ]
        if not steps:
            return []

        window = [today - timedelta(days=d) for d in range(0, config.retry_failed_days + 1)]

        due_steps = [s for s in steps if s.event_type == EventType.DUE_DATE]
        creation_steps = [s for s in steps if s.event_type == EventType.CREATION]

        due_dates = {
            day - timedelta(days=step.day_offset) for step in due_steps for day in window
        }
        created_between = None
        if creation_steps:
            created_between = (day_bounds(window[-1], tz)[0], day_bounds(today, tz)[1])

        candidates = self.installments.list_installments(
            school_id,
            due_dates=due_dates,
            created_between=created_between,
            installment_ids=installment_ids,
        )

        pairs: List[DuePair] = []
        for inst in candidates:
            if inst.is_cancelled or inst.school_id != school_id:
                continue
            for step in steps:
                target = target_date(step, inst, tz)
                if target == today:
                    pairs.append(DuePair(inst, step, target))
                elif today - timedelta(days=config.retry_failed_days) <= target < today:
                    pairs.append(DuePair(inst, step, target, is_retry=True))

        if not pairs:
            return []

        inst_ids = {p.installment.id for p in pairs}
        step_ids = {p.step.id for p in pairs}
        succeeded = self.logs.find_logged_pairs(school_id, inst_ids, step_ids, LogStatus.SUCCESS)
        failed = set()
        if any(p.is_retry for p in pairs):
            failed = self.logs.find_logged_pairs(school_id, inst_ids, step_ids, LogStatus.FAILED)

        result = [
            p
            for p in pairs
            if p.key not in succeeded and (not p.is_retry or p.key in failed)
        ]
        result.sort(key=lambda p: (p.installment.id, p.step.event_type.value, p.step.day_offset, p.step.id))

        retries = sum(1 for p in result if p.is_retry)
        logger.debug(
            "Evaluated dunning pairs",
            extra={
                "school_id": school_id,
                "reference_date": today.isoformat(),
                "candidates": len(candidates),
                "due": len(result) - retries,
                "retries": retries,
            },
        )
        return result

