"""Management of a school's dunning ruler (its list of steps)."""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Iterable, List

from .dto import DunningStep, EventType
from .repositories import StepRepository

logger = logging.getLogger(__name__)

# Ruler seeded for schools that never configured one
DEFAULT_RULER = (
    (EventType.CREATION, 0, "finance_on_created"),
    (EventType.DUE_DATE, -3, "finance_due_reminder"),
    (EventType.DUE_DATE, 0, "finance_on_due"),
    (EventType.DUE_DATE, 5, "finance_overdue"),
)


def validate_step(step: DunningStep) -> DunningStep:
    """Normalise a step before it is stored.

    Raises:
        ValueError: If the step cannot produce a message
    """
    if step.event_type == EventType.CREATION and step.day_offset != 0:
        step = replace(step, day_offset=0)
    if step.use_custom_message:
        if not (step.custom_message or "").strip():
            raise ValueError(f"Step {step.id}: custom message is empty")
    elif not (step.template_key or "").strip():
        raise ValueError(f"Step {step.id}: template key is required")
    return step


class StepCatalog:
    def __init__(self, steps: StepRepository):
        self.steps = steps

    def list_steps(self, school_id: str) -> List[DunningStep]:
        return self.steps.list_steps(school_id)

    def list_active_steps(self, school_id: str) -> List[DunningStep]:
        return self.steps.list_steps(school_id, active_only=True)

    def save_steps(self, school_id: str, steps: Iterable[DunningStep]) -> List[DunningStep]:
        """Replace the school's ruler with ``steps`` in one transaction.

        Steps keep their ids, so SUCCESS logs of unchanged steps stay valid
        and an edited step does not fire again for installments it already
        reached. Steps without an id get a new one.
        """
        prepared = []
        seen = set()
        for step in steps:
            if not step.id:
                step = replace(step, id=str(uuid.uuid4()))
            if step.id in seen:
                raise ValueError(f"Duplicate step id {step.id}")
            seen.add(step.id)
            prepared.append(validate_step(replace(step, school_id=school_id)))

        saved = self.steps.save_steps(school_id, prepared)
        logger.info(
            "Saved dunning ruler",
            extra={"school_id": school_id, "steps": len(saved), "active": sum(1 for s in saved if s.active)},
        )
        return saved

    def ensure_defaults(self, school_id: str) -> List[DunningStep]:
        """Seed the default ruler when the school has no steps yet."""
        existing = self.steps.list_steps(school_id)
        if existing:
            return existing
        defaults = [
            DunningStep(
                id=str(uuid.uuid4()),
                school_id=school_id,
                day_offset=offset,
                event_type=event_type,
                template_key=key,
            )
            for event_type, offset, key in DEFAULT_RULER
        ]
        return self.save_steps(school_id, defaults)
