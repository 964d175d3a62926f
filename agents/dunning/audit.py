"""Audit trail of dispatch attempts.

The log doubles as the idempotency mutex: a second SUCCESS row for the same
(installment, step) is rejected by the repository and reported here as a
duplicate rather than an error.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence

from backend.core.observability.metrics import increment_dunning_duplicates

from .dto import DuePair, LogStatus
from .errors import DuplicateSendError
from .repositories import LogRepository

logger = logging.getLogger(__name__)


class DunningAudit:
    def __init__(self, logs: LogRepository):
        self.logs = logs

    def already_sent(self, pairs: Sequence[DuePair]) -> set[tuple[str, str]]:
        """Keys of ``pairs`` that already have a SUCCESS row."""
        if not pairs:
            return set()
        school_id = pairs[0].installment.school_id
        sent = self.logs.find_logged_pairs(
            school_id,
            {p.installment.id for p in pairs},
            {p.step.id for p in pairs},
            LogStatus.SUCCESS,
        )
        return {p.key for p in pairs if p.key in sent}

    def record_attempt(
        self,
        pair: DuePair,
        status: LogStatus,
        error: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Append one log row for ``pair``.

        Returns:
            "ok" when the row was written, "duplicate" when a SUCCESS row
            already existed for the pair
        """
        meta = dict(metadata or {})
        meta.setdefault("step_label", pair.step.describe())
        meta.setdefault("target_date", pair.target_date.isoformat())
        if pair.is_retry:
            meta["is_retry"] = True
        try:
            self.logs.append_log(
                school_id=pair.installment.school_id,
                installment_id=pair.installment.id,
                step_id=pair.step.id,
                status=status,
                error_message=error,
                metadata=meta,
            )
        except DuplicateSendError:
            increment_dunning_duplicates()
            logger.info(
                "Duplicate dunning send suppressed",
                extra={
                    "school_id": pair.installment.school_id,
                    "installment_id": pair.installment.id,
                    "step_id": pair.step.id,
                },
            )
            return "duplicate"
        return "ok"
