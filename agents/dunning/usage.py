"""Monthly message quota enforcement."""

from __future__ import annotations

import logging
from typing import Optional

from .repositories import InstallmentRepository

logger = logging.getLogger(__name__)

QUOTA_REASON = "Monthly Limit Exceeded"


class UsageGuard:
    """Gate every send on the per-school usage counter.

    A message is counted when it is reserved, by a single conditional update
    in the repository, and given back when it is not delivered. The limit
    therefore holds across engines and processes sharing the same database,
    and one school's counter I/O never waits on another school's.
    """

    def __init__(self, usage: InstallmentRepository):
        self.usage = usage

    def try_reserve(self, school_id: str) -> tuple[bool, Optional[str]]:
        """Reserve one message for ``school_id``.

        Returns:
            (allowed, reason) where reason is set when the send is denied
        """
        if self.usage.reserve_usage(school_id):
            return True, None

        tracker = self.usage.get_usage(school_id)
        logger.info(
            "Quota exhausted",
            extra={
                "school_id": school_id,
                "messages_sent_count": tracker.messages_sent_count if tracker else None,
                "limit_messages": tracker.limit_messages if tracker else None,
            },
        )
        return False, QUOTA_REASON

    def complete(self, school_id: str, delivered: bool) -> None:
        """Settle a reservation: a delivered message stays counted, anything else is given back."""
        if not delivered:
            self.usage.release_usage(school_id)
