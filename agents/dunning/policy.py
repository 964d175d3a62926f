from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, List

from backend.core.config import settings


def _parse_steps(csv: str) -> List[int]:
    return [int(x.strip()) for x in (csv or "").split(",") if x.strip()]


def backoff_seconds(attempt: int, steps: List[int] | None = None) -> int:
    steps = _parse_steps(settings.DUNNING_SEND_BACKOFF_STEPS) if steps is None else steps
    idx = min(max(attempt - 1, 0), len(steps) - 1) if steps else 0
    return steps[idx] if steps else 5


def is_transient_status(status_code: int) -> bool:
    """429 and 5xx are worth another attempt; other codes are final."""
    return status_code == 429 or 500 <= status_code < 600


@dataclass
class RetryPolicy:
    """Bounded in-call retries for a single channel send."""

    max_attempts: int = field(default_factory=lambda: settings.DUNNING_SEND_RETRY_MAX + 1)
    steps: List[int] = field(default_factory=lambda: _parse_steps(settings.DUNNING_SEND_BACKOFF_STEPS))
    sleep: Callable[[float], None] = time.sleep

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay(self, attempt: int) -> int:
        return backoff_seconds(attempt, self.steps)

    def wait(self, attempt: int) -> None:
        self.sleep(self.delay(attempt))

    def budget_seconds(self, request_timeout: float) -> float:
        """Worst case for one send: every attempt times out, with the backoff in between."""
        waits = sum(self.delay(attempt) for attempt in range(1, self.max_attempts))
        return self.max_attempts * request_timeout + waits


def retry_budget_seconds() -> float:
    """Worst-case duration of a WhatsApp send under the configured retry settings."""
    return RetryPolicy().budget_seconds(settings.WHATSAPP_HTTP_TIMEOUT_MS / 1000.0)
