"""Daily dunning run: evaluate, render, guard, send and log.

One ``DunningEngine`` serves every school. Schools are processed in
parallel on a bounded pool and are isolated from each other: a school whose
configuration is broken fails its own batch only. Inside a school, due pairs
of the same step and enrollment are merged into one message (summed amount,
installment count) and groups are sent concurrently up to
``DunningConfig.max_concurrent_sends``; each group runs guard check, send
and one log write per pair in that order.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from concurrent.futures import wait as futures_wait
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from functools import partial
from typing import Any, Callable, Collection, Dict, List, Optional

from backend.core.config import settings
from backend.core.observability import set_tenant_id, set_trace_id
from backend.core.observability.logging import clear_context
from backend.core.observability.metrics import (
    increment_dunning_failed,
    increment_dunning_sent,
    increment_pairs_due,
    increment_quota_blocked,
    increment_tenant_errors,
    record_send_duration,
)

from .audit import DunningAudit
from .config import DunningConfig, SchoolProfile
from .dispatcher import ChannelDispatcher, DispatchResult, DryRunDispatcher, build_dispatcher, normalize_phone
from .dto import DueGroup, DuePair, DunningResult, EventType, LogStatus, PairOutcome, RunSummary
from .errors import ConfigError, DeliveryError, DunningError, QuotaExceededError, SendTimeoutError
from .evaluator import DunningEvaluator, group_pairs
from .renderer import MessageRenderer, RenderedMessage
from .repositories import (
    InstallmentRepository,
    LogRepository,
    SchoolRepository,
    StepRepository,
    TemplateRepository,
)
from .usage import QUOTA_REASON, UsageGuard

logger = logging.getLogger(__name__)


@dataclass
class _Batch:
    """State shared by the workers of one school's run."""

    school: SchoolProfile
    config: DunningConfig
    dispatcher: ChannelDispatcher
    dry_run: bool
    trace_id: Optional[str] = None
    send_pool: Optional[ThreadPoolExecutor] = None
    quota_latched: threading.Event = field(default_factory=threading.Event)
    abandoned: List[Future] = field(default_factory=list)


class DunningEngine:
    """Orchestrates the dunning run for one or all schools."""

    def __init__(
        self,
        schools: SchoolRepository,
        steps: StepRepository,
        installments: InstallmentRepository,
        templates: TemplateRepository,
        logs: LogRepository,
        *,
        dispatcher_factory: Callable[[SchoolProfile], ChannelDispatcher] = build_dispatcher,
        config_factory: Callable[[str], DunningConfig] = DunningConfig.from_tenant,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        max_tenant_workers: Optional[int] = None,
    ):
        self.schools = schools
        self.evaluator = DunningEvaluator(steps, installments, logs)
        self.renderer = MessageRenderer(templates)
        self.guard = UsageGuard(installments)
        self.audit = DunningAudit(logs)
        self.dispatcher_factory = dispatcher_factory
        self.config_factory = config_factory
        self.clock = clock
        self.max_tenant_workers = max_tenant_workers or settings.DUNNING_MAX_TENANT_WORKERS

        self._claims: set[tuple[str, str]] = set()
        self._claims_lock = threading.Lock()

    @classmethod
    def from_store(cls, store: Any, templates: Optional[TemplateRepository] = None, **kwargs: Any) -> "DunningEngine":
        """Build an engine whose repositories are all served by ``store``."""
        return cls(store, store, store, templates or store, store, **kwargs)

    def today(self, config: DunningConfig) -> date:
        return self.clock().astimezone(config.tzinfo()).date()

    def run_daily(self, reference_date: Optional[date] = None, *, dry_run: bool = False) -> RunSummary:
        """Run every school. One school's failure never stops the others."""
        trace_id = set_trace_id()
        schools = self.schools.list_schools()
        summary = RunSummary(reference_date=reference_date)

        logger.info(
            "Starting daily dunning run",
            extra={"schools": len(schools), "dry_run": dry_run, "workers": self.max_tenant_workers},
        )

        with ThreadPoolExecutor(max_workers=self.max_tenant_workers, thread_name_prefix="dunning-tenant") as pool:
            futures = [
                (school.school_id, pool.submit(self.run_for_school, school.school_id, reference_date, dry_run=dry_run, trace_id=trace_id))
                for school in schools
            ]
            for school_id, future in futures:
                try:
                    summary.results.append(future.result())
                except Exception as e:
                    result = DunningResult(school_id=school_id, reference_date=reference_date or date.min)
                    result.add_error(f"Unexpected error: {e}")
                    increment_tenant_errors("unexpected")
                    summary.results.append(result)

        logger.info(
            "Daily dunning run finished",
            extra={
                "schools": len(summary.results),
                "sent": summary.sent,
                "failed": summary.failed,
                "failed_schools": summary.failed_schools,
            },
        )
        return summary

    def run_for_school(
        self,
        school_id: str,
        reference_date: Optional[date] = None,
        *,
        dry_run: bool = False,
        trace_id: Optional[str] = None,
    ) -> DunningResult:
        """Evaluate and dispatch every step due for one school.

        Args:
            school_id: School to process
            reference_date: Day to evaluate (default: today in the school's timezone)
            dry_run: Render only; nothing is sent, logged or counted
            trace_id: Trace to attach to log lines

        Returns:
            Per-school result
        """
        return self._run(school_id, reference_date, dry_run=dry_run, trace_id=trace_id)

    def trigger_on_creation(
        self,
        school_id: str,
        installment_ids: Collection[str],
        *,
        dry_run: bool = False,
    ) -> DunningResult:
        """Fire the CREATION steps for freshly created installments right away.

        Pairs sent here carry a SUCCESS log, so the daily run skips them.
        """
        return self._run(
            school_id,
            None,
            dry_run=dry_run,
            event_types=(EventType.CREATION,),
            installment_ids=list(installment_ids),
        )

    def _run(
        self,
        school_id: str,
        reference_date: Optional[date],
        *,
        dry_run: bool,
        trace_id: Optional[str] = None,
        event_types: Collection[EventType] = (EventType.CREATION, EventType.DUE_DATE),
        installment_ids: Optional[Collection[str]] = None,
    ) -> DunningResult:
        start_time = time.time()
        set_trace_id(trace_id)
        set_tenant_id(school_id)
        result = DunningResult(school_id=school_id, reference_date=reference_date or date.min, dry_run=dry_run)
        dispatcher: Optional[ChannelDispatcher] = None
        batch: Optional[_Batch] = None

        try:
            school = self.schools.get_school(school_id)
            if school is None:
                result.add_error("School not found")
                increment_tenant_errors("not_found")
                return result

            config = self.config_factory(school_id)
            today = reference_date or self.today(config)
            result.reference_date = today

            skip = school.skip_reason()
            if skip:
                result.skipped_reason = skip
                logger.info("School skipped", extra={"school_id": school_id, "reason": skip})
                return result

            dispatcher = DryRunDispatcher() if dry_run else self.dispatcher_factory(school)

            pairs = self.evaluator.due_pairs(
                school_id, today, config, event_types=event_types, installment_ids=installment_ids
            )
            result.pairs_due = len(pairs)
            if not dry_run:
                increment_pairs_due(len(pairs))

            if pairs:
                batch = _Batch(school, config, dispatcher, dry_run, trace_id)
                self._process(pairs, batch, result)

        except ConfigError as e:
            result.add_error(str(e))
            increment_tenant_errors("config")
            logger.error(
                "Dunning batch aborted: configuration error",
                extra={"school_id": school_id, "error": str(e)},
            )
        except Exception as e:
            result.add_error(f"Unexpected error: {e}")
            increment_tenant_errors("unexpected")
            logger.exception("Dunning batch failed", extra={"school_id": school_id})
        finally:
            if dispatcher is not None:
                self._close_dispatcher(dispatcher, batch.abandoned if batch else [])
            result.processing_time_seconds = time.time() - start_time
            logger.info(
                "School dunning run finished",
                extra={
                    "school_id": school_id,
                    "reference_date": result.reference_date.isoformat(),
                    "pairs_due": result.pairs_due,
                    "sent": result.sent,
                    "failed": result.failed,
                    "duplicates": result.duplicates,
                    "quota_blocked": result.quota_blocked,
                    "dry_run": dry_run,
                },
            )
            clear_context()

        return result

    def _process(self, pairs: List[DuePair], batch: _Batch, result: DunningResult) -> None:
        groups = group_pairs(pairs)
        workers = batch.config.max_concurrent_sends
        # Sends run on their own pool so a hung channel call can be timed out
        batch.send_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dunning-send")
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dunning-pair") as group_pool:
                futures = [(group, group_pool.submit(self._handle_group, group, batch)) for group in groups]
                for group, future in futures:
                    try:
                        outcomes = future.result()
                    except Exception as e:
                        # Log write itself failed; the pairs stay eligible
                        for installment_id, step_id in group.keys:
                            result.add_error(f"{installment_id}/{step_id}: {e}")
                        continue
                    for outcome in outcomes:
                        self._tally(result, outcome)
        finally:
            # Abandoned sends finish in the background and settle themselves
            batch.send_pool.shutdown(wait=False)

    @staticmethod
    def _tally(result: DunningResult, outcome: PairOutcome) -> None:
        result.outcomes.append(outcome)
        if outcome.status == LogStatus.SUCCESS:
            result.sent += 1
        elif outcome.status == LogStatus.FAILED:
            result.failed += 1
            if outcome.error_message == QUOTA_REASON:
                result.quota_blocked += 1
        elif outcome.skipped == "duplicate":
            result.duplicates += 1

    def _claim(self, key: tuple[str, str]) -> bool:
        with self._claims_lock:
            if key in self._claims:
                return False
            self._claims.add(key)
            return True

    def _release(self, key: tuple[str, str]) -> None:
        with self._claims_lock:
            self._claims.discard(key)

    @staticmethod
    def _skipped(pair: DuePair, reason: str) -> PairOutcome:
        return PairOutcome(pair.installment.id, pair.step.id, None, skipped=reason, is_retry=pair.is_retry)

    def _handle_group(self, group: DueGroup, batch: _Batch) -> List[PairOutcome]:
        set_trace_id(batch.trace_id)
        set_tenant_id(batch.school.school_id)
        outcomes: List[PairOutcome] = []
        claimed: List[DuePair] = []
        for pair in group.pairs:
            if self._claim(pair.key):
                claimed.append(pair)
            else:
                outcomes.append(self._skipped(pair, "in_flight"))

        try:
            pending = claimed
            if pending and not batch.dry_run:
                # Another run of this process may have finished some pairs since evaluation
                sent = self.audit.already_sent(pending)
                outcomes.extend(self._skipped(pair, "duplicate") for pair in pending if pair.key in sent)
                pending = [pair for pair in pending if pair.key not in sent]
            if pending:
                outcomes.extend(self._dispatch_group(DueGroup(group.step, pending), batch))
            return outcomes
        finally:
            for pair in claimed:
                self._release(pair.key)
            clear_context()

    def _dispatch_group(self, group: DueGroup, batch: _Batch) -> List[PairOutcome]:
        metadata: Dict[str, Any] = {"step_label": group.step.describe()}
        if len(group.pairs) > 1:
            metadata["grouped_installment_ids"] = [pair.installment.id for pair in group.pairs]
        try:
            return self._deliver(group, batch, metadata)
        except DunningError as e:
            return [self._fail(pair, e.reason, str(e), metadata, batch.dry_run, e) for pair in group.pairs]
        except Exception as e:
            logger.exception(
                "Unexpected error dispatching pair",
                extra={"installment_ids": [pair.installment.id for pair in group.pairs], "step_id": group.step.id},
            )
            return [
                self._fail(pair, "unexpected", f"Unexpected error: {e}", metadata, batch.dry_run, e)
                for pair in group.pairs
            ]

    def _deliver(self, group: DueGroup, batch: _Batch, metadata: Dict[str, Any]) -> List[PairOutcome]:
        step, school, config = group.step, batch.school, batch.config

        if batch.quota_latched.is_set():
            raise QuotaExceededError(QUOTA_REASON)

        rendered = self.renderer.render(step, group.installments, school, config)
        metadata["template_key"] = rendered.template_key
        metadata["message"] = rendered.text

        # Pairs of a group share the enrollment, hence the guardian
        recipient = normalize_phone(group.pairs[0].installment.guardian_phone, config.country_code)
        if not recipient:
            raise DeliveryError("Guardian has no phone number")
        metadata["recipient"] = recipient

        if batch.dry_run:
            self._send(batch, recipient, rendered)
            return [self._skipped(pair, "dry_run") for pair in group.pairs]

        # One message, one unit of quota, whatever the group size
        allowed, reason = self.guard.try_reserve(school.school_id)
        if not allowed:
            batch.quota_latched.set()
            raise QuotaExceededError(reason or QUOTA_REASON)

        metadata["channel"] = batch.dispatcher.name
        try:
            sent = self._send(batch, recipient, rendered)
        except SendTimeoutError as e:
            # The reservation stays taken until the abandoned call returns
            batch.abandoned.append(e.pending)
            e.pending.add_done_callback(partial(self._settle_late, group, dict(metadata)))
            raise
        except Exception:
            self.guard.complete(school.school_id, False)
            raise
        self.guard.complete(school.school_id, sent.ok)

        metadata["provider_status"] = sent.provider_status
        if not sent.ok:
            raise DeliveryError(sent.error or "Delivery failed", sent.provider_status)
        metadata["message_id"] = sent.message_id

        outcomes = []
        for pair in group.pairs:
            if self.audit.record_attempt(pair, LogStatus.SUCCESS, metadata=metadata) == "duplicate":
                outcomes.append(self._skipped(pair, "duplicate"))
                continue
            increment_dunning_sent()
            outcomes.append(PairOutcome(pair.installment.id, step.id, LogStatus.SUCCESS, is_retry=pair.is_retry))

        logger.info(
            "Dunning message sent",
            extra={
                "installment_ids": [pair.installment.id for pair in group.pairs],
                "step_id": step.id,
                "step_label": metadata["step_label"],
                "is_retry": group.pairs[0].is_retry,
            },
        )
        return outcomes

    def _send(self, batch: _Batch, recipient: str, rendered: RenderedMessage) -> DispatchResult:
        timeout = batch.config.send_timeout_seconds
        start_time = time.time()
        # The channel stops retrying at the deadline, so it gives up no later than we do
        deadline = time.monotonic() + timeout
        future = batch.send_pool.submit(
            batch.dispatcher.send, recipient, rendered.title, rendered.text, deadline=deadline
        )
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout as e:
            raise SendTimeoutError(f"Send timed out after {timeout:g}s", future) from e
        finally:
            record_send_duration((time.time() - start_time) * 1000.0)

    def _settle_late(self, group: DueGroup, metadata: Dict[str, Any], future: Future) -> None:
        """Count and record a send that completed after the engine stopped waiting for it.

        A late delivery gets its SUCCESS rows, so the failed-send retry never
        sends the message a second time.
        """
        school_id = group.pairs[0].installment.school_id
        try:
            sent = future.result()
        except Exception:
            logger.warning(
                "Abandoned send raised",
                exc_info=True,
                extra={"school_id": school_id, "step_id": group.step.id},
            )
            sent = None
        delivered = sent is not None and sent.ok
        self.guard.complete(school_id, delivered)
        if not delivered:
            return

        metadata.update(provider_status=sent.provider_status, message_id=sent.message_id, late_delivery=True)
        for pair in group.pairs:
            if self.audit.record_attempt(pair, LogStatus.SUCCESS, metadata=metadata) == "ok":
                increment_dunning_sent()
        logger.warning(
            "Dunning message delivered after send timeout",
            extra={
                "school_id": school_id,
                "installment_ids": [pair.installment.id for pair in group.pairs],
                "step_id": group.step.id,
            },
        )

    def _fail(
        self,
        pair: DuePair,
        reason: str,
        message: str,
        metadata: Dict[str, Any],
        dry_run: bool,
        error: Exception,
    ) -> PairOutcome:
        installment_id, step_id = pair.key
        if isinstance(error, DeliveryError) and error.provider_status is not None:
            metadata["provider_status"] = error.provider_status
        metadata["error_reason"] = reason

        if not dry_run:
            self.audit.record_attempt(pair, LogStatus.FAILED, error=message, metadata=metadata)
            increment_dunning_failed(reason)
            if isinstance(error, QuotaExceededError):
                increment_quota_blocked()

        logger.warning(
            "Dunning pair failed",
            extra={
                "installment_id": installment_id,
                "step_id": step_id,
                "reason": reason,
                "error": message,
                "dry_run": dry_run,
            },
        )
        return PairOutcome(installment_id, step_id, LogStatus.FAILED, error_message=message, is_retry=pair.is_retry)

    @staticmethod
    def _close_dispatcher(dispatcher: ChannelDispatcher, abandoned: List[Future]) -> None:
        close = getattr(dispatcher, "close", None)
        if not callable(close):
            return
        pending = [future for future in abandoned if not future.done()]
        if not pending:
            close()
            return

        # Keep the channel open for sends still running in the background
        def close_when_done() -> None:
            futures_wait(pending)
            close()

        threading.Thread(target=close_when_done, name="dunning-close", daemon=True).start()
