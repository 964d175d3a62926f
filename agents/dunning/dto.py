"""Data Transfer Objects for the dunning engine.

Plain dataclasses shared by the evaluator, renderer, repositories and the
engine. Installments, templates and schools are owned by other subsystems
and arrive here read-only; steps, logs and usage trackers are the engine's
own records.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class EventType(Enum):
    """Anchor event a step's offset is measured from."""
    CREATION = "CREATION"
    DUE_DATE = "DUE_DATE"


class InstallmentStatus(Enum):
    """Billing status of an installment."""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class LogStatus(Enum):
    """Outcome of one dispatch attempt."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class DunningStep:
    """One rule of a school's dunning ruler."""

    id: str
    school_id: str
    day_offset: int = 0
    event_type: EventType = EventType.DUE_DATE
    template_key: Optional[str] = None
    use_custom_message: bool = False
    custom_message: Optional[str] = None
    active: bool = True

    @property
    def effective_offset(self) -> int:
        """Offset used for date math (CREATION steps fire on the creation day)."""
        if self.event_type == EventType.CREATION:
            return 0
        return self.day_offset

    def describe(self) -> str:
        """Short operator label, as shown in the audit view."""
        if self.event_type == EventType.CREATION:
            return "Gatilho"
        if self.day_offset == 0:
            return "No Dia"
        if self.day_offset < 0:
            return f"{abs(self.day_offset)}d Antes"
        return f"{self.day_offset}d Depois"


@dataclass
class Installment:
    """Billing installment joined with its enrollment, student and guardian."""

    id: str
    school_id: str
    due_date: date
    created_at: datetime
    value: Decimal
    status: InstallmentStatus = InstallmentStatus.PENDING
    enrollment_id: Optional[str] = None
    billing_url: Optional[str] = None
    student_name: Optional[str] = None
    guardian_name: Optional[str] = None
    guardian_phone: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == InstallmentStatus.CANCELLED


@dataclass(frozen=True)
class Template:
    """Message template from the global template library."""

    key: str
    title_template: str = ""
    message_template: str = ""
    variables_description: str = ""


@dataclass
class DunningLog:
    """Audit row for one dispatch attempt."""

    id: str
    school_id: str
    installment_id: str
    step_id: str
    status: LogStatus
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    sent_at: Optional[datetime] = None


@dataclass
class UsageTracker:
    """Per-school monthly message counter."""

    school_id: str
    messages_sent_count: int = 0
    limit_messages: int = 0
    current_period_start: Optional[date] = None

    @property
    def is_limited(self) -> bool:
        return self.limit_messages > 0


@dataclass
class DuePair:
    """An (installment, step) combination that must be dispatched today."""

    installment: Installment
    step: DunningStep
    target_date: date
    is_retry: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.installment.id, self.step.id)


@dataclass
class DueGroup:
    """Due pairs of one step and one enrollment, sent as a single message.

    Every pair still gets its own log row.
    """

    step: DunningStep
    pairs: List[DuePair]

    @property
    def installments(self) -> List[Installment]:
        return [p.installment for p in self.pairs]

    @property
    def keys(self) -> List[tuple[str, str]]:
        return [p.key for p in self.pairs]


@dataclass
class PairOutcome:
    """What happened to one due pair during a run."""

    installment_id: str
    step_id: str
    status: Optional[LogStatus]
    error_message: Optional[str] = None
    skipped: Optional[str] = None
    is_retry: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installment_id": self.installment_id,
            "step_id": self.step_id,
            "status": self.status.value if self.status else None,
            "error_message": self.error_message,
            "skipped": self.skipped,
            "is_retry": self.is_retry,
        }


@dataclass
class DunningResult:
    """Result of one school's evaluation-and-dispatch pass."""

    school_id: str
    reference_date: date
    success: bool = True
    dry_run: bool = False
    skipped_reason: Optional[str] = None
    pairs_due: int = 0
    sent: int = 0
    failed: int = 0
    duplicates: int = 0
    quota_blocked: int = 0
    errors: List[str] = field(default_factory=list)
    outcomes: List[PairOutcome] = field(default_factory=list)
    processing_time_seconds: float = 0.0

    def add_error(self, error: str) -> None:
        """Add tenant-level error message."""
        self.errors.append(error)
        self.success = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "school_id": self.school_id,
            "reference_date": self.reference_date.isoformat(),
            "success": self.success,
            "dry_run": self.dry_run,
            "skipped_reason": self.skipped_reason,
            "pairs_due": self.pairs_due,
            "sent": self.sent,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "quota_blocked": self.quota_blocked,
            "errors": self.errors,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "processing_time_seconds": self.processing_time_seconds,
        }


@dataclass
class RunSummary:
    """Aggregate of a daily sweep over all schools."""

    reference_date: Optional[date] = None
    results: List[DunningResult] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(r.sent for r in self.results)

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.results)

    @property
    def failed_schools(self) -> List[str]:
        return [r.school_id for r in self.results if not r.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference_date": self.reference_date.isoformat() if self.reference_date else None,
            "schools": len(self.results),
            "sent": self.sent,
            "failed": self.failed,
            "failed_schools": self.failed_schools,
            "results": [r.to_dict() for r in self.results],
        }
