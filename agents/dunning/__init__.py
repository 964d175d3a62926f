"""Dunning Agent - automated payment reminders for school installments.

Once a day per school the engine decides which reminder steps of the
school's ruler ("régua de cobrança") are due for which installments, renders
the message, enforces the monthly message quota, sends it over WhatsApp and
records an idempotent audit trail.

Key Components:
- Config: Engine settings and validated school channel configuration
- Evaluator: Due (installment, step) pairs for a reference date
- Renderer: Template lookup and placeholder substitution
- Usage: Monthly quota guard
- Dispatcher: Channel adapters (Evolution API, dry run)
- Audit: Append-only log, also the at-most-once mutex
- Engine: Per-school and daily orchestration
- Store: SQLAlchemy and in-memory repositories

Schools are isolated: one school's failure never affects another.
"""

__version__ = "1.0.0"

from .catalog import StepCatalog
from .config import DunningConfig, SchoolProfile, WhatsAppConfig
from .dispatcher import (
    ChannelDispatcher,
    DispatchResult,
    DryRunDispatcher,
    EvolutionWhatsAppDispatcher,
    normalize_phone,
)
from .dto import (
    DueGroup,
    DuePair,
    DunningLog,
    DunningResult,
    DunningStep,
    EventType,
    Installment,
    InstallmentStatus,
    LogStatus,
    RunSummary,
    Template,
    UsageTracker,
)
from .engine import DunningEngine
from .errors import (
    ConfigError,
    DeliveryError,
    DuplicateSendError,
    DunningError,
    QuotaExceededError,
    SendTimeoutError,
    TemplateNotFoundError,
    TemplateRenderError,
    UnresolvedPlaceholderError,
)
from .evaluator import DunningEvaluator, group_pairs
from .memory import InMemoryDunningStore
from .renderer import MessageRenderer, substitute
from .usage import UsageGuard

__all__ = [
    "DunningEngine",
    "DunningEvaluator",
    "group_pairs",
    "MessageRenderer",
    "UsageGuard",
    "StepCatalog",
    "InMemoryDunningStore",
    "DunningConfig",
    "SchoolProfile",
    "WhatsAppConfig",
    "ChannelDispatcher",
    "DispatchResult",
    "DryRunDispatcher",
    "EvolutionWhatsAppDispatcher",
    "normalize_phone",
    "substitute",
    "DueGroup",
    "DuePair",
    "DunningLog",
    "DunningResult",
    "DunningStep",
    "EventType",
    "Installment",
    "InstallmentStatus",
    "LogStatus",
    "RunSummary",
    "Template",
    "UsageTracker",
    "DunningError",
    "ConfigError",
    "TemplateNotFoundError",
    "TemplateRenderError",
    "UnresolvedPlaceholderError",
    "QuotaExceededError",
    "DeliveryError",
    "SendTimeoutError",
    "DuplicateSendError",
]
