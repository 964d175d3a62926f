"""Error taxonomy for the dunning engine.

Only ``ConfigError`` aborts a school's batch. Every other error is raised
for a single (installment, step) pair and ends up as a FAILED log row.
``DuplicateSendError`` never reaches operators: it signals that another run
already recorded the SUCCESS row for the pair.
"""

from __future__ import annotations

from concurrent.futures import Future


class DunningError(RuntimeError):
    """Base class for dunning engine errors."""

    reason = "error"


class ConfigError(DunningError):
    """School is missing channel credentials or has an invalid setting."""

    reason = "config"


class TemplateNotFoundError(DunningError):
    """Step references a template key that is blank or unknown."""

    reason = "template_not_found"

    def __init__(self, template_key: str | None):
        self.template_key = template_key
        if template_key and template_key.strip():
            message = f"Template '{template_key}' not found"
        else:
            message = "Step has no template key"
        super().__init__(message)


class TemplateRenderError(DunningError):
    """Template text could not be rendered."""

    reason = "template_render"


class UnresolvedPlaceholderError(TemplateRenderError):
    """Rendered text still contains ``{{name}}`` placeholders."""

    reason = "unresolved_placeholder"

    def __init__(self, names: list[str], template_key: str | None = None):
        self.names = sorted(set(names))
        self.template_key = template_key
        joined = ", ".join(self.names)
        super().__init__(f"Unresolved placeholders: {joined}")


class QuotaExceededError(DunningError):
    """School reached its monthly message limit."""

    reason = "quota"


class DeliveryError(DunningError):
    """Channel returned a non-success, timed out or had no recipient."""

    reason = "delivery"

    def __init__(self, message: str, provider_status: int | None = None):
        self.provider_status = provider_status
        super().__init__(message)


class SendTimeoutError(DeliveryError):
    """The engine stopped waiting for a channel call that is still running.

    ``pending`` is the future of that call; its outcome is unknown until it
    completes.
    """

    def __init__(self, message: str, pending: Future):
        self.pending = pending
        super().__init__(message)


class DuplicateSendError(DunningError):
    """A SUCCESS row already exists for the (installment, step) pair."""

    reason = "duplicate"

    def __init__(self, installment_id: str, step_id: str):
        self.installment_id = installment_id
        self.step_id = step_id
        super().__init__(f"SUCCESS already recorded for {installment_id}/{step_id}")
