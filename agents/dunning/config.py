"""Configuration management for the dunning engine.

Two layers:

- ``DunningConfig``: per-school engine knobs with sensible defaults and
  environment overrides (``DUNNING_<SCHOOL_ID>_<SETTING>``).
- ``SchoolProfile`` / ``WhatsAppConfig``: the school's stored settings,
  validated once when the profile is loaded instead of being re-parsed at
  every read.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator

from backend.core.config import settings

from .errors import ConfigError
from .policy import retry_budget_seconds

DUNNING_ACTIVE_SETTING = "finance_dunning_active"
WHATSAPP_SETTING = "whatsapp_config"
SCHOOL_INFO_SETTING = "school_info"
DUNNING_CHANNEL = "dunning"


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass
class DunningConfig:
    """Engine configuration for one school.

    Supports school-specific overrides via environment variables
    with pattern: DUNNING_<SCHOOL_ID>_<SETTING>
    """

    school_id: str

    # Dates are evaluated in the school's local calendar
    timezone: str = field(default_factory=lambda: settings.DUNNING_DEFAULT_TIMEZONE)

    # Concurrent sends within one school's batch (channel rate limit)
    max_concurrent_sends: int = 5

    # Per-pair ceiling on the channel call, retries included; must cover the retry budget
    send_timeout_seconds: float = 60.0

    # Failed pairs are re-selected for this many days after their target date
    retry_failed_days: int = 2

    # Refuse to send text that still contains {{placeholders}}
    strict_placeholders: bool = True

    # Phone normalisation
    country_code: str = "55"

    # Header used when the school has no branding name
    default_header: str = "BlueEduca Informa"

    @classmethod
    def from_tenant(cls, school_id: str) -> "DunningConfig":
        """Create configuration for a specific school.

        Args:
            school_id: UUID of the school

        Returns:
            Configured instance with school-specific overrides
        """
        config = cls(school_id=school_id)
        prefix = f"DUNNING_{school_id.upper().replace('-', '_')}"

        config.timezone = os.getenv(f"{prefix}_TIMEZONE", config.timezone)
        config.max_concurrent_sends = int(
            os.getenv(f"{prefix}_MAX_CONCURRENT_SENDS", config.max_concurrent_sends)
        )
        config.send_timeout_seconds = float(
            os.getenv(f"{prefix}_SEND_TIMEOUT_SECONDS", config.send_timeout_seconds)
        )
        config.retry_failed_days = int(
            os.getenv(f"{prefix}_RETRY_FAILED_DAYS", config.retry_failed_days)
        )
        strict = os.getenv(f"{prefix}_STRICT_PLACEHOLDERS")
        if strict is not None:
            config.strict_placeholders = _truthy(strict)
        config.country_code = os.getenv(f"{prefix}_COUNTRY_CODE", config.country_code)
        config.default_header = os.getenv(f"{prefix}_DEFAULT_HEADER", config.default_header)

        config.validate()
        return config

    def validate(self) -> None:
        """Reject settings the engine cannot run with.

        Raises:
            ConfigError: If a value is out of range or the timezone is unknown
        """
        if self.max_concurrent_sends < 1:
            raise ConfigError("max_concurrent_sends must be >= 1")
        if self.send_timeout_seconds <= 0:
            raise ConfigError("send_timeout_seconds must be > 0")
        budget = retry_budget_seconds()
        if self.send_timeout_seconds < budget:
            raise ConfigError(
                f"send_timeout_seconds ({self.send_timeout_seconds:g}s) is shorter than "
                f"the channel retry budget ({budget:g}s)"
            )
        if self.retry_failed_days < 0:
            raise ConfigError("retry_failed_days must be >= 0")
        if not self.country_code.isdigit():
            raise ConfigError(f"Invalid country code: {self.country_code}")
        self.tzinfo()

    def tzinfo(self) -> ZoneInfo:
        """Resolve the configured timezone."""
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown timezone: {self.timezone}") from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "school_id": self.school_id,
            "timezone": self.timezone,
            "max_concurrent_sends": self.max_concurrent_sends,
            "send_timeout_seconds": self.send_timeout_seconds,
            "retry_failed_days": self.retry_failed_days,
            "strict_placeholders": self.strict_placeholders,
            "country_code": self.country_code,
            "default_header": self.default_header,
        }


class WhatsAppConfig(BaseModel):
    """Evolution API connection stored in the school's ``whatsapp_config`` setting."""

    url: str = Field(min_length=1)
    apikey: str = Field(min_length=1)
    instance: str = Field(min_length=1)
    active: bool = True
    enabled_channels: Dict[str, bool] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}

    @field_validator("url", "apikey", "instance")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("url")
    @classmethod
    def _normalize_url(cls, value: str) -> str:
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("url must be http(s)")
        return value.rstrip("/")

    def channel_enabled(self, channel: str = DUNNING_CHANNEL) -> bool:
        return self.enabled_channels.get(channel, True) is not False

    @classmethod
    def parse(cls, raw: Any) -> "WhatsAppConfig":
        """Validate a stored setting value (dict or JSON string).

        Raises:
            ConfigError: If the value is missing, not JSON or incomplete
        """
        if raw is None or raw == "":
            raise ConfigError("WhatsApp configuration missing")
        try:
            if isinstance(raw, (str, bytes)):
                return cls.model_validate_json(raw)
            return cls.model_validate(raw)
        except ValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) or "value" for err in exc.errors()})
            raise ConfigError(f"WhatsApp configuration incomplete: {', '.join(fields)}") from exc


@dataclass
class SchoolProfile:
    """School settings relevant to the engine, validated once at load."""

    school_id: str
    name: Optional[str] = None
    active: bool = True
    dunning_module: bool = False
    dunning_active: bool = False
    header: Optional[str] = None
    whatsapp: Optional[WhatsAppConfig] = None
    whatsapp_error: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        *,
        school_id: str,
        name: Optional[str],
        active: bool,
        config_modules: Optional[Mapping[str, Any]],
        app_settings: Mapping[str, Any],
    ) -> "SchoolProfile":
        """Build a profile from the school row and its ``app_settings`` values."""
        modules = config_modules or {}
        if isinstance(modules, str):
            try:
                modules = json.loads(modules)
            except ValueError:
                modules = {}

        whatsapp = None
        whatsapp_error = None
        try:
            whatsapp = WhatsAppConfig.parse(app_settings.get(WHATSAPP_SETTING))
        except ConfigError as exc:
            whatsapp_error = str(exc)

        header = None
        info = app_settings.get(SCHOOL_INFO_SETTING)
        if isinstance(info, str):
            try:
                info = json.loads(info)
            except ValueError:
                info = None
        if isinstance(info, Mapping):
            header = info.get("name") or None

        return cls(
            school_id=school_id,
            name=name,
            active=bool(active),
            dunning_module=_truthy(modules.get("dunning", False)),
            dunning_active=_truthy(app_settings.get(DUNNING_ACTIVE_SETTING, False)),
            header=header or name,
            whatsapp=whatsapp,
            whatsapp_error=whatsapp_error,
        )

    def skip_reason(self) -> Optional[str]:
        """Why the school is not processed today (None = process it)."""
        if not self.active:
            return "school_inactive"
        if not self.dunning_module:
            return "module_disabled"
        if not self.dunning_active:
            return "dunning_paused"
        if self.whatsapp is not None and not self.whatsapp.active:
            return "whatsapp_inactive"
        if self.whatsapp is not None and not self.whatsapp.channel_enabled():
            return "channel_disabled"
        return None

    def require_whatsapp(self) -> WhatsAppConfig:
        """Return the channel config or fail the school's batch."""
        if self.whatsapp is None:
            raise ConfigError(self.whatsapp_error or "WhatsApp configuration missing")
        return self.whatsapp
