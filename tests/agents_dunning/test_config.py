"""Tests for engine and school configuration."""

import json

import pytest

from agents.dunning.config import DunningConfig, SchoolProfile, WhatsAppConfig
from agents.dunning.errors import ConfigError
from dunning_factories import SCHOOL_A, make_school


class TestDunningConfig:
    def test_defaults(self):
        config = DunningConfig.from_tenant(SCHOOL_A)

        assert config.timezone == "America/Sao_Paulo"
        assert config.max_concurrent_sends == 5
        assert config.send_timeout_seconds == 60.0
        assert config.retry_failed_days == 2
        assert config.strict_placeholders is True
        assert config.default_header == "BlueEduca Informa"

    def test_env_overrides(self, monkeypatch):
        prefix = "DUNNING_" + SCHOOL_A.upper().replace("-", "_")
        monkeypatch.setenv(f"{prefix}_MAX_CONCURRENT_SENDS", "2")
        monkeypatch.setenv(f"{prefix}_RETRY_FAILED_DAYS", "0")
        monkeypatch.setenv(f"{prefix}_STRICT_PLACEHOLDERS", "false")
        monkeypatch.setenv(f"{prefix}_TIMEZONE", "America/Manaus")

        config = DunningConfig.from_tenant(SCHOOL_A)

        assert config.max_concurrent_sends == 2
        assert config.retry_failed_days == 0
        assert config.strict_placeholders is False
        assert config.to_dict()["timezone"] == "America/Manaus"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("max_concurrent_sends", 0),
            ("send_timeout_seconds", 0),
            ("send_timeout_seconds", 50),
            ("retry_failed_days", -1),
            ("country_code", "+55"),
            ("timezone", "Mars/Olympus"),
        ],
    )
    def test_invalid_values_raise(self, field, value):
        config = DunningConfig(school_id=SCHOOL_A)
        setattr(config, field, value)
        with pytest.raises(ConfigError):
            config.validate()

    def test_send_timeout_must_cover_the_retry_budget(self, monkeypatch):
        prefix = "DUNNING_" + SCHOOL_A.upper().replace("-", "_")
        monkeypatch.setenv(f"{prefix}_SEND_TIMEOUT_SECONDS", "30")

        with pytest.raises(ConfigError, match=r"shorter than the channel retry budget \(51s\)"):
            DunningConfig.from_tenant(SCHOOL_A)


class TestWhatsAppConfig:
    def test_parse_json_string(self):
        raw = json.dumps({"url": "https://evo.example.com/", "apikey": " k ", "instance": "i", "extra": 1})
        config = WhatsAppConfig.parse(raw)

        assert config.url == "https://evo.example.com"
        assert config.apikey == "k"
        assert config.active is True
        assert config.channel_enabled() is True

    @pytest.mark.parametrize("raw", [None, ""])
    def test_missing(self, raw):
        with pytest.raises(ConfigError, match="WhatsApp configuration missing"):
            WhatsAppConfig.parse(raw)

    def test_incomplete_names_fields(self):
        with pytest.raises(ConfigError) as exc_info:
            WhatsAppConfig.parse({"url": "https://evo.example.com", "apikey": "  "})

        message = str(exc_info.value)
        assert message.startswith("WhatsApp configuration incomplete")
        assert "apikey" in message
        assert "instance" in message

    def test_invalid_json(self):
        with pytest.raises(ConfigError):
            WhatsAppConfig.parse("{not json")

    def test_disabled_channel(self):
        config = WhatsAppConfig.parse(
            {"url": "https://e.example.com", "apikey": "k", "instance": "i", "enabled_channels": {"dunning": False}}
        )
        assert config.channel_enabled() is False


class TestSchoolProfile:
    def test_gating_flags_accept_strings(self):
        profile = SchoolProfile.from_settings(
            school_id=SCHOOL_A,
            name="Escola",
            active=True,
            config_modules='{"dunning": true}',
            app_settings={"finance_dunning_active": "true", "whatsapp_config": "{}"},
        )

        assert profile.dunning_module is True
        assert profile.dunning_active is True
        assert profile.whatsapp is None
        assert profile.skip_reason() is None
        with pytest.raises(ConfigError, match="incomplete"):
            profile.require_whatsapp()

    def test_header_prefers_branding_name(self):
        profile = SchoolProfile.from_settings(
            school_id=SCHOOL_A,
            name="Escola Legal Ltda",
            active=True,
            config_modules={"dunning": True},
            app_settings={"school_info": json.dumps({"name": "Escola Alpha"})},
        )
        assert profile.header == "Escola Alpha"

    def test_channel_disabled_is_a_skip(self):
        whatsapp = {"url": "https://e.example.com", "apikey": "k", "instance": "i", "enabled_channels": {"dunning": False}}
        assert make_school(SCHOOL_A, whatsapp=whatsapp).skip_reason() == "channel_disabled"
