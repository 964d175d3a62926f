"""Tests for the WhatsApp channel adapter (offline, httpx.MockTransport)."""

import json
import time

import httpx
import pytest

from agents.dunning.dispatcher import (
    DryRunDispatcher,
    EvolutionWhatsAppDispatcher,
    build_dispatcher,
    normalize_phone,
)
from agents.dunning.errors import ConfigError
from agents.dunning.policy import RetryPolicy
from dunning_factories import SCHOOL_A, make_school


def _dispatcher(handler, attempts=3, steps=(0,), sleeps=None):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    sleep = sleeps.append if sleeps is not None else (lambda seconds: None)
    retry = RetryPolicy(max_attempts=attempts, steps=list(steps), sleep=sleep)
    return EvolutionWhatsAppDispatcher(
        "https://evo.example.com/", "secret-key", "escola", client=client, retry=retry, delay_ms=1200
    )


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("(11) 98765-4321", "5511987654321"),
            ("11987654321", "5511987654321"),
            ("5511987654321", "5511987654321"),
            ("+55 (11) 98765-4321", "5511987654321"),
            ("", None),
            (None, None),
            ("abc", None),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestEvolutionWhatsAppDispatcher:
    def test_success_posts_expected_payload(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"key": {"id": "ABC123"}, "status": "PENDING"})

        result = _dispatcher(handler).send("5511987654321", "Titulo", "📢 *Escola*\n\nOlá")

        assert result.ok
        assert result.message_id == "ABC123"
        assert result.provider_status == 201
        (request,) = seen
        assert str(request.url) == "https://evo.example.com/message/sendText/escola"
        assert request.headers["apikey"] == "secret-key"
        assert json.loads(request.content) == {
            "number": "5511987654321",
            "text": "📢 *Escola*\n\nOlá",
            "delay": 1200,
            "linkPreview": True,
        }

    def test_success_status_without_message_id_is_failure(self):
        result = _dispatcher(lambda request: httpx.Response(200, json={"status": "ok"})).send("55", "", "x")

        assert not result.ok
        assert result.error == "Evolution API response missing message id"

    def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "bad number"})

        result = _dispatcher(handler).send("55", "", "x")

        assert not result.ok
        assert result.provider_status == 400
        assert result.error == "http_400"
        assert len(calls) == 1

    def test_server_error_is_retried_then_succeeds(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"key": {"id": "OK"}})])

        result = _dispatcher(lambda request: next(responses)).send("55", "", "x")

        assert result.ok
        assert result.message_id == "OK"

    def test_timeouts_exhaust_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        result = _dispatcher(handler, attempts=3).send("55", "", "x")

        assert not result.ok
        assert result.error == "timeout"
        assert len(calls) == 3

    def test_connection_error_reported(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = _dispatcher(handler, attempts=1).send("55", "", "x")

        assert not result.ok
        assert result.error.startswith("transport:")

    def test_deadline_too_close_for_backoff_stops_retrying(self):
        calls, sleeps = [], []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        dispatcher = _dispatcher(handler, attempts=3, steps=[5], sleeps=sleeps)
        result = dispatcher.send("55", "", "x", deadline=time.monotonic() + 1.0)

        assert not result.ok
        assert result.error == "http_503"
        assert len(calls) == 1
        assert sleeps == []

    def test_request_timeout_is_capped_by_deadline(self):
        seen = []

        def handler(request):
            seen.append(request.extensions["timeout"])
            return httpx.Response(200, json={"key": {"id": "OK"}})

        dispatcher = _dispatcher(handler)
        assert dispatcher.timeout_s > 2.0
        result = dispatcher.send("55", "", "x", deadline=time.monotonic() + 2.0)

        assert result.ok
        assert 0 < seen[0]["read"] <= 2.0

    def test_expired_deadline_sends_nothing(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"key": {"id": "OK"}})

        result = _dispatcher(handler).send("55", "", "x", deadline=time.monotonic() - 1)

        assert not result.ok
        assert result.error == "deadline exceeded"
        assert calls == []


class TestFactory:
    def test_dry_run_records_without_sending(self):
        dry = DryRunDispatcher()
        result = dry.send("5511", "t", "b")
        assert result.ok
        assert dry.sent == [{"recipient": "5511", "title": "t", "body": "b"}]

    def test_missing_config_raises(self):
        with pytest.raises(ConfigError, match="WhatsApp configuration missing"):
            build_dispatcher(make_school(SCHOOL_A, whatsapp=None))

    def test_builds_evolution_adapter(self):
        dispatcher = build_dispatcher(make_school(SCHOOL_A))
        try:
            assert isinstance(dispatcher, EvolutionWhatsAppDispatcher)
            assert dispatcher.endpoint == "https://evo.example.com/message/sendText/escola"
        finally:
            dispatcher.close()
