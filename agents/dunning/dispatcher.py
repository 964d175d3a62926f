from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, runtime_checkable

import httpx

from backend.core.config import settings

from .config import SchoolProfile
from .policy import RetryPolicy, is_transient_status

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    ok: bool
    provider_status: int = 0
    message_id: str | None = None
    error: str | None = None
    provider_response: Any = None


@runtime_checkable
class ChannelDispatcher(Protocol):
    """Outbound channel. Implementations return a result instead of raising."""

    name: str

    def send(self, recipient: str, title: str, body: str, *, deadline: float | None = None) -> DispatchResult:
        """Deliver one message.

        ``deadline`` is a ``time.monotonic()`` instant after which no further
        attempt may start.
        """
        ...


def normalize_phone(raw: str | None, country_code: str = "55") -> str | None:
    """Digits only, with the country code prefixed to national numbers."""
    digits = re.sub(r"\D", "", raw or "")
    if not digits:
        return None
    if len(digits) <= 11 and not digits.startswith(country_code):
        digits = country_code + digits
    return digits


class EvolutionWhatsAppDispatcher:
    """WhatsApp delivery through an Evolution API instance."""

    name = "whatsapp"

    def __init__(
        self,
        url: str,
        apikey: str,
        instance: str,
        *,
        client: httpx.Client | None = None,
        retry: RetryPolicy | None = None,
        delay_ms: int | None = None,
    ) -> None:
        self.endpoint = f"{url.rstrip('/')}/message/sendText/{instance}"
        self.headers = {"apikey": apikey, "Content-Type": "application/json"}
        self.delay_ms = settings.WHATSAPP_SEND_DELAY_MS if delay_ms is None else delay_ms
        self.timeout_s = settings.WHATSAPP_HTTP_TIMEOUT_MS / 1000.0
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(self.timeout_s), verify=True, follow_redirects=False
        )
        self.retry = retry or RetryPolicy()

    def _post(self, payload: Dict[str, Any], timeout: float) -> DispatchResult:
        try:
            resp = self.client.post(self.endpoint, headers=self.headers, json=payload, timeout=timeout)
        except httpx.TimeoutException:
            return DispatchResult(ok=False, provider_status=0, error="timeout")
        except httpx.HTTPError as e:
            return DispatchResult(ok=False, provider_status=0, error=f"transport: {e}")

        try:
            body = resp.json()
        except ValueError:
            body = resp.text

        message_id = None
        if isinstance(body, dict):
            key = body.get("key")
            if isinstance(key, dict):
                message_id = key.get("id")

        if resp.is_success and message_id:
            return DispatchResult(
                ok=True, provider_status=resp.status_code, message_id=message_id, provider_response=body
            )
        if resp.is_success:
            error = "Evolution API response missing message id"
        else:
            error = f"http_{resp.status_code}"
        return DispatchResult(ok=False, provider_status=resp.status_code, error=error, provider_response=body)

    def send(self, recipient: str, title: str, body: str, *, deadline: float | None = None) -> DispatchResult:
        payload = {
            "number": recipient,
            "text": body,
            "delay": self.delay_ms,
            "linkPreview": True,
        }
        attempt = 1
        while True:
            timeout = self.timeout_s
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return DispatchResult(ok=False, provider_status=0, error="deadline exceeded")
                timeout = min(timeout, remaining)

            result = self._post(payload, timeout)
            transient = result.provider_status == 0 or is_transient_status(result.provider_status)
            if result.ok or not transient or not self.retry.should_retry(attempt):
                break
            if deadline is not None and deadline - time.monotonic() <= self.retry.delay(attempt):
                logger.warning(
                    "WhatsApp send failed, no time left to retry",
                    extra={"attempt": attempt, "provider_status": result.provider_status, "error": result.error},
                )
                break
            logger.warning(
                "WhatsApp send failed, retrying",
                extra={"attempt": attempt, "provider_status": result.provider_status, "error": result.error},
            )
            self.retry.wait(attempt)
            attempt += 1
        return result

    def close(self) -> None:
        self.client.close()


@dataclass
class DryRunDispatcher:
    """Collects messages instead of sending them."""

    name: str = "dry_run"
    sent: List[Dict[str, str]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def send(self, recipient: str, title: str, body: str, *, deadline: float | None = None) -> DispatchResult:
        with self._lock:
            self.sent.append({"recipient": recipient, "title": title, "body": body})
        return DispatchResult(ok=True, provider_status=0, message_id="dry-run")


def build_dispatcher(school: SchoolProfile) -> ChannelDispatcher:
    """Build the school's channel adapter from its validated WhatsApp config.

    Raises:
        ConfigError: If the school has no usable WhatsApp configuration
    """
    wa = school.require_whatsapp()
    return EvolutionWhatsAppDispatcher(wa.url, wa.apikey, wa.instance)
