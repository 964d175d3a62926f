import inspect
import json
import socket
from pathlib import Path

import httpx
import pytest

from backend.core.observability.logging import clear_context
from backend.core.observability.metrics import reset_metrics

# Only these call sites may open network clients; tests use httpx.MockTransport
ALLOWED_CLIENT_PATHS = (
    "/tests/",
    "/agents/dunning/dispatcher.py",
)

VIOLATIONS: list[dict] = []
REPORT = Path("artifacts") / "egress-violations.json"


def _called_from_allowed_path() -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        if any(path in filename for path in ALLOWED_CLIENT_PATHS):
            return True
    return False


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    """Block real network access for the whole session."""
    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection
    real_httpx_init = httpx.Client.__init__

    def guard_getaddrinfo(host, *args, **kwargs):
        VIOLATIONS.append({"fn": "getaddrinfo", "host": str(host)})
        raise RuntimeError("Egress blocked: getaddrinfo disallowed")

    def guard_create_connection(address, *args, **kwargs):
        VIOLATIONS.append({"fn": "create_connection", "address": str(address)})
        raise RuntimeError("Egress blocked: create_connection disallowed")

    def guard_httpx_init(self, *args, **kwargs):
        if not _called_from_allowed_path():
            VIOLATIONS.append({"fn": "httpx.Client.__init__"})
            raise RuntimeError("Egress blocked: httpx.Client not allowed from this callsite")
        return real_httpx_init(self, *args, **kwargs)

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = guard_httpx_init  # type: ignore[assignment]

    yield

    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = real_httpx_init  # type: ignore[assignment]

    REPORT.parent.mkdir(parents=True, exist_ok=True)
    REPORT.write_text(json.dumps(VIOLATIONS, indent=2))


@pytest.fixture(autouse=True)
def fresh_observability():
    """Metrics and thread-local log context start empty in every test."""
    reset_metrics()
    clear_context()
    yield
    clear_context()
