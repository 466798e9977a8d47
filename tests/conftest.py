import json
import socket
from pathlib import Path
from urllib.parse import urlsplit

import pytest
from sqlalchemy.engine import make_url

from backend.core.config import settings


VIOLATIONS = []
ARTIFACTS_DIR = Path("artifacts")
REPORT = ARTIFACTS_DIR / "egress-violations.json"

# Provider hosts must only ever be reached through mocked transports
PROVIDER_HOSTS = {
    urlsplit(settings.BREVO_BASE_URL).hostname,
    urlsplit(settings.TWILIO_BASE_URL).hostname,
}
LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _database_host() -> str | None:
    url = make_url(settings.database_url)
    return None if url.get_backend_name() == "sqlite" else url.host


def _allowed(host) -> bool:
    if not isinstance(host, str):
        return False
    if host in PROVIDER_HOSTS:
        return False
    return host in LOCAL_HOSTS or host == _database_host()


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection

    def guard_getaddrinfo(host, *args, **kwargs):
        if _allowed(host):
            return real_getaddrinfo(host, *args, **kwargs)
        VIOLATIONS.append({"fn": "getaddrinfo", "host": str(host)})
        raise RuntimeError(f"Egress blocked: lookup of {host!r}")

    def guard_create_connection(address, *args, **kwargs):
        host = address[0] if isinstance(address, tuple) else None
        if _allowed(host):
            return real_create_connection(address, *args, **kwargs)
        VIOLATIONS.append({"fn": "create_connection", "address": str(address)})
        raise RuntimeError(f"Egress blocked: connection to {address!r}")

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]

    yield

    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]

    if VIOLATIONS:
        ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
        REPORT.write_text(json.dumps(VIOLATIONS, indent=2))
