"""Shared fixtures for rate limiting tests."""

from typing import Optional

import pytest
from starlette.requests import Request

from ratelimiting.app.middleware.rate_limit import InMemoryRateLimitStore

# Aligned to every window length used in the tests (1s, 10s, 60s).
T0 = 1_700_000_040_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms

    def set(self, ms: float) -> None:
        self.now = ms


def make_request(
    path: str = "/",
    headers: Optional[dict[str, str]] = None,
    client_host: Optional[str] = "10.0.0.1",
) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "root_path": "",
        "scheme": "http",
        "server": ("testserver", 80),
        "headers": [
            (k.lower().encode(), v.encode()) for k, v in (headers or {}).items()
        ],
        "client": (client_host, 12345) if client_host else None,
    }
    return Request(scope)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryRateLimitStore(clock=clock)
