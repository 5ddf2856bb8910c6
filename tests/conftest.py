import os
import sys
import threading
from typing import Callable, List, Optional, Tuple

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import cu_task_viewer as cut  # noqa: E402


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, reason: str = "OK"):
        self.status_code = status_code
        self._payload = payload
        self.reason = reason

    @property
    def text(self) -> str:
        return repr(self._payload)

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeHttp:
    """Records every request made through any session handed out by ``_session``."""

    def __init__(self):
        self.calls: List[Tuple[str, str, Optional[dict]]] = []
        self.tokens: List[str] = []
        self.timeouts: List[object] = []
        self.handler: Callable[[str, str, Optional[dict]], FakeResponse] = lambda m, u, j: FakeResponse(200, {})
        self._lock = threading.Lock()

    def session(self, token: str) -> "FakeSession":
        with self._lock:
            self.tokens.append(token)
        return FakeSession(self, token)

    def record(self, method, url, body, timeout):
        with self._lock:
            self.calls.append((method, url, body))
            self.timeouts.append(timeout)

    def urls(self, method: Optional[str] = None) -> List[str]:
        return [u for m, u, _ in self.calls if method is None or m == method]


class FakeSession:
    def __init__(self, http: FakeHttp, token: str):
        self.http = http
        self.headers = {"Authorization": token, "Content-Type": "application/json"}

    def request(self, method, url, json=None, timeout=None):
        self.http.record(method, url, json, timeout)
        return self.http.handler(method, url, json)


@pytest.fixture
def cache_path(tmp_path):
    return str(tmp_path / "cache.json")


@pytest.fixture
def fake_http(monkeypatch):
    http = FakeHttp()
    monkeypatch.setattr(cut, '_session', http.session)
    return http


class FakeClock:
    def __init__(self, now: float = 1_717_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(fake_http, cache_path, clock):
    cache = cut.TaskCache.load(cache_path, clock=clock)
    return cut.ClickUpClient("pk_test", "T1", cache=cache)
