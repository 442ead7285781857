"""
Shared fixtures for the wallet ledger test suite

1. A throwaway SQLite database per test (file-backed so concurrent sessions
   really contend for the write lock, as they would on PostgreSQL rows)
2. Ledger, reconciler and webhook recorder bound to that database
3. A fake clock and an instant retry policy so time-based paths run without sleeping
4. A scripted HTTP session factory standing in for aiohttp.ClientSession
"""

import logging
import warnings
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest
import pytest_asyncio

from database import create_engine_for_url, create_session_factory, init_database
from services.virtual_account_reconciler import VirtualAccountReconciler
from services.wallet_ledger import WalletLedger
from services.webhook_event_ledger import WebhookEventRecorder
from utils.retry_policy import RetryPolicy

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

warnings.filterwarnings("ignore", message=".*Enable tracemalloc.*")


# ============================================================================
# DATABASE
# ============================================================================

@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh schema in a temporary SQLite file"""
    test_engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'wallet_ledger_test.db'}")
    assert await init_database(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def ledger(session_factory):
    return WalletLedger(session_factory, currency="NGN")


@pytest.fixture
def event_recorder(session_factory):
    return WebhookEventRecorder(session_factory)


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested by instant_retry policies"""
    return []


@pytest.fixture
def instant_retry(sleeps):
    """Factory for retry policies that record their delays instead of sleeping"""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    def build(max_attempts: int = 3, delay: float = 1.0, backoff: float = 1.0) -> RetryPolicy:
        return RetryPolicy(max_attempts=max_attempts, delay=delay, backoff=backoff, sleep=fake_sleep)

    return build


@pytest.fixture
def reconciler(session_factory, ledger, event_recorder, instant_retry):
    return VirtualAccountReconciler(
        session_factory, ledger, retry_policy=instant_retry(max_attempts=3), event_recorder=event_recorder
    )


# ============================================================================
# TIME
# ============================================================================

class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


# ============================================================================
# HTTP
# ============================================================================

class FakeResponse:
    def __init__(self, status: int, payload: Any):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeHttpSession:
    def __init__(self, http: "FakeGatewayHttp", timeout=None):
        self._http = http
        self.timeout = timeout

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def request(self, method: str, url: str, **kwargs):
        return self._http.dispatch(method, url, kwargs)


class FakeGatewayHttp:
    """
    Scripted replacement for aiohttp.ClientSession.

    Responses are queued per (method, path); the last queued response for a
    route is reused once the queue is down to one. Every request is recorded.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Tuple[int, Any, Optional[BaseException]]]] = {}
        self.calls: List[Dict[str, Any]] = []

    def add(self, method: str, path: str, status: int = 200, payload: Any = None, error: Optional[BaseException] = None):
        self.routes.setdefault((method.upper(), path), []).append((status, payload, error))
        return self

    def __call__(self, timeout=None):
        return FakeHttpSession(self, timeout=timeout)

    def dispatch(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        path = urlsplit(url).path
        self.calls.append({"method": method.upper(), "path": path, **kwargs})
        queue = self.routes.get((method.upper(), path))
        if not queue:
            raise AssertionError(f"Unexpected request: {method} {path}")
        status, payload, error = queue.pop(0) if len(queue) > 1 else queue[0]
        if error is not None:
            raise error
        return FakeResponse(status, payload)

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["path"] == path]


@pytest.fixture
def fake_http():
    return FakeGatewayHttp()
