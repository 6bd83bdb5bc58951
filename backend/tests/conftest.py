# tests/conftest.py
"""Shared fixtures: real SQLite database per test, fake browser, in-memory event recorder"""

import asyncio

import pytest
import pytest_asyncio

from recon.config import Settings
from recon.database import create_engine, create_session_factory, init_models
from recon.events import EventPublisher, EventRecorder
from recon.services.browser_pool import BrowserPool
from recon.services.convergence import StatusConvergenceEngine
from recon.services.entity_store import EntityStore
from recon.services.stage_queue import StageQueue


# ============================================================================
# DATABASE
# ============================================================================

@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite file per test (WAL needs a real file)"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'recon.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return EntityStore(session_factory)


@pytest_asyncio.fixture
async def queue(session_factory):
    queue = StageQueue(session_factory, poll_interval=0.05, lease_seconds=600, worker_id="test")
    yield queue
    await queue.stop(grace_seconds=1)


# ============================================================================
# EVENTS
# ============================================================================

@pytest.fixture
def publisher():
    return EventPublisher(delivery_timeout=1.0)


@pytest.fixture
def recorder(publisher):
    recorder = EventRecorder()
    publisher.subscribe(recorder)
    return recorder


@pytest.fixture
def convergence(store, publisher):
    return StatusConvergenceEngine(store, publisher)


# ============================================================================
# SETTINGS
# ============================================================================

@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'recon.db'}",
        HUNTER_API_KEY="test-hunter-key",
        HUNTER_API_URL="https://hunter.test/v2",
        MARKITDOWN_URL="http://markitdown.test",
        LLM_API_URL="http://llm.test/v1",
        AUTODISCOVER_URL="https://autodiscover.test/autodiscover.svc",
        SCRAPE_SCROLL_SETTLE_SECONDS=0,
        SCRAPE_SETTLE_JITTER_SECONDS=0,
        SCRAPE_NAVIGATION_TIMEOUT_SECONDS=0.2,
        QUEUE_POLL_INTERVAL_SECONDS=0.05,
        QUEUE_SHUTDOWN_GRACE_SECONDS=1,
        DNS_RETRY_BACKOFF_SECONDS=0,
        LLM_RETRY_BACKOFF_SECONDS=0,
        AUTO_GENERATE_PROFILES=False,
    )


# ============================================================================
# FAKE BROWSER
# ============================================================================

DEFAULT_PAGE = {
    "html": "<head><title>Example</title></head><body><p>Hello</p></body>",
    "main": None,
    "title": "Example",
    "ready_state": "complete",
    "goto_error": None,
    "goto_delay": 0,
    "networkidle_delay": 0,
}


class FakePage:
    """Enough of a Playwright page for the scraping worker"""

    def __init__(self, context):
        self.context = context
        self.spec = dict(DEFAULT_PAGE)
        self.url = None
        self.closed = False
        self.handlers = {}
        self.goto_calls = []
        self.scripts = []

    def on(self, event, handler):
        self.handlers[event] = handler

    async def goto(self, url, wait_until=None, timeout=None):
        if self.context.closed:
            raise RuntimeError("Target page, context or browser has been closed")
        self.url = url
        self.goto_calls.append({"url": url, "wait_until": wait_until, "timeout": timeout})
        self.spec = {**DEFAULT_PAGE, **self.context.routes.get(url, {})}
        if self.spec["goto_delay"]:
            await asyncio.sleep(self.spec["goto_delay"])
        if self.spec["goto_error"] is not None:
            raise self.spec["goto_error"]

    async def wait_for_load_state(self, state=None):
        await asyncio.sleep(self.spec["networkidle_delay"])

    async def evaluate(self, script, arg=None):
        self.scripts.append(script)
        if "querySelector" in script:
            return self.spec["main"]
        if "documentElement.innerHTML" in script:
            return self.spec["html"]
        if "readyState" in script:
            return self.spec["ready_state"]
        return None

    async def title(self):
        return self.spec["title"]

    async def close(self):
        self.closed = True


class FakeContext:
    """Persistent-context stand-in; routes maps URL -> page behaviour overrides"""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.pages = []
        self.closed = False

    async def new_page(self):
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_context():
    return FakeContext()


@pytest_asyncio.fixture
async def browser_pool(fake_context):
    async def factory():
        return fake_context

    pool = BrowserPool(max_pages=3, context_factory=factory)
    await pool.start()
    yield pool
    await pool.close()


# ============================================================================
# HELPERS
# ============================================================================

async def wait_until(predicate, timeout=5.0, interval=0.05):
    """Poll an async predicate until it returns truthy"""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_for():
    return wait_until


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests")
    config.addinivalue_line("markers", "integration: integration tests")
    config.addinivalue_line("markers", "slow: slow running tests")
