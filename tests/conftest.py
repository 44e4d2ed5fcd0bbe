import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db import create_tables, make_engine, make_session_factory  # noqa: E402
from orchestrator import ChatOrchestrator  # noqa: E402
from ratelimit import MemoryWindowStore, RateLimiter  # noqa: E402
from store import SessionStore  # noqa: E402


class FakeGenerator:
    """Stands in for Gemini: returns a canned reply or raises the given failure."""

    model = "fake-gemini"

    def __init__(self, reply: str = "Add an index on the filtered column.", failure: Exception | None = None):
        self.reply = reply
        self.failure = failure
        self.calls = []

    async def generate(self, history, prompt_text):
        self.calls.append((tuple(history), prompt_text))
        if self.failure is not None:
            raise self.failure
        return self.reply


class StepClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_tables(engine)
    yield SessionStore(make_session_factory(engine), clock=StepClock())
    engine.dispose()


@pytest.fixture
def broken_store():
    engine = make_engine("sqlite:////nonexistent-dir/nested/app.db")
    yield SessionStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def window_clock():
    return ManualClock()


@pytest.fixture
def limiter(window_clock):
    return RateLimiter(MemoryWindowStore(clock=window_clock), limit=3, window_seconds=60)


@pytest.fixture
def orchestrator(limiter, generator, store):
    return ChatOrchestrator(limiter, generator, store)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None
