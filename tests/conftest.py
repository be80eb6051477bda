"""Shared fixtures for the domain tests."""
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from virtualphone.services.broadcast import Broadcaster, EventDeduplicator
from virtualphone.services.call import CallService
from virtualphone.services.records import RecordStore
from virtualphone.services.sync import SyncReconciler


class FakeClock:
    """Manually advanced wall clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return []


@pytest.fixture
def broadcaster(clock, events):
    b = Broadcaster(EventDeduplicator(clock=clock))
    b.subscribe(lambda event, payload: events.append((event, payload)))
    return b


@pytest.fixture
def records_path(tmp_path):
    return tmp_path / "call_records.json"


@pytest.fixture
def store(records_path, broadcaster, clock):
    return RecordStore(str(records_path), broadcaster=broadcaster, clock=clock)


@pytest.fixture
def call_svc(store, broadcaster, clock):
    return CallService(store, broadcaster, clock=clock)


@pytest.fixture
def reconciler(store):
    return SyncReconciler(store)
