from datetime import datetime, timedelta, timezone

import pytest

from battle import BattleService
from database import MemoryStore
from questions import QuestionSource
from rooms import MemoryRoomRegistry
from schemas import BattleConfig


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def tick(self, seconds):
        self.now += timedelta(seconds=seconds)


def sequential_codes(start=100000):
    counter = iter(range(start, 1000000))
    return lambda: str(next(counter))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registry():
    return MemoryRoomRegistry()


@pytest.fixture
def service(store, registry, clock):
    return BattleService(registry, QuestionSource(store), clock=clock, code_factory=sequential_codes())


@pytest.fixture
def physics_1v1():
    return BattleConfig(subject="Physics", mode="1v1", questionCount=5, timePerQuestion=15)
