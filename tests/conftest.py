from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from ambulatorio.appointment_service import AppointmentScheduler
from ambulatorio.config import Settings
from ambulatorio.db import init_db, make_engine, make_session_factory
from ambulatorio.notifications import NotifyResult
from ambulatorio.queue_service import QueueEngine


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self, fail: bool = False, explode: bool = False) -> None:
        self.calls: list[tuple] = []
        self.fail = fail
        self.explode = explode

    def notify(self, kind, appointment_id):
        self.calls.append((kind, appointment_id))
        if self.explode:
            raise RuntimeError("gateway SMS non raggiungibile")
        return NotifyResult(not self.fail, "test")


@pytest.fixture
def settings() -> Settings:
    return Settings(queue_capacity=5, jwt_secret="test-secret")


@pytest.fixture
def db_engine(tmp_path):
    # file SQLite: più thread devono poter aprire connessioni separate
    engine = make_engine(f"sqlite:///{tmp_path / 'test.sqlite'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def clock() -> FrozenClock:
    # lunedì 2 marzo 2026, 09:00
    return FrozenClock(datetime(2026, 3, 2, 9, 0))


@pytest.fixture
def queue(session_factory, settings, clock) -> QueueEngine:
    return QueueEngine(session_factory=session_factory, settings=settings, clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def scheduler(session_factory, settings, notifier, clock) -> AppointmentScheduler:
    return AppointmentScheduler(session_factory=session_factory, settings=settings, notifier=notifier, clock=clock)
