"""
Shared fixtures.

Every test gets its own SQLite database file and a frozen clock. The redis
tutor mutex is switched off; the schedule lock row still serializes writers.
"""

from datetime import datetime, timedelta, timezone
import os

os.environ["REDIS_LOCKS_ENABLED"] = "false"
os.environ.setdefault("ENVIRONMENT", "test")

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from tutorflow.database import Base, build_engine  # noqa: E402
import tutorflow.models  # noqa: E402,F401

# Monday 2030-01-07 07:00 in the schedule timezone.
CLOCK_START = datetime(2030, 1, 7, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current

    def set(self, moment: datetime) -> datetime:
        self.current = moment
        return self.current


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'tutorflow_test.db'}")
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(autouse=True)
def clock(monkeypatch: pytest.MonkeyPatch) -> FrozenClock:
    """Services built after this fixture read time from the returned clock."""
    frozen = FrozenClock(CLOCK_START)
    monkeypatch.setattr("tutorflow.services.base.utc_now", frozen)
    return frozen
