import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from database.ActivityDatabase import ActivityDatabase


class FakeClock:
    """Virtual UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def database(tmp_path):
    db = ActivityDatabase(str(tmp_path / "role_monitoring.db"))
    asyncio.run(db.initialize())
    return db


@pytest.fixture
def clock():
    return FakeClock()
