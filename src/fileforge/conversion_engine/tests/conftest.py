from __future__ import annotations

import pytest

from fileforge.conversion_engine.events.event_bus import EventBus
from fileforge.conversion_engine.tests.fakes import FakeClock, MemoryStorage
from fileforge.database import create_db_engine, create_session_factory, init_db


@pytest.fixture()
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'fileforge.db'}")
    init_db(create_tables=True, bind_engine=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def storage():
    return MemoryStorage({"uploads/song.mp3": b"ID3-audio"})
