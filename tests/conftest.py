import pytest

from app.clock import FrozenClock
from app.container import build_container
from app.core.cache import CooldownCache
from app.db import build_engine, build_session_factory, init_db
from tests.support import T0, FakeTelegram, SleepRecorder, make_settings


@pytest.fixture
def engine(tmp_path):
    db_engine = build_engine(f"sqlite:///{tmp_path / 'test_shiftbot.db'}")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def fake_telegram():
    return FakeTelegram()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def container(tmp_path, engine, clock, fake_telegram, sleep_recorder):
    cooldown = CooldownCache(directory=str(tmp_path / "cache"))
    app_container = build_container(
        make_settings(tmp_path),
        clock=clock,
        engine=engine,
        raw_call=fake_telegram,
        cooldown=cooldown,
        sleep=sleep_recorder,
    )
    yield app_container
    cooldown.close()
