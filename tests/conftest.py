from __future__ import annotations

import os
import pytest
import sedate

from datetime import timedelta
from tandem import new_engine, registry
from tandem.db.models import ORMBase
# FIXME: Switch to pytest-postgresql, testing.postgresql is unmaintained
from testing.postgresql import Postgresql  # type: ignore[import-untyped]
from uuid import uuid4 as new_uuid


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Generator
    from datetime import datetime
    from tandem.db.engine import BookingEngine


class Clock:
    """ A clock standing still until told to move. """

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or sedate.utcnow()

    def __call__(self) -> datetime:
        return self.now

    def travel(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


def new_test_engine(
    dsn: str,
    context_name: str | None = None,
    clock: Clock | None = None
) -> BookingEngine:

    context_name = context_name or new_uuid().hex

    context = registry.register_context(context_name, replace=True)
    context.set_setting('dsn', dsn)

    if clock is not None:
        context.set_service('clock', lambda context: clock)

    return new_engine(context)


def extinguish_records(engine: BookingEngine) -> None:
    """ Removes all records, the history entries first. """

    for table in reversed(ORMBase.metadata.sorted_tables):
        engine.session.execute(table.delete())


def is_postgres(dsn: str) -> bool:
    return dsn.startswith('postgresql')


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def engine(
    dsn: str,
    clock: Clock
) -> Generator[BookingEngine, None, None]:

    # clear the events before each test
    from tandem.modules import events
    for event in (e for e in dir(events) if e.startswith('on_')):
        del getattr(events, event)[:]

    engine = new_test_engine(dsn, clock=clock)

    yield engine

    engine.rollback()
    extinguish_records(engine)
    engine.commit()
    engine.close()
    engine.session_provider.stop_service()


@pytest.fixture
def postgres_dsn(dsn: str) -> str:
    if not is_postgres(dsn):
        pytest.skip('Concurrent transactions require PostgreSQL')

    return dsn


@pytest.fixture(scope="session")
def dsn(
    tmp_path_factory: pytest.TempPathFactory
) -> Generator[str, None, None]:

    postgres = None
    dsn = os.environ.get('TANDEM_TEST_DSN')

    if not dsn:
        try:
            postgres = Postgresql()
        except RuntimeError:
            # no usable PostgreSQL binaries, SQLite knows partial unique
            # indexes as well, only the threaded races are skipped
            path = tmp_path_factory.mktemp('tandem') / 'tandem.db'
            dsn = f'sqlite:///{path}'
        else:
            dsn = postgres.url()

    engine = new_test_engine(dsn)
    engine.setup_database()
    engine.commit()

    yield dsn

    engine.close()
    engine.session_provider.stop_service()

    if postgres is not None:
        postgres.stop()


@pytest.fixture
def second_engine(
    dsn: str,
    engine: BookingEngine
) -> Generator[BookingEngine, None, None]:
    """ Another engine on the same store, with a session of its own. The
    records it writes are removed together with the ones of ``engine``.

    """

    second = new_test_engine(dsn)

    yield second

    second.rollback()
    second.close()
    second.session_provider.stop_service()
