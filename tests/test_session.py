from __future__ import annotations

import tandem
import time

from datetime import timedelta
from tandem.context.session import SessionProvider
from tandem.db.engine import BookingEngine
from tandem.modules import errors
from threading import Barrier, Thread


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from tests.conftest import Clock


class SessionId(Thread):
    def __init__(self, dsn: str) -> None:
        Thread.__init__(self)
        self.session_id: int | None = None
        self.dsn = dsn

    def run(self) -> None:
        context = tandem.registry.register_context(str(id(self)))
        context.set_setting('dsn', self.dsn)
        engine = BookingEngine(context)
        self.session_id = id(engine.session)

        # make sure the thread runs long enough to have both threads
        # running at the same time, since the docs states:
        # "Two objects with non-overlapping lifetimes may have the same
        # id() value."
        time.sleep(0.1)

        engine.session_provider.stop_service()


class ExceptionThread(Thread):
    def __init__(
        self,
        call: Callable[[], object],
        barrier: Barrier,
        engine: BookingEngine
    ) -> None:
        Thread.__init__(self)
        self.call = call
        self.barrier = barrier
        self.engine = engine
        self.exception: Exception | None = None

    def run(self) -> None:
        try:
            self.barrier.wait()
            self.call()
        except Exception as e:
            self.exception = e
        finally:
            self.engine.close()


def run_concurrently(
    engine: BookingEngine,
    *calls: Callable[[], object]
) -> list[Exception | None]:

    barrier = Barrier(len(calls))
    threads = [ExceptionThread(call, barrier, engine) for call in calls]

    for thread in threads:
        thread.start()

    for thread in threads:
        thread.join()

    return [thread.exception for thread in threads]


def test_stop_unused_session(dsn: str) -> None:
    provider = SessionProvider(dsn)
    provider.stop_service()  # should not throw any exceptions


def test_sessionstore(dsn: str) -> None:
    t1 = SessionId(dsn)
    t2 = SessionId(dsn)

    t1.start()
    t2.start()

    t1.join()
    t2.join()

    assert t1.session_id is not None
    assert t2.session_id is not None
    assert t1.session_id != t2.session_id


def test_sessions_are_serializable(engine: BookingEngine) -> None:
    connection = engine.session.connection()
    assert connection.get_isolation_level() == 'SERIALIZABLE'


def test_concurrent_bookings(
    postgres_dsn: str,
    engine: BookingEngine,
    clock: Clock
) -> None:

    resource = engine.create_resource('qa-1')
    resource_id = resource.id
    expires_at = clock.now + timedelta(hours=1)

    for attempt in range(5):
        exceptions = run_concurrently(
            engine,
            lambda: engine.book(resource_id, 'alice', 'a', expires_at),
            lambda: engine.book(resource_id, 'bob', 'b', expires_at)
        )

        # exactly one of them wins, the other one is told why it lost
        assert exceptions.count(None) == 1
        assert sum(
            isinstance(e, errors.AlreadyBookedError) for e in exceptions
        ) == 1

        active = engine.active_booking(resource_id)
        assert active is not None
        assert active.booked_by == ('alice', 'bob')[exceptions.index(None)]

        engine.release(active.id)


def test_concurrent_release_and_sweep(
    postgres_dsn: str,
    engine: BookingEngine,
    clock: Clock
) -> None:

    resource = engine.create_resource('qa-1')
    resource_id = resource.id

    for attempt in range(5):
        booking = engine.book(
            resource_id, 'alice', 'main', clock.now + timedelta(minutes=1)
        )
        booking_id = booking.id
        clock.travel(minutes=2)

        exceptions = run_concurrently(
            engine,
            lambda: engine.release(booking_id),
            lambda: engine.sweep()
        )

        assert exceptions == [None, None]

        # whoever came first wrote the only history entry
        actions = [e.action for e in engine.history(booking_id)]
        assert actions in (['RELEASE', 'BOOK'], ['EXPIRED', 'BOOK'])
        assert engine.active_booking(resource_id) is None


def test_concurrent_sweeps(
    postgres_dsn: str,
    engine: BookingEngine,
    clock: Clock
) -> None:

    for ix in range(10):
        resource = engine.create_resource(f'qa-{ix}')
        engine.book(
            resource.id, 'alice', 'main', clock.now + timedelta(minutes=1)
        )

    clock.travel(minutes=2)

    counts: list[int] = []
    exceptions = run_concurrently(
        engine,
        lambda: counts.append(engine.sweep_expired()),
        lambda: counts.append(engine.sweep_expired())
    )

    assert exceptions == [None, None]

    # collisions may be reported as failures, but no booking is released
    # twice and the next sweep picks up what was left
    assert sum(counts) + engine.sweep_expired() == 10
    assert len([
        e for e in engine.history() if e.action == 'EXPIRED'
    ]) == 10
