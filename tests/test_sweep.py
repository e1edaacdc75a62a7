from __future__ import annotations

from datetime import timedelta
from mock import patch
from tandem.modules import errors
from tandem.modules import events


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from tandem.db.engine import BookingEngine, SweepReport
    from tandem.db.models import Booking
    from tandem.db.models import BookingHistory
    from tandem.db.models.history import HistoryAction
    from tests.conftest import Clock


def book_resources(
    engine: BookingEngine,
    count: int,
    hours: float = 1
) -> list[Booking]:

    bookings = []

    for ix in range(count):
        resource = engine.create_resource(f'qa-{ix}')
        bookings.append(engine.book(
            resource.id, f'user-{ix}', 'main',
            # distinct expiry dates, the sweep goes through them in order
            engine.utcnow() + timedelta(hours=hours, minutes=ix)
        ))

    return bookings


def test_sweep_releases_expired_bookings(
    engine: BookingEngine,
    clock: Clock
) -> None:

    expired = book_resources(engine, 3, hours=1)

    resource = engine.create_resource('qa-current')
    current = engine.book(
        resource.id, 'alice', 'main', clock.now + timedelta(hours=5)
    )

    assert engine.sweep_expired() == 0

    clock.travel(hours=2)

    assert engine.sweep_expired() == 3
    assert engine.sweep_expired() == 0

    for booking in expired:
        booking = engine.booking(booking.id)
        assert booking.released_at == clock.now
        assert not booking.is_active

        entry = engine.history(booking.id)[0]
        assert entry.action == 'EXPIRED'
        assert entry.timestamp == clock.now

    assert engine.booking(current.id).is_active
    assert [v.status for v in engine.resource_views()] == [
        'FREE', 'FREE', 'FREE', 'LOCKED'
    ]


def test_sweep_at_the_exact_expiry(
    engine: BookingEngine,
    clock: Clock
) -> None:

    booking, = book_resources(engine, 1, hours=1)

    clock.now = engine.booking(booking.id).expires_at

    assert engine.sweep().released == [booking.id]


def test_sweep_skips_deleted_and_released(
    engine: BookingEngine,
    clock: Clock
) -> None:

    released, deleted, expired = book_resources(engine, 3, hours=1)

    engine.release(released.id)
    engine.delete_booking(deleted.id)

    clock.travel(hours=2)

    report = engine.sweep()
    assert report.released == [expired.id]
    assert report.failures == []


def test_sweep_rechecks_the_expiry(
    engine: BookingEngine,
    clock: Clock
) -> None:

    booking, = book_resources(engine, 1, hours=1)

    # the booking was selected, but extended before it was released
    with patch.object(
        engine.queries, 'expired_booking_ids', return_value=[booking.id]
    ):
        report = engine.sweep()

    assert report.released_count == 0
    assert report.failures == []
    assert engine.booking(booking.id).is_active


def test_sweep_continues_after_failures(
    engine: BookingEngine,
    clock: Clock
) -> None:

    failing, working = book_resources(engine, 2, hours=1)
    failing_id, working_id = failing.id, working.id

    clock.travel(hours=2)

    record = engine.audit.record

    def broken_record(
        action: HistoryAction,
        booking: Booking,
        *args: Any,
        **kwargs: Any
    ) -> BookingHistory:

        if booking.id == failing_id:
            raise errors.StoreError('the history is full')
        return record(action, booking, *args, **kwargs)

    with patch.object(engine.audit, 'record', side_effect=broken_record):
        report = engine.sweep()

    assert report.released == [working_id]
    assert len(report.failures) == 1
    assert report.failures[0][0] == failing_id
    assert isinstance(report.failures[0][1], errors.StoreError)

    # the release and its history entry are rolled back together
    assert engine.booking(failing_id).is_active
    assert [e.action for e in engine.history(failing_id)] == ['BOOK']

    # the next sweep catches up
    assert engine.sweep().released == [failing_id]


def test_sweep_completed_event(engine: BookingEngine, clock: Clock) -> None:
    reports: list[SweepReport] = []

    events.on_sweep_completed.append(
        lambda context, report: reports.append(report)
    )

    book_resources(engine, 2, hours=1)

    engine.sweep()
    clock.travel(hours=2)
    engine.sweep()

    assert [r.released_count for r in reports] == [0, 2]


def test_sweep_notifies_released_bookings(
    engine: BookingEngine,
    clock: Clock
) -> None:

    updates: list[str] = []

    events.on_booking_updated.append(
        lambda context, booking, action: updates.append(action)
    )

    book_resources(engine, 2, hours=1)
    clock.travel(hours=2)
    engine.sweep()

    assert updates == ['EXPIRED', 'EXPIRED']


def test_sweep_survives_failing_subscribers(
    engine: BookingEngine,
    clock: Clock
) -> None:

    reports: list[SweepReport] = []

    def broken(context: object, booking: Booking, action: str) -> None:
        raise RuntimeError('subscriber down')

    events.on_booking_updated.append(broken)
    events.on_sweep_completed.append(
        lambda context, report: reports.append(report)
    )

    bookings = book_resources(engine, 3, hours=1)
    clock.travel(hours=2)

    report = engine.sweep()

    assert report.released == [b.id for b in bookings]
    assert report.failures == []
    assert len(reports) == 1

    for booking in bookings:
        assert not engine.booking(booking.id).is_active


def test_sweep_continues_after_unexpected_errors(
    engine: BookingEngine,
    clock: Clock
) -> None:

    failing, working = book_resources(engine, 2, hours=1)
    failing_id, working_id = failing.id, working.id

    clock.travel(hours=2)

    record = engine.audit.record

    def broken_record(
        action: HistoryAction,
        booking: Booking,
        *args: Any,
        **kwargs: Any
    ) -> BookingHistory:

        if booking.id == failing_id:
            raise KeyError('released_at')
        return record(action, booking, *args, **kwargs)

    with patch.object(engine.audit, 'record', side_effect=broken_record):
        report = engine.sweep()

    assert report.released == [working_id]
    assert report.failures[0][0] == failing_id
    assert isinstance(report.failures[0][1], KeyError)
    assert engine.booking(failing_id).is_active
