from __future__ import annotations

import logging

from contextlib import contextmanager
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tandem.context.core import ContextServicesMixin, missing
from tandem.db.audit import AuditLogger
from tandem.db.models import ORMBase, Booking, Resource
from tandem.db.queries import Queries
from tandem.modules import errors
from tandem.modules import events
from tandem.modules import projection
from tandem.modules import utils


from typing import Any
from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterator
    from datetime import datetime
    from typing_extensions import Self, TypeAlias
    from uuid import UUID

    from tandem.context.core import Context, missing_t
    from tandem.db.models import BookingHistory
    from tandem.db.models.history import HistoryAction
    from tandem.modules.events import Event
    from tandem.modules.projection import ResourceView

    _Notify: TypeAlias = Callable[..., None]


log = logging.getLogger('tandem')


# the store reports these when two SERIALIZABLE transactions collide
SERIALIZATION_FAILURES = ('40001', '40P01')


def is_conflict(error: SQLAlchemyError) -> bool:
    """ True if the error means that another transaction won a race,
    as opposed to the store being broken.

    """
    if isinstance(error, IntegrityError):
        return True

    pgcode = getattr(getattr(error, 'orig', None), 'pgcode', None)
    return pgcode in SERIALIZATION_FAILURES


class SweepReport(NamedTuple):
    released: list[UUID]
    failures: list[tuple[UUID, Exception]]

    @property
    def released_count(self) -> int:
        return len(self.released)


class BookingEngine(ContextServicesMixin):
    """ The booking engine coordinates who holds which resource. It is the
    main part of the API.

    All coordination between concurrent callers is left to the store. The
    engine keeps no state between calls and never checks whether a
    resource is free before booking it. The partial unique index on the
    active bookings decides which of two concurrent bookings wins.

    Each operation is a unit of work of its own. It starts by discarding
    whatever transaction the current session still had open, so decisions
    are always based on the current state of the store. It commits at the
    end, or rolls back if anything fails. The change notifications of
    :mod:`tandem.modules.events` are sent after the commit.

    """

    def __init__(self, context: Context):
        """ Initializes a new booking engine.

        :context:
            The :class:`tandem.context.core.Context` this engine should
            operate on. Acquire a context by using
            :func:`tandem.context.registry.Registry.register_context`.

        """

        self.context = context
        self.queries = Queries(context)
        self.audit = AuditLogger(context)

    def clone(self) -> Self:
        """ Clones the engine. The result will be a new engine using the
        same context.

        """
        return self.__class__(self.context)

    def setup_database(self) -> None:
        """ Creates the tables and indices required for tandem. This needs
        to be called once per database. Multiple invocations won't hurt but
        they are unnecessary.

        """
        ORMBase.metadata.create_all(self.session.bind)

    def clear_cache(self) -> None:
        super().clear_cache()
        self.queries.clear_cache()
        self.audit.clear_cache()

    def begin(self) -> None:
        """ Ends whatever transaction the session still has open. Objects
        loaded before are expired and will be reloaded on access.

        """
        if self.session.in_transaction():
            self.rollback()

    @contextmanager
    def transaction(
        self,
        on_conflict: Callable[[], errors.ConflictError] | None = None
    ) -> Iterator[_Notify]:
        """ Runs the body as a single transaction and yields a function to
        queue change notifications with. They are sent once the transaction
        is committed.

        Collisions with other transactions are raised as the conflict
        returned by ``on_conflict``. All other store errors are raised as
        :class:`tandem.modules.errors.StoreError`.

        """

        notifications: list[tuple[Event[Any], tuple[Any, ...]]] = []

        def notify(event: Event[Any], *args: Any) -> None:
            notifications.append((event, args))

        self.begin()

        try:
            yield notify
            self.commit()
        except SQLAlchemyError as e:
            self.rollback()

            if on_conflict is not None and is_conflict(e):
                conflict = on_conflict()
                log.info(f'Transaction lost a race: {conflict}')
                raise conflict from e

            raise errors.StoreError(str(e)) from e
        except BaseException:
            self.rollback()
            raise

        for event, args in notifications:
            self.dispatch(event, *args)

    def dispatch(self, event: Event[Any], *args: Any) -> None:
        """ Calls the subscribers of the given event one by one. The change
        was committed already, so failing subscribers are logged and skipped
        instead of failing the operation.

        """
        for subscriber in list(event):
            try:
                subscriber(self.context, *args)
            except Exception:
                log.exception(f'Subscriber {subscriber!r} failed')

    def _required(self, field: str, value: str | None) -> str:
        if not isinstance(value, str) or not value.strip():
            raise errors.EmptyFieldError(field)

        return value.strip()

    def _timestamp(self, field: str, value: datetime | str | None) -> datetime:
        if value is None:
            raise errors.EmptyFieldError(field)

        return utils.as_utc(value, self.timezone)

    def _resource(self, resource_id: UUID | str) -> Resource:
        resource = self.queries.find_resource(resource_id)

        if resource is None:
            raise errors.ResourceNotFound(resource_id)

        return resource

    def _booking(self, booking_id: UUID | str) -> Booking:
        booking = self.queries.find_booking(booking_id)

        if booking is None:
            raise errors.BookingNotFound(booking_id)

        return booking

    def _lost_race(
        self,
        booking_id: UUID | str,
        now: datetime | None = None
    ) -> bool:
        """ Checks, after a collision, whether the booking was settled by
        the other transaction. It was if the booking is no longer active or,
        when ``now`` is given, if it no longer expired at that time.

        """
        with self.transaction():
            booking = self.queries.find_booking(
                booking_id, include_deleted=True
            )

            if booking is None or not booking.is_active:
                return True

            return now is not None and not booking.is_expired(now)

    def book(
        self,
        resource_id: UUID | str,
        booked_by: str,
        branch: str,
        expires_at: datetime | str,
        notes: str | None = None,
        build_link: str | None = None
    ) -> Booking:
        """ Books the given resource until it expires and returns the new
        booking.

        :resource_id:
            The id of the resource to book. It must exist and must not be
            deleted.

        :booked_by:
            The name of whoever books the resource. Free text, required.

        :branch:
            The branch deployed to the resource. Required.

        :expires_at:
            A datetime or an ISO 8601 string. Naive values are assumed to
            be in the timezone of :ref:`settings.timezone`. It must lie in
            the future.

        :notes:
            Optional notes, empty strings are stored as None.

        :build_link:
            Optional link to the build, empty strings are stored as None.

        If the resource is held by another booking, an
        :class:`~tandem.modules.errors.AlreadyBookedError` is raised. This
        includes the case where that other booking expired already, but has
        not been released by the sweep yet.

        """

        booked_by = self._required('booked_by', booked_by)
        branch = self._required('branch', branch)
        expires = self._timestamp('expires_at', expires_at)

        now = self.utcnow()

        if expires <= now:
            raise errors.InvalidTimestampError(
                'The expiry date must lie in the future'
            )

        with self.transaction(
            lambda: errors.AlreadyBookedError(resource_id)
        ) as notify:
            resource = self._resource(resource_id)

            booking = Booking()
            booking.resource_id = resource.id
            booking.booked_by = booked_by
            booking.branch = branch
            booking.notes = utils.strip_or_none(notes)
            booking.build_link = utils.strip_or_none(build_link)
            booking.expires_at = expires
            booking.created = now

            # no lookup of the active booking beforehand, the unique index
            # is the only reliable judge between concurrent bookings
            self.session.add(booking)
            self.session.flush()

            self.audit.record('BOOK', booking, now)
            notify(events.on_booking_inserted, booking)

        return booking

    def release(
        self,
        booking_id: UUID | str,
        released_by: str | None = None
    ) -> None:
        """ Releases the given booking, freeing its resource.

        Releasing a booking that was released already (by a previous call,
        by a concurrent caller or by the sweep) does nothing. Releasing a
        deleted or unknown booking raises
        :class:`~tandem.modules.errors.BookingNotFound`, even if the booking
        was deleted while it was being released.

        :released_by:
            Optional name of whoever released the booking, kept in the
            history.

        """

        try:
            with self.transaction(
                lambda: errors.ConcurrentUpdateError(booking_id)
            ) as notify:
                booking = self._booking(booking_id)

                if booking.released_at is not None:
                    return

                now = self.utcnow()
                patch = {Booking.released_at: now}

                if not self.queries.update_active_booking(booking.id, patch):
                    self._reread(booking_id, booking)
                    log.info(f'Booking {booking_id} was released already')
                    return

                self.session.refresh(booking)
                self.audit.record(
                    'RELEASE', booking, now,
                    actor=utils.strip_or_none(released_by)
                )
                notify(events.on_booking_updated, booking, 'RELEASE')

        except errors.ConcurrentUpdateError:
            if not self._lost_race(booking_id):
                raise

            # raises if the other transaction deleted the booking
            self.booking(booking_id)

    def _reread(self, booking_id: UUID | str, booking: Booking) -> Booking:
        """ Reloads a booking the conditional update didn't match, raising
        :class:`~tandem.modules.errors.BookingNotFound` if it was deleted in
        the meantime.

        """
        self.session.refresh(booking)

        if booking.deleted_at is not None:
            raise errors.BookingNotFound(booking_id)

        return booking

    def _change(
        self,
        booking_id: UUID | str,
        patch: dict[Any, Any],
        action: HistoryAction,
        now: datetime
    ) -> None:

        try:
            with self.transaction(
                lambda: errors.ConcurrentUpdateError(booking_id)
            ) as notify:
                booking = self._booking(booking_id)

                if not self.queries.update_active_booking(booking.id, patch):
                    self._reread(booking_id, booking)
                    raise errors.BookingNotActiveError(booking_id)

                self.session.refresh(booking)
                self.audit.record(action, booking, now)
                notify(events.on_booking_updated, booking, action)

        except errors.ConcurrentUpdateError:
            if not self._lost_race(booking_id):
                raise

            # the other transaction released or deleted the booking
            self.booking(booking_id)
            raise errors.BookingNotActiveError(booking_id) from None

    def extend(
        self,
        booking_id: UUID | str,
        new_expires_at: datetime | str
    ) -> None:
        """ Changes the expiry date of an active booking.

        The new expiry date may lie before the current one, which shortens
        the booking. It may even lie in the past (the sweep will then
        release the booking), unless
        :ref:`settings.reject_past_extensions` is set.

        """

        expires = self._timestamp('new_expires_at', new_expires_at)
        now = self.utcnow()

        if self.context.get_setting('reject_past_extensions'):
            if expires <= now:
                raise errors.InvalidTimestampError(
                    'The new expiry date must lie in the future'
                )

        self._change(booking_id, {Booking.expires_at: expires}, 'EXTEND', now)

    def edit(
        self,
        booking_id: UUID | str,
        branch: str | missing_t = missing,
        notes: str | None | missing_t = missing,
        build_link: str | None | missing_t = missing
    ) -> None:
        """ Changes the details of an active booking. Only the given
        values are changed, the others are left as they are.

        Passing None (or an empty string) as notes or build link removes
        them. The branch may be changed but not removed.

        """

        patch: dict[Any, Any] = {}

        if branch is not missing:
            patch[Booking.branch] = self._required('branch', branch)

        if notes is not missing:
            patch[Booking.notes] = utils.strip_or_none(notes)

        if build_link is not missing:
            patch[Booking.build_link] = utils.strip_or_none(build_link)

        if not patch:
            raise errors.ValidationError('Nothing to edit')

        self._change(booking_id, patch, 'EDIT', self.utcnow())

    def _expire(self, booking_id: UUID, now: datetime) -> bool:
        try:
            with self.transaction(
                lambda: errors.ConcurrentUpdateError(booking_id)
            ) as notify:
                booking = self.queries.find_booking(booking_id)

                if booking is None:
                    return False

                # the expiry is checked again, the booking might have been
                # extended since it was selected
                patch = {Booking.released_at: now}
                expired = (Booking.expires_at <= now, )

                if not self.queries.update_active_booking(
                        booking.id, patch, expired):
                    return False

                self.session.refresh(booking)
                self.audit.record('EXPIRED', booking, now)
                notify(events.on_booking_updated, booking, 'EXPIRED')

        except errors.ConcurrentUpdateError:
            if self._lost_race(booking_id, now):
                return False
            raise

        return True

    def sweep(self) -> SweepReport:
        """ Releases all active bookings past their expiry date and returns
        a report with the released booking ids and the failures.

        Every booking is released in a transaction of its own, together
        with its history entry. If a booking cannot be released, the
        failure is logged and reported and the sweep goes on with the next
        booking.

        Bookings released by somebody else in the meantime are skipped. It
        is therefore safe to run multiple sweeps concurrently.

        """

        now = self.utcnow()

        with self.transaction():
            expired_ids = self.queries.expired_booking_ids(now)

        report = SweepReport(released=[], failures=[])

        for booking_id in expired_ids:
            try:
                if self._expire(booking_id, now):
                    report.released.append(booking_id)
            except Exception as e:
                log.exception(
                    f'Failed to release expired booking {booking_id}'
                )
                report.failures.append((booking_id, e))

        if report.released or report.failures:
            log.info(
                f'Released {report.released_count} expired bookings, '
                f'{len(report.failures)} failed'
            )

        self.dispatch(events.on_sweep_completed, report)

        return report

    def sweep_expired(self) -> int:
        """ Releases all active bookings past their expiry date and returns
        their number. See :meth:`sweep` for the failures.

        """
        return self.sweep().released_count

    def delete_booking(
        self,
        booking_id: UUID | str,
        deleted_by: str | None = None
    ) -> None:
        """ Soft-deletes the given booking. The booking stays in the store,
        but is no longer found by the engine. A deleted booking no longer
        holds its resource.

        """

        with self.transaction(
            lambda: errors.ConcurrentUpdateError(booking_id)
        ) as notify:
            booking = self._booking(booking_id)
            self._delete_booking(booking, self.utcnow(), deleted_by, notify)

    def _delete_booking(
        self,
        booking: Booking,
        now: datetime,
        deleted_by: str | None,
        notify: _Notify
    ) -> None:
        booking.deleted_at = now
        self.audit.record(
            'DELETE', booking, now,
            actor=utils.strip_or_none(deleted_by)
        )
        notify(events.on_booking_updated, booking, 'DELETE')

    def create_resource(
        self,
        name: str,
        labels: str | list[str] | None = None
    ) -> Resource:
        """ Adds a new resource and returns it. The name must be unique,
        the labels are given either as list or as comma separated string.

        """

        name = self._required('name', name)

        with self.transaction(
            lambda: errors.DuplicateResourceError(name)
        ) as notify:
            resource = Resource()
            resource.name = name
            resource.labels = utils.join_labels(labels)
            resource.created = self.utcnow()

            self.session.add(resource)
            self.session.flush()

            notify(events.on_resource_inserted, resource)

        return resource

    def update_resource(
        self,
        resource_id: UUID | str,
        name: str | missing_t = missing,
        labels: str | list[str] | None | missing_t = missing
    ) -> Resource:
        """ Renames the resource and/or changes its labels. Only the given
        values are changed.

        """

        if name is not missing:
            name = self._required('name', name)

        def conflict() -> errors.ConflictError:
            if name is missing:
                return errors.ConflictError(
                    f'resource {resource_id} was changed by somebody else'
                )
            return errors.DuplicateResourceError(name)

        with self.transaction(conflict) as notify:
            resource = self._resource(resource_id)

            if name is not missing:
                resource.name = name

            if labels is not missing:
                resource.labels = utils.join_labels(labels)

            self.session.flush()
            notify(events.on_resource_updated, resource)

        return resource

    def delete_resource(
        self,
        resource_id: UUID | str,
        deleted_by: str | None = None
    ) -> None:
        """ Soft-deletes the given resource together with its bookings. A
        resource that is currently booked cannot be deleted, the booking has
        to be released first (or swept, if it expired).

        Each deleted booking gets a DELETE entry in the history.

        """

        with self.transaction(
            lambda: errors.ResourceInUseError(resource_id)
        ) as notify:
            resource = self._resource(resource_id)

            if self.queries.find_active_booking(resource.id) is not None:
                raise errors.ResourceInUseError(resource_id)

            now = self.utcnow()
            resource.deleted_at = now

            for booking in self.queries.bookings_by_resource(resource.id):
                self._delete_booking(booking, now, deleted_by, notify)

            notify(events.on_resource_deleted, resource)

    def resource(self, resource_id: UUID | str) -> Resource:
        self.begin()
        return self._resource(resource_id)

    def booking(self, booking_id: UUID | str) -> Booking:
        self.begin()
        return self._booking(booking_id)

    def active_booking(self, resource_id: UUID | str) -> Booking | None:
        """ The booking holding the resource, even if it is expired but not
        yet swept.

        """
        self.begin()
        return self.queries.find_active_booking(resource_id)

    def resources(self, include_deleted: bool = False) -> list[Resource]:
        self.begin()
        return self.queries.list_resources(include_deleted)

    def resource_views(self, label: str | None = None) -> list[ResourceView]:
        """ Returns the resources with their status and current booking,
        ordered by name. Optionally limited to the resources with the given
        label.

        A resource whose booking expired shows as free, even though it
        cannot be booked until the sweep released the booking.

        """

        self.begin()

        views = projection.project(
            self.queries.list_resources(),
            self.queries.list_active_bookings(
                not_expired_only=True, now=self.utcnow()
            )
        )

        return projection.filter_by_label(views, label)

    def available_labels(self) -> list[str]:
        self.begin()
        return self.queries.available_labels()

    def history(
        self,
        booking_id: UUID | str | None = None,
        resource_id: UUID | str | None = None
    ) -> list[BookingHistory]:
        """ Returns the history entries, newest first. """

        self.begin()
        return self.queries.history_entries(booking_id, resource_id).all()

    def expiry_presets(self) -> dict[str, datetime]:
        return utils.expiry_presets(self.utcnow(), self.timezone)
