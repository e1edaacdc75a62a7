from __future__ import annotations

import logging

from sqlalchemy import select

from tandem.context.core import ContextServicesMixin
from tandem.db.models import Booking, BookingHistory, Resource
from tandem.db.models.types.uuid_type import as_uuid


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime
    from sqlalchemy.orm import Query
    from sqlalchemy.sql import ColumnElement
    from uuid import UUID

    from tandem.context.core import Context


log = logging.getLogger('tandem')


class Queries(ContextServicesMixin):
    """ Contains the reads (and the conditional writes) the booking engine
    performs against the store.

    Nothing read here is cached. Each method hits the store through the
    current session, so callers always decide on current truth.

    """

    def __init__(self, context: Context):
        self.context = context

    @staticmethod
    def active(query: Query[Booking]) -> Query[Booking]:
        """ Limits a booking query to the bookings which are neither
        released nor deleted, regardless of their expiry date.

        """
        return query.filter(
            Booking.released_at.is_(None),
            Booking.deleted_at.is_(None)
        )

    @staticmethod
    def not_expired(
        query: Query[Booking],
        now: datetime
    ) -> Query[Booking]:
        return query.filter(Booking.expires_at > now)

    def resources(self, include_deleted: bool = False) -> Query[Resource]:
        query = self.session.query(Resource)

        if not include_deleted:
            query = query.filter(Resource.deleted_at.is_(None))

        return query

    def bookings(self, include_deleted: bool = False) -> Query[Booking]:
        query = self.session.query(Booking)

        if not include_deleted:
            query = query.filter(Booking.deleted_at.is_(None))

        return query

    def find_resource(
        self,
        id: UUID | str,
        include_deleted: bool = False
    ) -> Resource | None:

        try:
            id = as_uuid(id)
        except ValueError:
            return None

        query = self.resources(include_deleted)
        query = query.filter(Resource.id == id)

        return query.first()

    def find_booking(
        self,
        id: UUID | str,
        include_deleted: bool = False
    ) -> Booking | None:

        try:
            id = as_uuid(id)
        except ValueError:
            return None

        query = self.bookings(include_deleted)
        query = query.filter(Booking.id == id)

        return query.first()

    def find_active_booking(self, resource_id: UUID | str) -> Booking | None:
        """ Returns the active booking of the given resource, even if it
        expired already but has not been swept yet.

        """
        try:
            resource_id = as_uuid(resource_id)
        except ValueError:
            return None

        query = self.active(self.session.query(Booking))
        query = query.filter(Booking.resource_id == resource_id)

        return query.first()

    def list_resources(self, include_deleted: bool = False) -> list[Resource]:
        query = self.resources(include_deleted)
        query = query.order_by(Resource.name)

        return query.all()

    def list_active_bookings(
        self,
        not_expired_only: bool,
        now: datetime | None = None
    ) -> list[Booking]:
        """ Returns the active bookings. With not_expired_only, only the
        bookings which are also current are returned (these are the ones
        occupying a resource for display purposes).

        """

        query = self.active(self.session.query(Booking))

        if not_expired_only:
            query = self.not_expired(query, now or self.utcnow())

        query = query.order_by(Booking.created)

        return query.all()

    def expired_booking_ids(self, now: datetime) -> list[UUID]:
        """ Returns the ids of the bookings that the sweep should release,
        oldest expiry first.

        """

        query = select(Booking.id)
        query = query.where(
            Booking.released_at.is_(None),
            Booking.deleted_at.is_(None),
            Booking.expires_at <= now
        )
        query = query.order_by(Booking.expires_at)

        return list(self.session.scalars(query))

    def update_active_booking(
        self,
        id: UUID | str,
        patch: dict[str, Any],
        extra_filters: Iterable[ColumnElement[bool]] = ()
    ) -> int:
        """ Updates the booking with the given id, but only if it is still
        active (and matches the extra filters). Returns the number of
        affected rows, which is zero if another transaction got there
        first.

        """

        query = self.active(self.session.query(Booking))
        query = query.filter(Booking.id == as_uuid(id), *extra_filters)

        return query.update(patch, synchronize_session=False)

    def bookings_by_resource(self, resource_id: UUID | str) -> list[Booking]:
        """ All non-deleted bookings of the given resource, including the
        released ones.

        """
        query = self.bookings()
        query = query.filter(Booking.resource_id == as_uuid(resource_id))
        query = query.order_by(Booking.created)

        return query.all()

    def available_labels(self) -> list[str]:
        labels: list[str] = []

        for resource in self.list_resources():
            for label in resource.label_list:
                if label not in labels:
                    labels.append(label)

        return labels

    def history_entries(
        self,
        booking_id: UUID | str | None = None,
        resource_id: UUID | str | None = None
    ) -> Query[BookingHistory]:
        """ Returns the history entries, newest first. Optionally limited
        to a booking and/or a resource.

        """

        query = self.session.query(BookingHistory)

        if booking_id is not None:
            query = query.filter(
                BookingHistory.booking_id == as_uuid(booking_id)
            )

        if resource_id is not None:
            query = query.filter(
                BookingHistory.resource_id == as_uuid(resource_id)
            )

        # the same timestamp is common within a sweep or a cascade
        query = query.order_by(
            BookingHistory.timestamp.desc(),
            BookingHistory.id.desc()
        )

        return query
