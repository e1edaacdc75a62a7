""" Derives the observable status of resources from their bookings.

The status of a resource is never stored. A resource is ``LOCKED`` while it
has a *current* booking (active and not yet expired) and ``FREE`` otherwise.

Note that this differs from what the booking engine considers when booking:
there, any *active* booking blocks the resource, expired or not. A resource
whose booking just expired is therefore displayed as free, but cannot be
booked until the sweep has released the expired booking.

"""
from __future__ import annotations

import sedate

from tandem.modules import events
from tandem.modules.utils import time_until_expiry


from typing import Literal
from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterable
    from collections.abc import Iterator
    from datetime import datetime
    from typing_extensions import TypeAlias
    from uuid import UUID

    from tandem.context.core import Context
    from tandem.db.models import Booking, Resource
    from tandem.db.models.history import HistoryAction


Status: TypeAlias = Literal['FREE', 'LOCKED']


class ResourceView(NamedTuple):
    resource: Resource
    current_booking: Booking | None
    status: Status

    @property
    def id(self) -> UUID:
        return self.resource.id

    @property
    def name(self) -> str:
        return self.resource.name

    def expires_in(self, now: datetime) -> str | None:
        """ The time left on the current booking, for display. """
        if self.current_booking is None:
            return None

        return time_until_expiry(self.current_booking.expires_at, now)


def view(resource: Resource, booking: Booking | None) -> ResourceView:
    status: Status = 'LOCKED' if booking is not None else 'FREE'
    return ResourceView(resource, booking, status)


def project(
    resources: Iterable[Resource],
    active_bookings: Iterable[Booking]
) -> list[ResourceView]:
    """ Attaches the current booking to each resource and sets the status
    accordingly. The order of the resources is kept.

    The bookings are expected to be filtered to the current ones already
    (active and not expired). If there are multiple bookings for a
    resource, the first one wins.

    """

    by_resource: dict[UUID, Booking] = {}

    for booking in active_bookings:
        by_resource.setdefault(booking.resource_id, booking)

    return [view(r, by_resource.get(r.id)) for r in resources]


def filter_by_label(
    views: Iterable[ResourceView],
    label: str | None
) -> list[ResourceView]:

    if not label or label == 'all':
        return list(views)

    return [v for v in views if v.resource.has_label(label)]


class ResourceBoard:
    """ Keeps a list of resource views up to date by applying the change
    notifications of the booking engine, without reading the store again.

    Usage::

        board = ResourceBoard(engine.resource_views())
        board.connect()
        ...
        board.disconnect()

    Only notifications of the given context are applied, if one is given.
    Bookings are only attached while they are current, according to the
    clock of the context (or the given clock). Like :func:`project`, the
    board shows a resource as free once its booking expired.

    New resources are announced, but not added, as their position depends
    on the ordering of the initial read. Call :meth:`reset` with freshly
    read views to include them.

    """

    def __init__(
        self,
        views: Iterable[ResourceView],
        context: Context | None = None,
        clock: Callable[[], datetime] | None = None
    ):
        if clock is None:
            clock = sedate.utcnow if context is None else (
                context.get_service('clock')
            )

        self.context = context
        self.clock = clock
        self.views = list(views)
        self.unseen_resources: list[Resource] = []

    def reset(self, views: Iterable[ResourceView]) -> None:
        self.views = list(views)
        self.unseen_resources = []

    def __iter__(self) -> Iterator[ResourceView]:
        return iter(self.views)

    def __len__(self) -> int:
        return len(self.views)

    def get(self, resource_id: UUID | str) -> ResourceView | None:
        for v in self.views:
            if v.resource.id == resource_id:
                return v
        return None

    def status(self, resource_id: UUID | str) -> Status | None:
        v = self.get(resource_id)
        return v and v.status

    def is_relevant(self, context: Context) -> bool:
        return self.context is None or self.context is context

    def _replace(
        self,
        resource_id: UUID,
        booking: Booking | None,
        resource: Resource | None = None
    ) -> None:
        self.views = [
            view(resource or v.resource, booking)
            if v.resource.id == resource_id else v
            for v in self.views
        ]

    def _apply(self, booking: Booking) -> None:
        if booking.is_current(self.clock()):
            self._replace(booking.resource_id, booking)
            return

        current = self.get(booking.resource_id)

        # an old booking being deleted doesn't free the resource
        if current and current.current_booking is not None:
            if current.current_booking.id != booking.id:
                return

        self._replace(booking.resource_id, None)

    def on_booking_inserted(self, context: Context, booking: Booking) -> None:
        if self.is_relevant(context):
            self._apply(booking)

    def on_booking_updated(
        self,
        context: Context,
        booking: Booking,
        action: HistoryAction
    ) -> None:

        if self.is_relevant(context):
            self._apply(booking)

    def on_resource_inserted(
        self,
        context: Context,
        resource: Resource
    ) -> None:

        if self.is_relevant(context):
            self.unseen_resources.append(resource)

    def on_resource_updated(
        self,
        context: Context,
        resource: Resource
    ) -> None:

        if self.is_relevant(context):
            current = self.get(resource.id)
            if current is not None:
                self._replace(
                    resource.id, current.current_booking, resource
                )

    def on_resource_deleted(
        self,
        context: Context,
        resource: Resource
    ) -> None:

        if self.is_relevant(context):
            self.views = [
                v for v in self.views if v.resource.id != resource.id
            ]

    def expire(self, now: datetime) -> None:
        """ Frees the resources whose booking expired in the meantime, as
        there's no notification until the sweep releases them.

        """
        for v in self.views:
            booking = v.current_booking
            if booking is not None and booking.is_expired(now):
                self._replace(v.resource.id, None)

    def connect(self) -> None:
        events.on_booking_inserted.append(self.on_booking_inserted)
        events.on_booking_updated.append(self.on_booking_updated)
        events.on_resource_inserted.append(self.on_resource_inserted)
        events.on_resource_updated.append(self.on_resource_updated)
        events.on_resource_deleted.append(self.on_resource_deleted)

    def disconnect(self) -> None:
        events.on_booking_inserted.remove(self.on_booking_inserted)
        events.on_booking_updated.remove(self.on_booking_updated)
        events.on_resource_inserted.remove(self.on_resource_inserted)
        events.on_resource_updated.remove(self.on_resource_updated)
        events.on_resource_deleted.remove(self.on_resource_deleted)
