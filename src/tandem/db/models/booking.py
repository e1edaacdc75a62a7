from __future__ import annotations

from datetime import datetime
from uuid import uuid4 as new_uuid, UUID

from sqlalchemy import types
from sqlalchemy import text
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import ForeignKey
from sqlalchemy.schema import Index

from tandem.db.models.base import ORMBase
from tandem.db.models.resource import Resource
from tandem.db.models.timestamp import TimestampMixin


# a booking is active as long as it has been neither released nor deleted,
# regardless of whether it expired in the meantime
ACTIVE = 'released_at IS NULL AND deleted_at IS NULL'


class Booking(TimestampMixin, ORMBase):
    """Describes the reservation of a resource by somebody, for a branch,
    until the booking expires or is released.

    Of all the bookings of a resource, at most one is active at any time.
    This is guaranteed by a partial unique index in the store, not by the
    application, as concurrent bookings are only arbitrated reliably
    there.

    """

    __tablename__ = 'bookings'

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=new_uuid
    )

    resource_id: Mapped[UUID] = mapped_column(
        ForeignKey(Resource.id, ondelete='CASCADE'),
        index=True
    )

    booked_by: Mapped[str] = mapped_column(types.Text(), index=True)

    branch: Mapped[str] = mapped_column(types.Text())

    notes: Mapped[str | None] = mapped_column(types.Text())

    build_link: Mapped[str | None] = mapped_column(types.Text())

    expires_at: Mapped[datetime] = mapped_column(index=True)

    released_at: Mapped[datetime | None] = mapped_column(index=True)

    deleted_at: Mapped[datetime | None] = mapped_column(index=True)

    __table_args__ = (
        Index(
            'unique_active_booking_per_resource',
            'resource_id',
            unique=True,
            postgresql_where=text(ACTIVE),
            sqlite_where=text(ACTIVE)
        ),
    )

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return f'<Booking {self.branch!r} by {self.booked_by!r}>'

    @property
    def is_active(self) -> bool:
        """ True until the booking is released or deleted, even if it is
        past its expiry date.

        """
        return self.released_at is None and self.deleted_at is None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_current(self, now: datetime) -> bool:
        """ True if the booking occupies its resource from the point of view
        of somebody looking at it at the given time.

        """
        return self.is_active and not self.is_expired(now)
