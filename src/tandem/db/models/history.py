from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import types
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import ForeignKey

from tandem.db.models.base import ORMBase
from tandem.db.models.resource import Resource


from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from typing_extensions import TypeAlias


HistoryAction: TypeAlias = Literal[
    'BOOK', 'EXTEND', 'RELEASE', 'EXPIRED', 'EDIT', 'DELETE'
]
HISTORY_ACTIONS: tuple[HistoryAction, ...] = (
    'BOOK', 'EXTEND', 'RELEASE', 'EXPIRED', 'EDIT', 'DELETE'
)


class BookingHistory(ORMBase):
    """Describes a booking as it was right after a state transition.

    History entries are only ever appended, one per transition. A booking
    therefore accumulates a chain of entries over its lifetime.

    The booking id is not a foreign key, the entries outlive whatever
    happens to the booking itself.

    """

    __tablename__ = 'booking_history'

    # increases with every entry, orders the entries of a single instant
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    booking_id: Mapped[UUID | None] = mapped_column(index=True)

    action: Mapped[HistoryAction] = mapped_column(
        types.Enum(
            *HISTORY_ACTIONS,
            name='booking_history_action'
        ),
        index=True
    )

    resource_id: Mapped[UUID] = mapped_column(
        ForeignKey(Resource.id, ondelete='CASCADE'),
        index=True
    )

    booked_by: Mapped[str] = mapped_column(types.Text(), index=True)

    branch: Mapped[str] = mapped_column(types.Text())

    notes: Mapped[str | None] = mapped_column(types.Text())

    build_link: Mapped[str | None] = mapped_column(types.Text())

    expires_at: Mapped[datetime]

    released_at: Mapped[datetime | None]

    # whoever performed the action, if known (free text, like booked_by)
    actor: Mapped[str | None] = mapped_column(types.Text())

    timestamp: Mapped[datetime] = mapped_column(index=True)

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return f'<BookingHistory {self.action} {self.booking_id}>'
