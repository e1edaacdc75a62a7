from __future__ import annotations

from tandem.context.core import ContextServicesMixin
from tandem.db.models import BookingHistory
from tandem.db.models.history import HISTORY_ACTIONS
from tandem.modules import errors


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import datetime

    from tandem.context.core import Context
    from tandem.db.models import Booking
    from tandem.db.models.history import HistoryAction


def snapshot(
    action: HistoryAction,
    booking: Booking,
    timestamp: datetime,
    actor: str | None = None
) -> BookingHistory:
    """ Returns a new history entry for the given action, copying the fields
    of the booking as they are *after* the transition.

    This is a pure function, the entry is not added to any session.

    """

    if action not in HISTORY_ACTIONS:
        raise errors.ValidationError(f'unknown history action {action!r}')

    entry = BookingHistory()
    entry.booking_id = booking.id
    entry.action = action
    entry.resource_id = booking.resource_id
    entry.booked_by = booking.booked_by
    entry.branch = booking.branch
    entry.notes = booking.notes
    entry.build_link = booking.build_link
    entry.expires_at = booking.expires_at
    entry.released_at = booking.released_at
    entry.actor = actor
    entry.timestamp = timestamp

    return entry


class AuditLogger(ContextServicesMixin):
    """ Appends history entries for the transitions of the booking engine.

    Entries are added to the session of the transition they describe. They
    are written and rolled back together with it, so there's never a
    transition without its entry, or an entry without its transition.

    """

    def __init__(self, context: Context):
        self.context = context

    def record(
        self,
        action: HistoryAction,
        booking: Booking,
        timestamp: datetime | None = None,
        actor: str | None = None
    ) -> BookingHistory:

        entry = snapshot(action, booking, timestamp or self.utcnow(), actor)
        self.session.add(entry)

        return entry
