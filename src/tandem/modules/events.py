""" Events are called by the :class:`tandem.db.engine.BookingEngine` after
a change has been committed to the store. They are the change notification
feed of tandem: every event is scoped to a single row, so subscribers may
apply minimal updates instead of refetching everything.

The implementation is very simple:

To add an event::

    from tandem.modules import events

    def on_booking_inserted(context, booking):
        pass

    events.on_booking_inserted.append(on_booking_inserted)

To remove the same event::

    events.on_booking_inserted.remove(on_booking_inserted)

Events are called in the order they were added.
"""
from __future__ import annotations


from typing import overload
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from typing_extensions import ParamSpec

    from tandem.context.core import Context
    from tandem.db.models import Booking, Resource
    from tandem.db.models.history import HistoryAction
    from tandem.db.engine import SweepReport

    _P = ParamSpec('_P')


class Event(list['Callable[_P, object]']):
    """Event subscription. By http://stackoverflow.com/a/2022629

    A list of callable objects. Calling an instance of this will cause a
    call to each item in the list in ascending order by index.

    """
    # NOTE: This is only used for binding the correct `ParamSpec` for callback
    #       protocols, otherwise we have to define a pseudo-type, that doesn't
    #       look like an instance of `Event`...
    @overload
    def __init__(self, f: type[Callable[_P, object]]) -> None: ...
    @overload
    def __init__(self) -> None: ...

    def __init__(self, f: object = None) -> None:
        return

    def __call__(self, *args: _P.args, **kwargs: _P.kwargs) -> None:
        for f in self:
            f(*args, **kwargs)


on_booking_inserted: Event[Context, Booking] = Event()
""" Called when a booking was created, with the following arguments:

    :context:
        The :class:`tandem.context.core.Context` used when booking.

    :booking:
        The :class:`tandem.db.models.Booking` that was inserted.

"""

on_booking_updated: Event[Context, Booking, HistoryAction] = Event()
""" Called when a booking row changed, with the following arguments:

    :context:
        The :class:`tandem.context.core.Context` used for the change.

    :booking:
        The :class:`tandem.db.models.Booking` as it is after the change.

    :action:
        The history action describing the change, one of ``'EXTEND'``,
        ``'EDIT'``, ``'RELEASE'``, ``'EXPIRED'`` or ``'DELETE'``.

"""

on_resource_inserted: Event[Context, Resource] = Event()
""" Called when a resource was created, with the context and the new
:class:`tandem.db.models.Resource`.

"""

on_resource_updated: Event[Context, Resource] = Event()
""" Called when the name or the labels of a resource changed, with the
context and the :class:`tandem.db.models.Resource`.

"""

on_resource_deleted: Event[Context, Resource] = Event()
""" Called when a resource was soft-deleted, with the context and the
:class:`tandem.db.models.Resource`. The bookings deleted along with the
resource are announced through :data:`on_booking_updated` first.

"""

on_sweep_completed: Event[Context, SweepReport] = Event()
""" Called once per sweep, with the context and the
:class:`tandem.db.engine.SweepReport` listing the released bookings and
the failures. Called even if nothing was released.

"""
