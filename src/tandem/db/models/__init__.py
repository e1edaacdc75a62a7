from tandem.db.models.base import ORMBase
from tandem.db.models.resource import Resource
from tandem.db.models.booking import Booking
from tandem.db.models.history import BookingHistory


__all__ = ('ORMBase', 'Resource', 'Booking', 'BookingHistory')
