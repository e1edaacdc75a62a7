from __future__ import annotations

import sedate

from datetime import datetime
from sqlalchemy.orm import declared_attr
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import Mapped

from tandem.db.models.types import UTCDateTime


class TimestampMixin:
    """ Mixin providing created/modified timestamps for all records. The
    created timestamp doubles as the creation time of bookings, so unlike
    the modified timestamp it is not deferred.

    """

    @staticmethod
    def timestamp() -> datetime:
        return sedate.utcnow()

    @declared_attr
    def created(cls) -> Mapped[datetime]:
        return mapped_column(
            UTCDateTime(timezone=False),
            default=cls.timestamp,
            nullable=False
        )

    @declared_attr
    def modified(cls) -> Mapped[datetime | None]:
        return mapped_column(
            UTCDateTime(timezone=False),
            onupdate=cls.timestamp,
            deferred=True
        )
