from __future__ import annotations

from datetime import datetime
from uuid import uuid4 as new_uuid, UUID

from sqlalchemy import types
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import Mapped

from tandem.db.models.base import ORMBase
from tandem.db.models.timestamp import TimestampMixin
from tandem.modules.utils import parse_labels


class Resource(TimestampMixin, ORMBase):
    """Describes a shared environment that can be booked, e.g. a QA
    server.

    The status of a resource (free or locked) is never stored, it is
    derived from its bookings, see :mod:`tandem.modules.projection`.

    """

    __tablename__ = 'resources'

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=new_uuid
    )

    name: Mapped[str] = mapped_column(
        types.Text(),
        unique=True
    )

    labels: Mapped[str | None] = mapped_column(types.Text())

    deleted_at: Mapped[datetime | None] = mapped_column(index=True)

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return f'<Resource {self.name!r}>'

    @property
    def label_list(self) -> list[str]:
        return parse_labels(self.labels)

    def has_label(self, label: str) -> bool:
        return label.strip() in self.label_list
