from __future__ import annotations

import uuid

from sqlalchemy import types


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from sqlalchemy.engine import Dialect

    _Base = types.TypeDecorator['SoftUUID']
else:
    _Base = types.TypeDecorator


class SoftUUID(uuid.UUID):
    """ Behaves just like the UUID class, but allows strings to be compared
    with it, so that SoftUUID('my-uuid') == 'my-uuid' equals True.

    Ids handed in by callers are often strings, this keeps them comparable
    to the ids coming from the store.

    """

    def __eq__(self, other: object) -> bool:

        if isinstance(other, str):
            return self.hex == other.replace('-', '').strip()

        if isinstance(other, uuid.UUID):
            return self.int == other.int

        return False

    def __ne__(self, other: object) -> bool:
        return not self.__eq__(other)

    def __hash__(self) -> int:
        return hash(self.int)


def as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    """ Coerces ids given as strings, raises a ValueError if that isn't
    possible.

    """
    if isinstance(value, uuid.UUID):
        return value

    return uuid.UUID(str(value).strip())


class UUID(_Base):
    """ Uses the native UUID type where available (Postgres) and a CHAR(32)
    everywhere else, returning SoftUUIDs instead of UUIDs on load.

    """
    impl = types.Uuid
    cache_ok = True

    def process_bind_param(  # type:ignore[override]
        self,
        value: uuid.UUID | str | None,
        dialect: Dialect
    ) -> uuid.UUID | None:

        if value is not None:
            return as_uuid(value)
        return None

    def process_result_value(
        self,
        value: uuid.UUID | None,
        dialect: Dialect
    ) -> SoftUUID | None:
        if value is not None:
            return SoftUUID(int=value.int)
        return None
