from __future__ import annotations

import pytest

from tandem.db.models.types.uuid_type import as_uuid, SoftUUID
from uuid import uuid4, UUID


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from tandem.db.engine import BookingEngine


def test_string_equal_uuid() -> None:
    uuid = uuid4()

    assert uuid == SoftUUID(uuid.hex)
    assert SoftUUID(uuid.hex) == uuid.hex
    assert SoftUUID(uuid.hex) == str(uuid)
    assert SoftUUID(uuid.hex) == f' {uuid} '
    assert SoftUUID(uuid.hex) != uuid4().hex
    assert SoftUUID(uuid.hex) != 1


def test_hashable_uuid() -> None:
    uuid = uuid4()

    assert hash(SoftUUID(uuid.hex)) == hash(SoftUUID(str(uuid)))
    assert len({SoftUUID(uuid.hex), SoftUUID(str(uuid))}) == 1


def test_as_uuid() -> None:
    uuid = uuid4()

    assert as_uuid(uuid) is uuid
    assert as_uuid(str(uuid)) == uuid
    assert as_uuid(f'  {uuid.hex}\n') == uuid
    assert isinstance(as_uuid(uuid.hex), UUID)

    with pytest.raises(ValueError):
        as_uuid('qa-1')


def test_ids_are_loaded_as_soft_uuids(engine: BookingEngine) -> None:
    resource = engine.create_resource('qa-1')
    resource = engine.resource(str(resource.id))

    assert isinstance(resource.id, SoftUUID)
    assert resource.id == str(resource.id)
    assert resource.created.tzinfo is not None
