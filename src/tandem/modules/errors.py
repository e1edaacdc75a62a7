from __future__ import annotations


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from uuid import UUID


class TandemError(Exception):
    pass


class ContextAlreadyExists(TandemError):
    pass


class UnknownContext(TandemError):
    pass


class ContextIsLocked(TandemError):
    pass


class UnknownService(TandemError):
    pass


class ValidationError(TandemError):
    """ The input of an operation is invalid. Never retried. """


class EmptyFieldError(ValidationError):

    __slots__ = ('field',)

    def __init__(self, field: str):
        super().__init__(f'{field} is required')
        self.field = field


class InvalidTimestampError(ValidationError):
    pass


class NotFoundError(TandemError):
    """ The given id does not resolve, or the record is soft-deleted. """


class ResourceNotFound(NotFoundError):

    __slots__ = ('resource_id',)

    def __init__(self, resource_id: UUID | str):
        super().__init__(f'resource {resource_id} not found')
        self.resource_id = resource_id


class BookingNotFound(NotFoundError):

    __slots__ = ('booking_id',)

    def __init__(self, booking_id: UUID | str):
        super().__init__(f'booking {booking_id} not found')
        self.booking_id = booking_id


class ConflictError(TandemError):
    """ The operation lost against the current state of the store. Callers
    may re-read and retry, the engine never does.

    """


class AlreadyBookedError(ConflictError):

    __slots__ = ('resource_id',)

    def __init__(self, resource_id: UUID | str):
        super().__init__('resource already booked')
        self.resource_id = resource_id


class BookingNotActiveError(ConflictError):

    __slots__ = ('booking_id',)

    def __init__(self, booking_id: UUID | str):
        super().__init__(f'booking {booking_id} is no longer active')
        self.booking_id = booking_id


class ConcurrentUpdateError(ConflictError):

    __slots__ = ('booking_id',)

    def __init__(self, booking_id: UUID | str):
        super().__init__(
            f'booking {booking_id} was changed by somebody else'
        )
        self.booking_id = booking_id


class ResourceInUseError(ConflictError):

    __slots__ = ('resource_id',)

    def __init__(self, resource_id: UUID | str):
        super().__init__(
            'cannot delete a resource with an active booking, '
            'release the booking first'
        )
        self.resource_id = resource_id


class DuplicateResourceError(ConflictError):

    __slots__ = ('name',)

    def __init__(self, name: str):
        super().__init__(f'a resource named {name!r} already exists')
        self.name = name


class StoreError(TandemError):
    """ The store is unavailable or aborted the transaction. The original
    exception is available as ``__cause__``.

    """
