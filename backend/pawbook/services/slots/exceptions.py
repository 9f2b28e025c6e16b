# backend/pawbook/services/slots/exceptions.py
"""
Error taxonomy of the availability engine.

- ValidationError: bad input or bad rule data, never retried
- CapacityError: not enough room at commit time, caller picks another slot
- DataIntegrityWarning: inconsistent rule data, logged and tolerated
- TransientStoreError: storage unavailable, the whole operation may be retried
"""


class BookingEngineError(Exception):
    """Base class for engine errors surfaced to callers."""


class ValidationError(BookingEngineError):
    pass


class CapacityError(BookingEngineError):
    def __init__(
        self,
        message: str,
        *,
        requested: int,
        remaining: int | None,
        reason: str,
        other_staff_potentially_available: bool = False,
    ):
        super().__init__(message)
        self.requested = requested
        self.remaining = remaining
        self.reason = reason
        self.other_staff_potentially_available = other_staff_potentially_available


class TransientStoreError(BookingEngineError):
    pass


class DataIntegrityWarning(UserWarning):
    pass
