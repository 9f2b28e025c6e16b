# backend/pawbook/services/slots/rules.py
"""
Domain types of the availability engine.

Everything here is immutable reference data for one resolution pass.
Rules validate themselves on construction, so a rule that exists is a rule
the generator can expand without further checks.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Union

from .exceptions import ValidationError


ISO_WEEKDAYS = frozenset(range(1, 8))


class ZeroCapacityReason(str, Enum):
    NONE = "none"
    NO_STAFF = "no_staff"
    STAFF_FULL = "staff_full"
    BASE_FULL = "base_full"


class BookingStatus(str, Enum):
    REQUESTED = "requested"
    COMMITTED = "committed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# ── Capacity modes ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class FieldBased:
    """Capacity bounded by the fields' own capacity (or a per-rule override)."""
    capacity_override: int | None = None

    kind = "field"

    def __post_init__(self):
        if self.capacity_override is not None and self.capacity_override < 0:
            raise ValidationError(
                f"capacity_override must be >= 0, got {self.capacity_override}"
            )


@dataclass(frozen=True)
class StaffVehicleBased:
    """Capacity bounded by on-duty staff and their vehicles."""

    kind = "staff_vehicle"


CapacityMode = Union[FieldBased, StaffVehicleBased]


# ── Recurrence ───────────────────────────────────────────────────────────


def _validate_recurrence(
    days_of_week: frozenset[int] | None,
    specific_date: date | None,
    owner: str,
) -> None:
    if days_of_week is not None and specific_date is not None:
        raise ValidationError(f"{owner}: cannot set both days_of_week and specific_date")
    if days_of_week is None and specific_date is None:
        raise ValidationError(f"{owner}: one of days_of_week or specific_date is required")
    if days_of_week is not None:
        if not days_of_week:
            raise ValidationError(f"{owner}: days_of_week must not be empty")
        if not days_of_week <= ISO_WEEKDAYS:
            raise ValidationError(f"{owner}: days_of_week must be ISO weekdays 1-7")


def _validate_window(start_time: time, end_time: time, owner: str) -> None:
    # Windows crossing midnight are not supported
    if end_time <= start_time:
        raise ValidationError(
            f"{owner}: end_time {end_time} must be later than start_time {start_time} "
            "on the same day"
        )


def _applies_on(days_of_week: frozenset[int] | None, specific_date: date | None, day: date) -> bool:
    if specific_date is not None:
        return specific_date == day
    return day.isoweekday() in days_of_week


# ── Rules ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServiceAvailabilityRule:
    id: int
    service_id: int
    field_ids: frozenset[int]
    start_time: time
    end_time: time
    capacity_mode: CapacityMode = field(default_factory=FieldBased)
    days_of_week: frozenset[int] | None = None
    specific_date: date | None = None
    override_price: float | None = None
    is_active: bool = True

    def __post_init__(self):
        owner = f"Service availability rule {self.id}"
        object.__setattr__(self, "field_ids", frozenset(self.field_ids))
        if self.days_of_week is not None:
            object.__setattr__(self, "days_of_week", frozenset(self.days_of_week))
        if not self.field_ids:
            raise ValidationError(f"{owner}: field_ids must not be empty")
        _validate_recurrence(self.days_of_week, self.specific_date, owner)
        _validate_window(self.start_time, self.end_time, owner)
        if self.override_price is not None and self.override_price < 0:
            raise ValidationError(f"{owner}: override_price must be >= 0")

    @property
    def uses_staff_capacity(self) -> bool:
        return isinstance(self.capacity_mode, StaffVehicleBased)

    @property
    def is_recurring(self) -> bool:
        return self.specific_date is None

    def applies_on(self, day: date) -> bool:
        return _applies_on(self.days_of_week, self.specific_date, day)

    def window_on(self, day: date) -> tuple[datetime, datetime]:
        """Naive local (start, end) of this rule on a given date."""
        return datetime.combine(day, self.start_time), datetime.combine(day, self.end_time)


@dataclass(frozen=True)
class StaffAvailabilityRule:
    id: int
    staff_id: int
    start_time: time
    end_time: time
    is_available: bool = True
    days_of_week: frozenset[int] | None = None
    specific_date: date | None = None

    def __post_init__(self):
        owner = f"Staff availability rule {self.id}"
        if self.days_of_week is not None:
            object.__setattr__(self, "days_of_week", frozenset(self.days_of_week))
        _validate_recurrence(self.days_of_week, self.specific_date, owner)
        _validate_window(self.start_time, self.end_time, owner)

    @property
    def is_recurring(self) -> bool:
        return self.specific_date is None

    def applies_on(self, day: date) -> bool:
        return _applies_on(self.days_of_week, self.specific_date, day)

    def overlaps(self, start: time, end: time) -> bool:
        return self.start_time < end and start < self.end_time

    def covers(self, start: time, end: time) -> bool:
        return self.start_time <= start and end <= self.end_time


# ── Reference data ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class Service:
    id: int
    name: str
    default_price: float | None = None
    requires_field_selection: bool = False
    service_type: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class Staff:
    id: int
    default_vehicle_id: int | None = None


@dataclass(frozen=True)
class Vehicle:
    id: int
    pet_capacity: int | None = None


@dataclass(frozen=True)
class Field:
    id: int
    capacity: int | None = None


@dataclass(frozen=True)
class LedgerBooking:
    """An existing reservation as seen by the capacity resolver."""
    id: int
    service_id: int
    field_ids: frozenset[int]
    start_time: datetime  # naive local
    end_time: datetime
    pet_ids: frozenset[int]
    assigned_staff_id: int | None = None
    status: str = BookingStatus.COMMITTED.value

    @property
    def consumes_capacity(self) -> bool:
        return self.status != BookingStatus.CANCELLED.value

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start_time < end and start < self.end_time

    def matches_window(self, start: datetime, end: datetime) -> bool:
        return self.start_time == start and self.end_time == end


# ── Resolution pipeline values ───────────────────────────────────────────


@dataclass(frozen=True)
class StaffContext:
    """Caller-specific staff association, e.g. a client's usual walker."""
    default_staff_id: int | None = None


@dataclass(frozen=True)
class CandidateSlot:
    service_id: int
    rule: ServiceAvailabilityRule
    day: date
    start_time: datetime  # zone-aware
    end_time: datetime
    field_ids: frozenset[int]

    @property
    def local_start(self) -> datetime:
        return self.start_time.replace(tzinfo=None)

    @property
    def local_end(self) -> datetime:
        return self.end_time.replace(tzinfo=None)


@dataclass(frozen=True)
class CapacityResolution:
    remaining_capacity: int | None
    zero_capacity_reason: ZeroCapacityReason = ZeroCapacityReason.NONE
    other_staff_potentially_available: bool = False

    def fits(self, pet_count: int) -> bool:
        return self.remaining_capacity is None or self.remaining_capacity >= pet_count


@dataclass(frozen=True)
class ResolvedSlot:
    candidate: CandidateSlot
    resolution: CapacityResolution
    price_per_pet: float


@dataclass(frozen=True)
class AvailableSlot:
    service_id: int
    start_time: datetime
    end_time: datetime
    remaining_capacity: int | None
    price_per_pet: float
    capacity_mode: str
    zero_capacity_reason: ZeroCapacityReason
    other_staff_potentially_available: bool
    field_ids: tuple[int, ...]

    @property
    def is_bookable(self) -> bool:
        return self.remaining_capacity is None or self.remaining_capacity > 0
