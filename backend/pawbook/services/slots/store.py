# backend/pawbook/services/slots/store.py
"""
Rule Store: read-only snapshot of everything a resolution pass needs.

One snapshot is loaded per request so the generator, resolver and
aggregator all see the same rules and the same booking ledger.
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ...models.generated import (
    BookingPets as DBBookingPet,
    Bookings as DBBooking,
    Fields as DBField,
    ServiceAvailability as DBServiceAvailability,
    Services as DBService,
    Staff as DBStaff,
    StaffAvailability as DBStaffAvailability,
    Vehicles as DBVehicle,
)
from .config import time_str_to_time
from .exceptions import TransientStoreError, ValidationError
from .rules import (
    BookingStatus,
    Field,
    FieldBased,
    LedgerBooking,
    Service,
    ServiceAvailabilityRule,
    Staff,
    StaffAvailabilityRule,
    StaffVehicleBased,
    Vehicle,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleSnapshot:
    service: Service
    rules: tuple[ServiceAvailabilityRule, ...]
    staff: dict[int, Staff]
    staff_rules: dict[int, tuple[StaffAvailabilityRule, ...]]
    vehicles: dict[int, Vehicle]
    fields: dict[int, Field]
    bookings: tuple[LedgerBooking, ...]


def load_snapshot(
    db: Session,
    service_id: int,
    start_date: date,
    end_date: date,
) -> RuleSnapshot:
    """
    Load rules, staff, capacity data and the booking ledger for a date range.

    Raises:
        ValidationError: service does not exist or is inactive
        TransientStoreError: the database is unreachable
    """
    try:
        service = _get_service(db, service_id)
        if service is None:
            raise ValidationError(f"Service {service_id} not found or inactive")

        rules = _get_service_rules(db, service_id)
        field_ids = sorted({fid for rule in rules for fid in rule.field_ids})

        range_start = datetime.combine(start_date, time.min)
        range_end = datetime.combine(end_date + timedelta(days=1), time.min)

        return RuleSnapshot(
            service=service,
            rules=tuple(rules),
            staff=_get_staff(db),
            staff_rules=_get_staff_rules(db),
            vehicles=_get_vehicles(db),
            fields=_get_fields(db, field_ids),
            bookings=tuple(get_ledger(db, range_start, range_end)),
        )
    except OperationalError as e:
        logger.error(f"Rule store unavailable while loading service {service_id}: {e}")
        raise TransientStoreError("Booking store is temporarily unavailable") from e


# ── Row conversion ───────────────────────────────────────────────────────


def _json_list(raw: str | None) -> list | None:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, list) else None


def _parse_date(raw: str | None) -> date | None:
    if not raw:
        return None
    return date.fromisoformat(str(raw)[:10])


def format_timestamp(value: datetime) -> str:
    """Ledger representation of a naive local timestamp."""
    return value.replace(microsecond=0).isoformat(timespec="seconds")


def rule_from_row(row: DBServiceAvailability) -> ServiceAvailabilityRule:
    days = _json_list(row.days_of_week)
    if row.use_staff_vehicle_capacity:
        mode = StaffVehicleBased()
    else:
        mode = FieldBased(capacity_override=row.capacity_override)

    return ServiceAvailabilityRule(
        id=row.id,
        service_id=row.service_id,
        field_ids=frozenset(int(f) for f in (_json_list(row.field_ids) or [])),
        start_time=time_str_to_time(row.start_time),
        end_time=time_str_to_time(row.end_time),
        capacity_mode=mode,
        days_of_week=frozenset(int(d) for d in days) if days is not None else None,
        specific_date=_parse_date(row.specific_date),
        override_price=row.override_price,
        is_active=bool(row.is_active),
    )


def staff_rule_from_row(row: DBStaffAvailability) -> StaffAvailabilityRule:
    days = _json_list(row.days_of_week)
    return StaffAvailabilityRule(
        id=row.id,
        staff_id=row.staff_id,
        start_time=time_str_to_time(row.start_time),
        end_time=time_str_to_time(row.end_time),
        is_available=bool(row.is_available),
        days_of_week=frozenset(int(d) for d in days) if days is not None else None,
        specific_date=_parse_date(row.specific_date),
    )


# ── Database helpers ─────────────────────────────────────────────────────


def _get_service(db: Session, service_id: int) -> Service | None:
    row = db.query(DBService).filter(
        DBService.id == service_id,
        DBService.is_active == 1,
    ).first()
    if row is None:
        return None
    return Service(
        id=row.id,
        name=row.name,
        default_price=row.default_price,
        requires_field_selection=bool(row.requires_field_selection),
        service_type=row.service_type,
        is_active=bool(row.is_active),
    )


def _get_service_rules(db: Session, service_id: int) -> list[ServiceAvailabilityRule]:
    rows = (
        db.query(DBServiceAvailability)
        .filter(
            DBServiceAvailability.service_id == service_id,
            DBServiceAvailability.is_active == 1,
        )
        .order_by(DBServiceAvailability.id)
        .all()
    )

    rules = []
    for row in rows:
        try:
            rules.append(rule_from_row(row))
        except (ValidationError, ValueError) as e:
            # A broken admin row must not take the whole listing down
            logger.warning(f"Skipping invalid service availability rule {row.id}: {e}")
    return rules


def _get_staff(db: Session) -> dict[int, Staff]:
    rows = db.query(DBStaff).filter(DBStaff.is_active == 1).order_by(DBStaff.id).all()
    return {
        row.id: Staff(id=row.id, default_vehicle_id=row.default_vehicle_id)
        for row in rows
    }


def _get_staff_rules(db: Session) -> dict[int, tuple[StaffAvailabilityRule, ...]]:
    rows = db.query(DBStaffAvailability).order_by(DBStaffAvailability.id).all()

    by_staff: dict[int, list[StaffAvailabilityRule]] = {}
    for row in rows:
        try:
            rule = staff_rule_from_row(row)
        except (ValidationError, ValueError) as e:
            logger.warning(f"Skipping invalid staff availability rule {row.id}: {e}")
            continue
        by_staff.setdefault(rule.staff_id, []).append(rule)

    return {staff_id: tuple(rules) for staff_id, rules in by_staff.items()}


def _get_vehicles(db: Session) -> dict[int, Vehicle]:
    return {
        row.id: Vehicle(id=row.id, pet_capacity=row.pet_capacity)
        for row in db.query(DBVehicle).all()
    }


def _get_fields(db: Session, field_ids: list[int]) -> dict[int, Field]:
    if not field_ids:
        return {}
    rows = db.query(DBField).filter(DBField.id.in_(field_ids)).all()
    return {row.id: Field(id=row.id, capacity=row.capacity) for row in rows}


def get_ledger(db: Session, range_start: datetime, range_end: datetime) -> list[LedgerBooking]:
    """Non-cancelled bookings overlapping [range_start, range_end)."""
    rows = (
        db.query(DBBooking)
        .filter(
            DBBooking.start_time < format_timestamp(range_end),
            DBBooking.end_time > format_timestamp(range_start),
            DBBooking.status != BookingStatus.CANCELLED.value,
        )
        .order_by(DBBooking.id)
        .all()
    )
    if not rows:
        return []

    pets_by_booking: dict[int, set[int]] = {}
    pet_rows = (
        db.query(DBBookingPet)
        .filter(DBBookingPet.booking_id.in_([row.id for row in rows]))
        .all()
    )
    for pet_row in pet_rows:
        pets_by_booking.setdefault(pet_row.booking_id, set()).add(pet_row.pet_id)

    return [
        LedgerBooking(
            id=row.id,
            service_id=row.service_id,
            field_ids=frozenset(int(f) for f in (_json_list(row.booking_field_ids) or [])),
            start_time=datetime.fromisoformat(row.start_time),
            end_time=datetime.fromisoformat(row.end_time),
            pet_ids=frozenset(pets_by_booking.get(row.id, ())),
            assigned_staff_id=row.assigned_staff_id,
            status=row.status,
        )
        for row in rows
    ]
