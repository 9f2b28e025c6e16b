# backend/pawbook/services/slots/capacity.py
"""
Capacity Resolver: remaining capacity of a candidate slot.

Two capacity modes:

Field-based
  total     = rule capacity override, else min of the candidate's bounded
              field capacities, else unlimited (None)
  consumed  = distinct pets on bookings with exactly this window that share
              a field with the candidate
  remaining = total - consumed, clamped at 0; 0 → base_full

Staff/vehicle-based
  on-duty staff from staff availability rules (specific date beats recurring),
  each staff member contributes vehicle capacity minus pets already riding
  with them in an overlapping booking. With a client's default staff only
  that staff member counts; otherwise capacity is the sum over on-duty staff.
"""

import logging
from datetime import date, time
from typing import Iterable

from .rules import (
    CandidateSlot,
    CapacityResolution,
    FieldBased,
    LedgerBooking,
    ResolvedSlot,
    Service,
    ServiceAvailabilityRule,
    StaffAvailabilityRule,
    StaffContext,
    StaffVehicleBased,
    ZeroCapacityReason,
)
from .store import RuleSnapshot

logger = logging.getLogger(__name__)


def resolve_slots(
    snapshot: RuleSnapshot,
    candidates: Iterable[CandidateSlot],
    staff_context: StaffContext | None = None,
) -> list[ResolvedSlot]:
    """Resolve capacity and price for every candidate."""
    return [
        ResolvedSlot(
            candidate=candidate,
            resolution=resolve_capacity(snapshot, candidate, staff_context),
            price_per_pet=resolve_price(snapshot.service, candidate.rule),
        )
        for candidate in candidates
    ]


def resolve_capacity(
    snapshot: RuleSnapshot,
    candidate: CandidateSlot,
    staff_context: StaffContext | None = None,
) -> CapacityResolution:
    if isinstance(candidate.rule.capacity_mode, StaffVehicleBased):
        return resolve_staff_capacity(snapshot, candidate, staff_context)
    return resolve_field_capacity(snapshot, candidate)


def resolve_price(service: Service, rule: ServiceAvailabilityRule) -> float:
    if rule.override_price is not None:
        return float(rule.override_price)
    if service.default_price is not None:
        return float(service.default_price)
    return 0.0


# ── Field-based mode ─────────────────────────────────────────────────────


def field_total_capacity(snapshot: RuleSnapshot, candidate: CandidateSlot) -> int | None:
    mode = candidate.rule.capacity_mode
    if isinstance(mode, FieldBased) and mode.capacity_override is not None:
        return mode.capacity_override

    bounds = []
    for field_id in sorted(candidate.field_ids):
        field = snapshot.fields.get(field_id)
        if field is None:
            logger.warning(
                f"Rule {candidate.rule.id} references unknown field {field_id}; "
                "treating it as full"
            )
            bounds.append(0)
        elif field.capacity is not None:
            bounds.append(field.capacity)

    return min(bounds) if bounds else None


def resolve_field_capacity(snapshot: RuleSnapshot, candidate: CandidateSlot) -> CapacityResolution:
    total = field_total_capacity(snapshot, candidate)
    if total is None:
        return CapacityResolution(remaining_capacity=None)

    consumed = count_distinct_pets(
        b for b in snapshot.bookings
        if b.consumes_capacity
        and b.matches_window(candidate.local_start, candidate.local_end)
        and b.field_ids & candidate.field_ids
    )

    remaining = max(total - consumed, 0)
    if remaining <= 0:
        return CapacityResolution(0, ZeroCapacityReason.BASE_FULL)
    return CapacityResolution(remaining)


# ── Staff/vehicle-based mode ─────────────────────────────────────────────


def is_staff_on_duty(
    rules: Iterable[StaffAvailabilityRule],
    day: date,
    start: time,
    end: time,
) -> bool:
    """
    Whether a staff member works the whole window [start, end) on day.

    Two passes: specific-date rules touching the window decide on their own;
    recurring rules are consulted only when no specific-date rule applies.
    Within a pass any overlapping time-off wins, otherwise one available
    rule must cover the entire window.
    """
    applicable = [r for r in rules if r.applies_on(day) and r.overlaps(start, end)]

    specific = [r for r in applicable if not r.is_recurring]
    if specific:
        return _evaluate_pass(specific, start, end)

    recurring = [r for r in applicable if r.is_recurring]
    return _evaluate_pass(recurring, start, end)


def _evaluate_pass(rules: list[StaffAvailabilityRule], start: time, end: time) -> bool:
    if any(not r.is_available for r in rules):
        return False
    return any(r.covers(start, end) for r in rules)


def on_duty_staff(snapshot: RuleSnapshot, candidate: CandidateSlot) -> list[int]:
    """Ids of active staff on duty for the candidate window, ascending."""
    start = candidate.local_start.time()
    end = candidate.local_end.time()
    return [
        staff_id
        for staff_id in sorted(snapshot.staff)
        if is_staff_on_duty(snapshot.staff_rules.get(staff_id, ()), candidate.day, start, end)
    ]


def staff_vehicle_capacity(snapshot: RuleSnapshot, staff_id: int) -> int | None:
    """Pet capacity of the staff member's vehicle; no vehicle means 0."""
    staff = snapshot.staff.get(staff_id)
    if staff is None or staff.default_vehicle_id is None:
        return 0
    vehicle = snapshot.vehicles.get(staff.default_vehicle_id)
    if vehicle is None:
        logger.warning(
            f"Staff {staff_id} references unknown vehicle {staff.default_vehicle_id}"
        )
        return 0
    return vehicle.pet_capacity


def staff_remaining(snapshot: RuleSnapshot, staff_id: int, candidate: CandidateSlot) -> int | None:
    capacity = staff_vehicle_capacity(snapshot, staff_id)
    if capacity is None:
        return None

    booked = count_distinct_pets(
        b for b in snapshot.bookings
        if b.consumes_capacity
        and b.assigned_staff_id == staff_id
        and b.overlaps(candidate.local_start, candidate.local_end)
    )
    return max(capacity - booked, 0)


def resolve_staff_capacity(
    snapshot: RuleSnapshot,
    candidate: CandidateSlot,
    staff_context: StaffContext | None = None,
) -> CapacityResolution:
    on_duty = on_duty_staff(snapshot, candidate)
    if not on_duty:
        return CapacityResolution(0, ZeroCapacityReason.NO_STAFF, False)

    remaining_by_staff = {
        staff_id: staff_remaining(snapshot, staff_id, candidate)
        for staff_id in on_duty
    }

    default_staff_id = staff_context.default_staff_id if staff_context else None
    if default_staff_id is None:
        return _sum_over_staff(remaining_by_staff)

    default_on_duty = default_staff_id in remaining_by_staff
    default_remaining = remaining_by_staff.get(default_staff_id, 0)

    if default_on_duty and (default_remaining is None or default_remaining > 0):
        return CapacityResolution(default_remaining)

    others_available = any(
        remaining is None or remaining > 0
        for staff_id, remaining in remaining_by_staff.items()
        if staff_id != default_staff_id
    )
    return CapacityResolution(0, ZeroCapacityReason.STAFF_FULL, others_available)


def _sum_over_staff(remaining_by_staff: dict[int, int | None]) -> CapacityResolution:
    if any(remaining is None for remaining in remaining_by_staff.values()):
        return CapacityResolution(None)

    total = sum(remaining_by_staff.values())
    if total <= 0:
        return CapacityResolution(0, ZeroCapacityReason.STAFF_FULL)
    return CapacityResolution(total)


# ── Helpers ──────────────────────────────────────────────────────────────


def count_distinct_pets(bookings: Iterable[LedgerBooking]) -> int:
    pets: set[int] = set()
    for booking in bookings:
        pets |= booking.pet_ids
    return len(pets)
