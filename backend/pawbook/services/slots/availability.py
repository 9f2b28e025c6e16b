# backend/pawbook/services/slots/availability.py
"""
Availability query: bookable slots of a service over a date range.

Rule Store → Slot Generator → Capacity Resolver → Slot Aggregator.

The pass is read-only over one snapshot of rules and bookings, so it can
run in parallel for independent services or date ranges. The result is
advisory: the Booking Writer re-checks capacity at commit time.
"""

import logging
from datetime import date, datetime

from sqlalchemy.orm import Session

from .aggregator import aggregate_slots
from .capacity import resolve_slots
from .config import EngineConfig, get_engine_config
from .exceptions import ValidationError
from .generator import generate_candidate_slots
from .rules import AvailableSlot, StaffContext
from .store import load_snapshot

logger = logging.getLogger(__name__)


def resolve_availability(
    db: Session,
    service_id: int,
    start_date: date,
    end_date: date,
    staff_context: StaffContext | None = None,
    *,
    now: datetime | None = None,
    config: EngineConfig | None = None,
) -> list[AvailableSlot]:
    """
    Calculate available slots for a service.

    Args:
        staff_context: Client's default staff association; None for
            admin browsing (capacity summed over all on-duty staff)
        now: Reference time for hiding same-day slots; defaults to the
            current time in the configured zone

    Returns:
        AvailableSlot list ordered by start time.
    """
    config = config or get_engine_config()
    if start_date > end_date:
        raise ValidationError(
            f"start_date {start_date.isoformat()} is after end_date {end_date.isoformat()}"
        )

    # Step 1: Snapshot of rules, staff, capacity data and the ledger
    snapshot = load_snapshot(db, service_id, start_date, end_date)

    # Step 2: Expand rules into candidates
    first_day = start_date
    if config.exclude_same_day:
        first_day = max(start_date, _day_after(config.today(now)))
    if first_day > end_date:
        return []

    candidates = generate_candidate_slots(
        service_id, snapshot.rules, first_day, end_date, config
    )
    if not candidates:
        return []

    # Step 3: Capacity and price per candidate
    resolved = resolve_slots(snapshot, candidates, staff_context)

    # Step 4: Merge identical windows
    slots = aggregate_slots(resolved)

    logger.debug(
        f"Resolved {len(slots)} slots from {len(candidates)} candidates "
        f"for service {service_id} ({first_day} .. {end_date})"
    )
    return slots


def _day_after(day: date) -> date:
    return date.fromordinal(day.toordinal() + 1)
