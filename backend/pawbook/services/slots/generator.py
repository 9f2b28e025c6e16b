# backend/pawbook/services/slots/generator.py
"""
Slot Generator: expands availability rules over a date range.

Produces candidate slots:
  (service_id, rule, date, start, end, field set)

✓ recurring rules (ISO weekday in days_of_week)
✓ specific-date rules (date inside the range)
✓ field-based rules → one candidate per field
✓ staff/vehicle rules → one candidate per rule (fields are metadata)

Does NOT contain:
✗ Capacity (Capacity Resolver)
✗ Merging of identical windows (Slot Aggregator)
"""

from datetime import date, datetime, timedelta
from typing import Iterable, Iterator

from .config import EngineConfig, get_engine_config
from .exceptions import ValidationError
from .rules import CandidateSlot, ServiceAvailabilityRule


def iter_dates(start_date: date, end_date: date) -> Iterator[date]:
    """Every date in the closed range [start_date, end_date]."""
    if start_date > end_date:
        raise ValidationError(
            f"start_date {start_date.isoformat()} is after end_date {end_date.isoformat()}"
        )
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def generate_candidate_slots(
    service_id: int,
    rules: Iterable[ServiceAvailabilityRule],
    start_date: date,
    end_date: date,
    config: EngineConfig | None = None,
) -> list[CandidateSlot]:
    """
    Expand active rules of a service into candidate slots.

    Returns:
        Candidates ordered by date, then rule order, then field id.
    """
    config = config or get_engine_config()
    service_rules = [
        rule for rule in rules
        if rule.is_active and rule.service_id == service_id
    ]

    candidates: list[CandidateSlot] = []
    for day in iter_dates(start_date, end_date):
        for rule in service_rules:
            if not rule.applies_on(day):
                continue
            candidates.extend(_expand_rule(service_id, rule, day, config))

    return candidates


def candidates_for_window(
    service_id: int,
    rules: Iterable[ServiceAvailabilityRule],
    day: date,
    start_time: datetime,
    end_time: datetime,
    config: EngineConfig | None = None,
) -> list[CandidateSlot]:
    """Candidates of one date whose window is exactly [start_time, end_time)."""
    return [
        candidate
        for candidate in generate_candidate_slots(service_id, rules, day, day, config)
        if candidate.local_start == start_time and candidate.local_end == end_time
    ]


# ── Helpers ──────────────────────────────────────────────────────────────


def _expand_rule(
    service_id: int,
    rule: ServiceAvailabilityRule,
    day: date,
    config: EngineConfig,
) -> list[CandidateSlot]:
    local_start, local_end = rule.window_on(day)
    start = config.localize(local_start)
    end = config.localize(local_end)

    if rule.uses_staff_capacity:
        return [
            CandidateSlot(
                service_id=service_id,
                rule=rule,
                day=day,
                start_time=start,
                end_time=end,
                field_ids=rule.field_ids,
            )
        ]

    return [
        CandidateSlot(
            service_id=service_id,
            rule=rule,
            day=day,
            start_time=start,
            end_time=end,
            field_ids=frozenset({field_id}),
        )
        for field_id in sorted(rule.field_ids)
    ]
