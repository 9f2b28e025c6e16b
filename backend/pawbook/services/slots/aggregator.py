# backend/pawbook/services/slots/aggregator.py
"""
Slot Aggregator: one client-facing slot per distinct time window.

Several candidates can share a window (one per field of a rule, or
several rules with the same hours). Merging rules:

- remaining capacity is the sum, unless any member is unlimited (None),
  in which case the whole window is unlimited; staff/vehicle members share
  one staff pool, so only the first of them is counted
- price comes from the first member; members disagreeing on price is a
  data problem, reported as DataIntegrityWarning
- other_staff_potentially_available is true if any member says so
"""

import logging
import warnings
from typing import Iterable

from .exceptions import DataIntegrityWarning
from .rules import AvailableSlot, ResolvedSlot, ZeroCapacityReason

logger = logging.getLogger(__name__)


def aggregate_slots(resolved: Iterable[ResolvedSlot]) -> list[AvailableSlot]:
    """Group resolved candidates by (start, end) and merge each group."""
    groups: dict[tuple, list[ResolvedSlot]] = {}
    for slot in resolved:
        key = (slot.candidate.start_time, slot.candidate.end_time)
        groups.setdefault(key, []).append(slot)

    merged = [_merge_group(group) for group in groups.values()]
    merged.sort(key=lambda s: (s.start_time, s.end_time))
    return merged


def _merge_group(group: list[ResolvedSlot]) -> AvailableSlot:
    representative = group[0]
    candidate = representative.candidate

    remaining = _combined_capacity(group)
    price = representative.price_per_pet

    prices = {slot.price_per_pet for slot in group}
    if len(prices) > 1:
        message = (
            f"Slots for service {candidate.service_id} at "
            f"{candidate.start_time.isoformat()} disagree on price "
            f"{sorted(prices)}; using {price}"
        )
        logger.warning(message)
        warnings.warn(message, DataIntegrityWarning, stacklevel=2)

    field_ids: set[int] = set()
    for slot in group:
        field_ids |= slot.candidate.field_ids

    bookable = remaining is None or remaining > 0
    if bookable:
        reason = ZeroCapacityReason.NONE
    else:
        reason = next(
            (
                slot.resolution.zero_capacity_reason
                for slot in group
                if slot.resolution.zero_capacity_reason != ZeroCapacityReason.NONE
            ),
            ZeroCapacityReason.NONE,
        )

    return AvailableSlot(
        service_id=candidate.service_id,
        start_time=candidate.start_time,
        end_time=candidate.end_time,
        remaining_capacity=remaining,
        price_per_pet=price,
        capacity_mode=candidate.rule.capacity_mode.kind,
        zero_capacity_reason=reason,
        other_staff_potentially_available=any(
            slot.resolution.other_staff_potentially_available for slot in group
        ),
        field_ids=tuple(sorted(field_ids)),
    )


def _combined_capacity(group: list[ResolvedSlot]) -> int | None:
    total = 0
    staff_pool_counted = False
    for slot in group:
        if slot.candidate.rule.uses_staff_capacity:
            # Every staff/vehicle rule of a window draws on the same staff pool
            if staff_pool_counted:
                continue
            staff_pool_counted = True
        remaining = slot.resolution.remaining_capacity
        if remaining is None:
            return None
        total += remaining
    return total
