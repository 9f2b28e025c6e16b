# backend/pawbook/services/slots/__init__.py
"""
Availability engine.

Rule Store → Slot Generator → Capacity Resolver → Slot Aggregator
(read path, advisory). Commits go through services.booking_writer.
"""

from .config import EngineConfig, get_engine_config
from .exceptions import (
    BookingEngineError,
    CapacityError,
    DataIntegrityWarning,
    TransientStoreError,
    ValidationError,
)
from .rules import (
    AvailableSlot,
    FieldBased,
    ServiceAvailabilityRule,
    StaffAvailabilityRule,
    StaffContext,
    StaffVehicleBased,
    ZeroCapacityReason,
)
from .availability import resolve_availability

__all__ = [
    "EngineConfig",
    "get_engine_config",
    "BookingEngineError",
    "CapacityError",
    "DataIntegrityWarning",
    "TransientStoreError",
    "ValidationError",
    "AvailableSlot",
    "FieldBased",
    "ServiceAvailabilityRule",
    "StaffAvailabilityRule",
    "StaffContext",
    "StaffVehicleBased",
    "ZeroCapacityReason",
    "resolve_availability",
]
