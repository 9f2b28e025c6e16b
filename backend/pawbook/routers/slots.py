# backend/pawbook/routers/slots.py
"""
Slots API endpoints.

GET /slots/available - bookable windows of a service over a date range
"""

from datetime import date
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.generated import Clients as DBClients
from ..schemas.slots import AvailableSlotRead
from ..services.slots import StaffContext, resolve_availability
from ..services.slots.rules import AvailableSlot


router = APIRouter(prefix="/slots", tags=["slots"])


@router.get("/available", response_model=list[AvailableSlotRead])
def get_available_slots(
    service_id: int,
    start_date: date,
    end_date: date,
    client_id: int | None = None,
    default_staff_id: int | None = None,
    db: Session = Depends(get_db),
):
    """
    Available slots for a service.

    With client_id the client's default staff member decides staff/vehicle
    capacity; without any staff association capacity is summed over all
    on-duty staff (admin view).
    """
    if client_id is not None and default_staff_id is not None:
        raise HTTPException(status_code=400, detail="Pass client_id or default_staff_id, not both")

    staff_context = None
    if client_id is not None:
        client = db.get(DBClients, client_id)
        if not client:
            raise HTTPException(status_code=404, detail="Client not found")
        staff_context = StaffContext(default_staff_id=client.default_staff_id)
    elif default_staff_id is not None:
        staff_context = StaffContext(default_staff_id=default_staff_id)

    slots = resolve_availability(db, service_id, start_date, end_date, staff_context)
    return [_slot_read(slot) for slot in slots]


def _slot_read(slot: AvailableSlot) -> AvailableSlotRead:
    return AvailableSlotRead(
        service_id=slot.service_id,
        start_time=slot.start_time,
        end_time=slot.end_time,
        remaining_capacity=slot.remaining_capacity,
        price_per_pet=slot.price_per_pet,
        capacity_mode=slot.capacity_mode,
        zero_capacity_reason=slot.zero_capacity_reason.value,
        other_staff_potentially_available=slot.other_staff_potentially_available,
        field_ids=list(slot.field_ids),
    )
