# backend/pawbook/routers/bookings.py
# PATCH = 405, DELETE = 405 (cancellation is not handled here)
# POST /bookings/admin = staff-side booking, pet confirmation not required

import json
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import SessionLocal, get_db
from ..models.generated import Bookings as DBBookings
from ..schemas.bookings import (
    BatchBookingCreate,
    BatchBookingRead,
    BookingCreate,
    BookingOutcomeRead,
    BookingRead,
)
from ..services.booking_writer import (
    BatchStatus,
    BookingRequest,
    CommittedBooking,
    create_booking as write_booking,
    create_bookings as write_bookings,
)
from ..services.slots import get_engine_config

router = APIRouter(prefix="/bookings", tags=["bookings"])

BATCH_STATUS_CODES = {
    BatchStatus.FULLY_BOOKED: status.HTTP_201_CREATED,
    BatchStatus.PARTIALLY_BOOKED: status.HTTP_207_MULTI_STATUS,
    BatchStatus.FULLY_FAILED: status.HTTP_400_BAD_REQUEST,
}


def get_session_factory():
    """Session factory for batch bookings (one session per booking)."""
    return SessionLocal


@router.get("/{id}", response_model=BookingRead)
def get_booking(id: int, db: Session = Depends(get_db)):
    obj = db.get(DBBookings, id)
    if not obj:
        raise HTTPException(status_code=404, detail="Not found")
    return _booking_read_from_row(obj)


@router.post("/", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: BookingCreate,
    db: Session = Depends(get_db),
):
    booking = write_booking(db, _to_request(data))
    return _booking_read(booking)


@router.post("/admin", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def create_admin_booking(
    data: BookingCreate,
    db: Session = Depends(get_db),
):
    """Staff-side booking: pets may still be awaiting confirmation."""
    booking = write_booking(db, _to_request(data, is_admin=True))
    return _booking_read(booking)


@router.post("/batch", response_model=BatchBookingRead)
def create_bookings_batch(
    data: BatchBookingCreate,
    session_factory=Depends(get_session_factory),
):
    result = write_bookings(session_factory, [_to_request(item) for item in data.bookings])

    body = BatchBookingRead(
        status=result.status.value,
        committed_count=len(result.committed),
        rejected_count=len(result.rejected),
        outcomes=[
            BookingOutcomeRead(
                status=outcome.status.value,
                booking=_booking_read(outcome.booking) if outcome.booking else None,
                error_type=outcome.error_type,
                error=outcome.error,
                details=outcome.details,
            )
            for outcome in result.outcomes
        ],
    )
    return JSONResponse(
        status_code=BATCH_STATUS_CODES[result.status],
        content=body.model_dump(mode="json"),
    )


@router.patch("/{id}")
def patch_not_allowed():
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Method not allowed",
    )


@router.delete("/{id}")
def delete_not_allowed():
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Method not allowed",
    )


# ── Helpers ──────────────────────────────────────────────────────────────


def _to_request(data: BookingCreate, is_admin: bool = False) -> BookingRequest:
    return BookingRequest(
        service_id=data.service_id,
        start_time=data.start_time,
        end_time=data.end_time,
        pet_ids=tuple(data.pet_ids),
        client_id=data.client_id,
        field_ids=tuple(data.field_ids),
        assigned_staff_id=data.assigned_staff_id,
        is_admin=is_admin,
    )


def _booking_read(booking: CommittedBooking) -> BookingRead:
    config = get_engine_config()
    return BookingRead(
        id=booking.id,
        service_id=booking.service_id,
        client_id=booking.client_id,
        start_time=config.localize(booking.start_time),
        end_time=config.localize(booking.end_time),
        field_ids=list(booking.field_ids),
        pet_ids=list(booking.pet_ids),
        assigned_staff_id=booking.assigned_staff_id,
        vehicle_id=booking.vehicle_id,
        price_per_pet=booking.price_per_pet,
        status=booking.status,
    )


def _booking_read_from_row(obj: DBBookings) -> BookingRead:
    config = get_engine_config()
    return BookingRead(
        id=obj.id,
        service_id=obj.service_id,
        client_id=obj.clients[0].client_id if obj.clients else 0,
        start_time=config.localize(datetime.fromisoformat(obj.start_time)),
        end_time=config.localize(datetime.fromisoformat(obj.end_time)),
        field_ids=json.loads(obj.booking_field_ids or "[]"),
        pet_ids=sorted(p.pet_id for p in obj.pets),
        assigned_staff_id=obj.assigned_staff_id,
        vehicle_id=obj.vehicle_id,
        price_per_pet=obj.price_per_pet or 0.0,
        status=obj.status,
    )
