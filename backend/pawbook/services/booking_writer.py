# backend/pawbook/services/booking_writer.py
"""
Booking Writer: the only code path that inserts bookings.

For every request:
1. Validate the request and match it to an availability rule window
2. Lock the constraining resources (fields or staff, per date)
3. Re-resolve capacity from a fresh ledger snapshot under the lock
4. Insert booking + pets + client link in one transaction, commit
5. Emit booking_created for the notification worker

Capacity snapshots supplied by callers are never trusted. Batch requests
are independent transactions processed in order; one rejection does not
stop the rest of the batch.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Callable, Iterable

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..models.generated import (
    BookingClients as DBBookingClient,
    BookingPets as DBBookingPet,
    Bookings as DBBooking,
    Clients as DBClient,
    Pets as DBPet,
)
from .events import emit_event
from .resource_locks import ResourceLocker, field_lock_key, staff_lock_key
from .slots.capacity import (
    on_duty_staff,
    resolve_field_capacity,
    resolve_price,
    resolve_staff_capacity,
)
from .slots.config import EngineConfig, get_engine_config
from .slots.exceptions import CapacityError, TransientStoreError, ValidationError
from .slots.generator import candidates_for_window
from .slots.rules import (
    BookingStatus,
    CandidateSlot,
    CapacityResolution,
    StaffContext,
    ZeroCapacityReason,
)
from .slots.store import RuleSnapshot, format_timestamp, load_snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingRequest:
    service_id: int
    start_time: datetime
    end_time: datetime
    pet_ids: tuple[int, ...]
    client_id: int
    field_ids: tuple[int, ...] = ()
    assigned_staff_id: int | None = None
    # Admin bookings may include pets that are not confirmed yet
    is_admin: bool = False


@dataclass(frozen=True)
class CommittedBooking:
    id: int
    service_id: int
    client_id: int
    start_time: datetime
    end_time: datetime
    field_ids: tuple[int, ...]
    pet_ids: tuple[int, ...]
    assigned_staff_id: int | None
    vehicle_id: int | None
    price_per_pet: float
    status: str = BookingStatus.COMMITTED.value


@dataclass(frozen=True)
class BookingOutcome:
    request: BookingRequest
    status: BookingStatus
    booking: CommittedBooking | None = None
    error_type: str | None = None
    error: str | None = None
    details: dict = field(default_factory=dict)


class BatchStatus(str, Enum):
    FULLY_BOOKED = "fully_booked"
    PARTIALLY_BOOKED = "partially_booked"
    FULLY_FAILED = "fully_failed"


@dataclass(frozen=True)
class BatchResult:
    outcomes: tuple[BookingOutcome, ...]

    @property
    def committed(self) -> list[BookingOutcome]:
        return [o for o in self.outcomes if o.status == BookingStatus.COMMITTED]

    @property
    def rejected(self) -> list[BookingOutcome]:
        return [o for o in self.outcomes if o.status == BookingStatus.REJECTED]

    @property
    def status(self) -> BatchStatus:
        if not self.rejected:
            return BatchStatus.FULLY_BOOKED
        if self.committed:
            return BatchStatus.PARTIALLY_BOOKED
        return BatchStatus.FULLY_FAILED


@dataclass(frozen=True)
class _Placement:
    """Resources a booking will occupy once capacity is confirmed."""
    candidate: CandidateSlot
    field_ids: tuple[int, ...]
    staff_id: int | None = None
    vehicle_id: int | None = None


class BookingWriter:
    def __init__(
        self,
        locker: ResourceLocker | None = None,
        config: EngineConfig | None = None,
        emit: Callable[[str, dict], bool] | None = emit_event,
    ):
        self.config = config or get_engine_config()
        self.locker = locker or ResourceLocker(timeout=self.config.lock_timeout_seconds)
        self.emit = emit

    # ── Single booking ───────────────────────────────────────────────────

    def create_booking(self, db: Session, request: BookingRequest) -> CommittedBooking:
        """
        Validate, re-check capacity under lock and commit one booking.

        Raises:
            ValidationError: malformed request, unknown service/rule/pets
            CapacityError: not enough room for len(pet_ids) pets
            TransientStoreError: database or lock service unavailable
        """
        start = self.config.to_local_naive(request.start_time)
        end = self.config.to_local_naive(request.end_time)
        _validate_request(request, start, end)
        day = start.date()

        snapshot = load_snapshot(db, request.service_id, day, day)
        candidates = candidates_for_window(
            request.service_id, snapshot.rules, day, start, end, self.config
        )
        if not candidates:
            raise ValidationError(
                f"No availability rule of service {request.service_id} matches "
                f"{start.isoformat()} - {end.isoformat()}"
            )

        default_staff_id = self._check_client_and_pets(db, request)

        # End the read transaction; capacity is re-read under the lock
        db.rollback()

        field_candidates = [c for c in candidates if not c.rule.uses_staff_capacity]
        staff_candidates = [c for c in candidates if c.rule.uses_staff_capacity]

        if not field_candidates:
            booking = self._book_staff_slot(db, request, staff_candidates[0], snapshot, default_staff_id)
        elif not staff_candidates:
            booking = self._book_field_slot(db, request, field_candidates, snapshot)
        else:
            # Field and staff rules share the window: fields first, then staff
            try:
                booking = self._book_field_slot(db, request, field_candidates, snapshot)
            except CapacityError as e:
                logger.info(f"Field capacity exhausted ({e}); trying staff/vehicle capacity")
                booking = self._book_staff_slot(
                    db, request, staff_candidates[0], snapshot, default_staff_id
                )

        logger.info(
            f"Booking {booking.id} committed: service={booking.service_id} "
            f"client={booking.client_id} {booking.start_time.isoformat()} "
            f"pets={len(booking.pet_ids)} fields={list(booking.field_ids)} "
            f"staff={booking.assigned_staff_id}"
        )
        self._notify(booking)
        return booking

    # ── Batch ────────────────────────────────────────────────────────────

    def create_bookings(
        self,
        session_factory: Callable[[], Session],
        requests: Iterable[BookingRequest],
    ) -> BatchResult:
        """Book each request in order, each in its own session and transaction."""
        outcomes = []
        for request in requests:
            db = session_factory()
            try:
                booking = self.create_booking(db, request)
                outcomes.append(BookingOutcome(request, BookingStatus.COMMITTED, booking=booking))
            except CapacityError as e:
                outcomes.append(BookingOutcome(
                    request,
                    BookingStatus.REJECTED,
                    error_type="capacity",
                    error=str(e),
                    details={
                        "remaining_capacity": e.remaining,
                        "reason": e.reason,
                        "other_staff_potentially_available": e.other_staff_potentially_available,
                    },
                ))
            except ValidationError as e:
                outcomes.append(BookingOutcome(
                    request, BookingStatus.REJECTED, error_type="validation", error=str(e)
                ))
            except TransientStoreError as e:
                outcomes.append(BookingOutcome(
                    request, BookingStatus.REJECTED, error_type="transient", error=str(e)
                ))
            finally:
                db.close()

        result = BatchResult(tuple(outcomes))
        logger.info(
            f"Batch booking finished: {result.status.value} "
            f"({len(result.committed)} committed, {len(result.rejected)} rejected)"
        )
        return result

    # ── Field-based ──────────────────────────────────────────────────────

    def _book_field_slot(
        self,
        db: Session,
        request: BookingRequest,
        candidates: list[CandidateSlot],
        snapshot: RuleSnapshot,
    ) -> CommittedBooking:
        offered = {fid for c in candidates for fid in c.field_ids}
        requested_fields = set(request.field_ids)

        unknown = requested_fields - offered
        if unknown:
            raise ValidationError(
                f"Field(s) {sorted(unknown)} are not offered for this slot"
            )
        if snapshot.service.requires_field_selection and not requested_fields:
            raise ValidationError("This service requires a specific field selection")

        if requested_fields:
            candidates = [c for c in candidates if c.field_ids & requested_fields]

        pet_count = len(request.pet_ids)
        keys = [field_lock_key(fid, candidates[0].day) for c in candidates for fid in c.field_ids]

        with self.locker.hold(db, keys):
            fresh = self._fresh_snapshot(db, request, candidates[0])

            if snapshot.service.requires_field_selection:
                # Every selected field must take all pets
                placement, resolution = self._fit_all_fields(fresh, candidates, pet_count)
            else:
                # Any single field with room, in field order
                placement, resolution = self._fit_first_field(fresh, candidates, pet_count)

            if placement is None:
                raise CapacityError(
                    f"Not enough capacity: requested {pet_count}, "
                    f"remaining {resolution.remaining_capacity}",
                    requested=pet_count,
                    remaining=resolution.remaining_capacity,
                    reason=ZeroCapacityReason.BASE_FULL.value,
                )

            return self._insert(db, request, placement, fresh)

    @staticmethod
    def _fit_all_fields(snapshot, candidates, pet_count):
        resolution = None
        for candidate in candidates:
            resolution = resolve_field_capacity(snapshot, candidate)
            if not resolution.fits(pet_count):
                return None, resolution

        field_ids = tuple(sorted({fid for c in candidates for fid in c.field_ids}))
        return _Placement(candidates[0], field_ids), resolution

    @staticmethod
    def _fit_first_field(snapshot, candidates, pet_count):
        best_remaining = 0
        for candidate in sorted(candidates, key=lambda c: min(c.field_ids)):
            resolution = resolve_field_capacity(snapshot, candidate)
            if resolution.fits(pet_count):
                return _Placement(candidate, tuple(sorted(candidate.field_ids))), resolution
            best_remaining = max(best_remaining, resolution.remaining_capacity or 0)
        return None, CapacityResolution(best_remaining, ZeroCapacityReason.BASE_FULL)

    # ── Staff/vehicle-based ──────────────────────────────────────────────

    def _book_staff_slot(
        self,
        db: Session,
        request: BookingRequest,
        candidate: CandidateSlot,
        snapshot: RuleSnapshot,
        default_staff_id: int | None,
    ) -> CommittedBooking:
        unknown = set(request.field_ids) - candidate.field_ids
        if unknown:
            raise ValidationError(
                f"Field(s) {sorted(unknown)} are not offered for this slot"
            )

        pet_count = len(request.pet_ids)
        staff_id = request.assigned_staff_id or default_staff_id

        if staff_id is not None:
            if staff_id not in snapshot.staff:
                raise ValidationError(f"Staff {staff_id} not found or inactive")
            return self._try_staff(db, request, candidate, staff_id, pet_count, strict=True)

        # No staff association: first on-duty staff member with room
        on_duty = on_duty_staff(snapshot, candidate)
        if not on_duty:
            raise CapacityError(
                "No staff on duty for this slot",
                requested=pet_count,
                remaining=0,
                reason=ZeroCapacityReason.NO_STAFF.value,
            )
        for staff_id in on_duty:
            booking = self._try_staff(db, request, candidate, staff_id, pet_count, strict=False)
            if booking is not None:
                return booking

        raise CapacityError(
            f"No on-duty staff has room for {pet_count} pets",
            requested=pet_count,
            remaining=0,
            reason=ZeroCapacityReason.STAFF_FULL.value,
        )

    def _try_staff(
        self,
        db: Session,
        request: BookingRequest,
        candidate: CandidateSlot,
        staff_id: int,
        pet_count: int,
        strict: bool,
    ) -> CommittedBooking | None:
        with self.locker.hold(db, [staff_lock_key(staff_id, candidate.day)]):
            fresh = self._fresh_snapshot(db, request, candidate)
            resolution = resolve_staff_capacity(fresh, candidate, StaffContext(staff_id))

            if not resolution.fits(pet_count):
                if not strict:
                    db.rollback()
                    return None
                reason = resolution.zero_capacity_reason
                if reason == ZeroCapacityReason.NONE:
                    reason = ZeroCapacityReason.STAFF_FULL
                raise CapacityError(
                    f"Staff {staff_id} cannot take {pet_count} pets "
                    f"({reason.value}, remaining {resolution.remaining_capacity})",
                    requested=pet_count,
                    remaining=resolution.remaining_capacity,
                    reason=reason.value,
                    other_staff_potentially_available=resolution.other_staff_potentially_available,
                )

            placement = _Placement(
                candidate=candidate,
                field_ids=tuple(sorted(candidate.field_ids)),
                staff_id=staff_id,
                vehicle_id=fresh.staff[staff_id].default_vehicle_id,
            )
            return self._insert(db, request, placement, fresh)

    # ── Shared steps ─────────────────────────────────────────────────────

    @staticmethod
    def _fresh_snapshot(db: Session, request: BookingRequest, candidate: CandidateSlot) -> RuleSnapshot:
        return load_snapshot(db, request.service_id, candidate.day, candidate.day)

    @staticmethod
    def _check_client_and_pets(db: Session, request: BookingRequest) -> int | None:
        """Validate client and pet ownership; returns the client's default staff."""
        try:
            client = _get_client(db, request.client_id)
            if client is None:
                raise ValidationError(f"Client {request.client_id} not found")

            pets = _get_client_pets(db, request.client_id, request.pet_ids)
        except OperationalError as e:
            raise TransientStoreError("Booking store is temporarily unavailable") from e

        found = {pet.id for pet in pets}
        missing = [pet_id for pet_id in request.pet_ids if pet_id not in found]
        if missing:
            raise ValidationError(
                f"Pet(s) {missing} not found or do not belong to client {request.client_id}"
            )
        if not request.is_admin:
            unconfirmed = sorted(pet.name for pet in pets if not pet.is_confirmed)
            if unconfirmed:
                raise ValidationError(f"Pets {', '.join(unconfirmed)} are not confirmed yet")

        return client.default_staff_id

    @staticmethod
    def _insert(
        db: Session,
        request: BookingRequest,
        placement: _Placement,
        snapshot: RuleSnapshot,
    ) -> CommittedBooking:
        """Insert booking, pets and client link as one unit and commit."""
        candidate = placement.candidate
        price = resolve_price(snapshot.service, candidate.rule)

        try:
            obj = DBBooking(
                service_id=request.service_id,
                booking_field_ids=json.dumps(list(placement.field_ids)),
                start_time=format_timestamp(candidate.local_start),
                end_time=format_timestamp(candidate.local_end),
                status=BookingStatus.COMMITTED.value,
                assigned_staff_id=placement.staff_id,
                vehicle_id=placement.vehicle_id,
                price_per_pet=price,
            )
            db.add(obj)
            db.flush()

            for pet_id in request.pet_ids:
                db.add(DBBookingPet(booking_id=obj.id, pet_id=pet_id))
            db.add(DBBookingClient(booking_id=obj.id, client_id=request.client_id))
            db.commit()
        except OperationalError as e:
            db.rollback()
            logger.error(f"Booking insert failed, rolled back: {e}")
            raise TransientStoreError("Booking store is temporarily unavailable") from e
        except IntegrityError as e:
            db.rollback()
            logger.error(f"Booking insert violated a constraint, rolled back: {e}")
            raise ValidationError("Booking references unknown pets, client or staff") from e

        return CommittedBooking(
            id=obj.id,
            service_id=request.service_id,
            client_id=request.client_id,
            start_time=candidate.local_start,
            end_time=candidate.local_end,
            field_ids=placement.field_ids,
            pet_ids=tuple(request.pet_ids),
            assigned_staff_id=placement.staff_id,
            vehicle_id=placement.vehicle_id,
            price_per_pet=price,
        )

    def _notify(self, booking: CommittedBooking) -> None:
        if self.emit is None:
            return
        self.emit("booking_created", {
            "booking_id": booking.id,
            "service_id": booking.service_id,
            "client_id": booking.client_id,
            "start_time": booking.start_time.isoformat(),
            "end_time": booking.end_time.isoformat(),
            "pet_ids": list(booking.pet_ids),
        })


# ── Validation ───────────────────────────────────────────────────────────


def _validate_request(request: BookingRequest, start: datetime, end: datetime) -> None:
    if start >= end:
        raise ValidationError("Start time must be before end time")
    if start.date() != end.date():
        raise ValidationError("Bookings must start and end on the same day")
    if not request.pet_ids:
        raise ValidationError("pet_ids must be a non-empty list")
    if len(set(request.pet_ids)) != len(request.pet_ids):
        raise ValidationError("pet_ids must not contain duplicates")
    if len(set(request.field_ids)) != len(request.field_ids):
        raise ValidationError("field_ids must not contain duplicates")


# ── Database helpers ─────────────────────────────────────────────────────


def _get_client(db: Session, client_id: int) -> DBClient | None:
    return db.get(DBClient, client_id)


def _get_client_pets(db: Session, client_id: int, pet_ids: Iterable[int]) -> list[DBPet]:
    return (
        db.query(DBPet)
        .filter(DBPet.client_id == client_id, DBPet.id.in_(list(pet_ids)))
        .all()
    )


# ── Process-wide writer ──────────────────────────────────────────────────


@lru_cache
def get_booking_writer() -> BookingWriter:
    """Writer shared by all requests of this process (one lock registry)."""
    from ..redis_client import redis_client

    config = get_engine_config()
    locker = ResourceLocker(redis=redis_client, timeout=config.lock_timeout_seconds)
    return BookingWriter(locker=locker, config=config)


def create_booking(db: Session, request: BookingRequest) -> CommittedBooking:
    return get_booking_writer().create_booking(db, request)


def create_bookings(
    session_factory: Callable[[], Session],
    requests: Iterable[BookingRequest],
) -> BatchResult:
    return get_booking_writer().create_bookings(session_factory, requests)
