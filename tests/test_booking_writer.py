import threading
from datetime import datetime, timedelta, timezone

import pytest

from pawbook.models.generated import BookingClients, BookingPets, Bookings
from pawbook.services.booking_writer import BatchStatus, BookingRequest
from pawbook.services.slots.availability import resolve_availability
from pawbook.services.slots.exceptions import CapacityError, ValidationError
from pawbook.services.slots.rules import BookingStatus

from conftest import DAY, at


def request_for(service, client, pets, start=None, end=None, **kwargs):
    return BookingRequest(
        service_id=service.id,
        start_time=start or at(9),
        end_time=end or at(10),
        pet_ids=tuple(p.id for p in pets),
        client_id=client.id,
        **kwargs,
    )


@pytest.fixture
def paddock(seed):
    service = seed.service(default_price=25.0)
    field = seed.field(capacity=5)
    seed.rule(service, [field])
    return service, field


# ── Field-based ──────────────────────────────────────────────────────────


def test_booking_is_committed_with_pets_and_client(db, seed, writer, events, config, paddock):
    service, field = paddock
    client = seed.client()
    pets = seed.pets(client, 2)

    booking = writer.create_booking(db, request_for(service, client, pets))

    assert booking.status == BookingStatus.COMMITTED.value
    assert booking.field_ids == (field.id,)
    assert booking.price_per_pet == 25.0
    assert booking.start_time == at(9)

    row = db.get(Bookings, booking.id)
    assert row.start_time == "2030-06-03T09:00:00"
    assert sorted(p.pet_id for p in db.query(BookingPets).filter_by(booking_id=booking.id)) == sorted(
        p.id for p in pets
    )
    assert db.query(BookingClients).filter_by(booking_id=booking.id).one().client_id == client.id

    [slot] = resolve_availability(db, service.id, DAY, DAY, config=config)
    assert slot.remaining_capacity == 3

    assert events == [("booking_created", {
        "booking_id": booking.id,
        "service_id": service.id,
        "client_id": client.id,
        "start_time": "2030-06-03T09:00:00",
        "end_time": "2030-06-03T10:00:00",
        "pet_ids": [p.id for p in pets],
    })]


def test_booking_rejected_when_room_is_short(db, seed, writer, events, paddock):
    service, _ = paddock
    first, second = seed.client(), seed.client()
    writer.create_booking(db, request_for(service, first, seed.pets(first, 3)))

    with pytest.raises(CapacityError) as exc:
        writer.create_booking(db, request_for(service, second, seed.pets(second, 3)))

    assert exc.value.requested == 3
    assert exc.value.remaining == 2
    assert exc.value.reason == "base_full"
    assert len(events) == 1
    assert db.query(Bookings).count() == 1


def test_concurrent_bookings_only_one_fits(session_factory, seed, writer, paddock):
    service, _ = paddock
    requests = []
    for _ in range(2):
        client = seed.client()
        requests.append(request_for(service, client, seed.pets(client, 3)))

    barrier = threading.Barrier(len(requests))
    committed, rejected = [], []

    def book(request):
        db = session_factory()
        try:
            barrier.wait()
            committed.append(writer.create_booking(db, request))
        except CapacityError as e:
            rejected.append(e)
        finally:
            db.close()

    threads = [threading.Thread(target=book, args=(r,)) for r in requests]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(committed) == 1
    assert len(rejected) == 1


def test_concurrent_bookings_never_exceed_capacity(session_factory, db, seed, writer, config, paddock):
    service, _ = paddock
    requests = []
    for _ in range(8):
        client = seed.client()
        requests.append(request_for(service, client, seed.pets(client, 1)))

    barrier = threading.Barrier(len(requests))
    outcomes = []

    def book(request):
        session = session_factory()
        try:
            barrier.wait()
            writer.create_booking(session, request)
            outcomes.append("committed")
        except CapacityError:
            outcomes.append("rejected")
        finally:
            session.close()

    threads = [threading.Thread(target=book, args=(r,)) for r in requests]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("committed") == 5
    assert db.query(BookingPets).count() == 5
    [slot] = resolve_availability(db, service.id, DAY, DAY, config=config)
    assert slot.remaining_capacity == 0


def test_first_field_with_room_is_assigned(db, seed, writer):
    service = seed.service()
    small = seed.field(capacity=2)
    large = seed.field(capacity=5)
    seed.rule(service, [large, small])
    client = seed.client()
    pets = seed.pets(client, 4)

    first = writer.create_booking(db, request_for(service, client, pets[:2]))
    second = writer.create_booking(db, request_for(service, client, pets[2:]))

    assert first.field_ids == (min(small.id, large.id),)
    assert set(first.field_ids + second.field_ids) == {small.id, large.id}


def test_requested_field_is_honoured(db, seed, writer):
    service = seed.service()
    field_a = seed.field(capacity=5)
    field_b = seed.field(capacity=5)
    seed.rule(service, [field_a, field_b])
    client = seed.client()

    booking = writer.create_booking(
        db, request_for(service, client, seed.pets(client), field_ids=(field_b.id,))
    )

    assert booking.field_ids == (field_b.id,)


def test_field_selection_required_by_service(db, seed, writer):
    service = seed.service(requires_field_selection=True)
    field = seed.field(capacity=5)
    seed.rule(service, [field])
    client = seed.client()
    pets = seed.pets(client)

    with pytest.raises(ValidationError, match="field selection"):
        writer.create_booking(db, request_for(service, client, pets))

    booking = writer.create_booking(db, request_for(service, client, pets, field_ids=(field.id,)))
    assert booking.field_ids == (field.id,)


def test_field_outside_rule_is_rejected(db, seed, writer, paddock):
    service, _ = paddock
    stray = seed.field(capacity=5)
    client = seed.client()

    with pytest.raises(ValidationError, match="not offered"):
        writer.create_booking(db, request_for(service, client, seed.pets(client), field_ids=(stray.id,)))


def test_window_must_match_a_rule(db, seed, writer, paddock):
    service, _ = paddock
    client = seed.client()

    with pytest.raises(ValidationError, match="No availability rule"):
        writer.create_booking(
            db, request_for(service, client, seed.pets(client), start=at(9), end=at(9, 30))
        )


def test_zone_aware_request_is_normalised(db, seed, writer, paddock):
    service, _ = paddock
    client = seed.client()
    # 08:00 UTC is 09:00 in London during summer time
    start = datetime(2030, 6, 3, 8, 0, tzinfo=timezone.utc)

    booking = writer.create_booking(
        db, request_for(service, client, seed.pets(client), start=start, end=start + timedelta(hours=1))
    )

    assert booking.start_time == at(9)


# ── Request validation ───────────────────────────────────────────────────


def test_pets_must_belong_to_client(db, seed, writer, paddock):
    service, _ = paddock
    owner, stranger = seed.client(), seed.client()

    with pytest.raises(ValidationError, match="do not belong"):
        writer.create_booking(db, request_for(service, stranger, seed.pets(owner)))


def test_unconfirmed_pets_need_admin(db, seed, writer, paddock):
    service, _ = paddock
    client = seed.client()
    pets = seed.pets(client, confirmed=False)

    with pytest.raises(ValidationError, match="not confirmed"):
        writer.create_booking(db, request_for(service, client, pets))

    booking = writer.create_booking(db, request_for(service, client, pets, is_admin=True))
    assert booking.pet_ids == (pets[0].id,)


@pytest.mark.parametrize("start, end, pet_count, duplicate", [
    (at(10), at(9), 1, False),
    (at(9), at(9, 0, day=DAY + timedelta(days=1)), 1, False),
    (at(9), at(10), 0, False),
    (at(9), at(10), 1, True),
])
def test_malformed_requests_are_rejected(db, seed, writer, paddock, start, end, pet_count, duplicate):
    service, _ = paddock
    client = seed.client()
    pet_ids = tuple(p.id for p in seed.pets(client, pet_count)) if pet_count else ()
    if duplicate:
        pet_ids = pet_ids + pet_ids

    request = BookingRequest(
        service_id=service.id, start_time=start, end_time=end, pet_ids=pet_ids, client_id=client.id,
    )
    with pytest.raises(ValidationError):
        writer.create_booking(db, request)
    assert db.query(Bookings).count() == 0


def test_unknown_service_and_client(db, seed, writer, paddock):
    service, _ = paddock
    client = seed.client()
    pets = seed.pets(client)

    with pytest.raises(ValidationError, match="Service"):
        writer.create_booking(db, BookingRequest(
            service_id=404, start_time=at(9), end_time=at(10), pet_ids=(pets[0].id,), client_id=client.id,
        ))
    with pytest.raises(ValidationError, match="Client"):
        writer.create_booking(db, BookingRequest(
            service_id=service.id, start_time=at(9), end_time=at(10), pet_ids=(pets[0].id,), client_id=404,
        ))


# ── Staff/vehicle-based ──────────────────────────────────────────────────


@pytest.fixture
def walk(seed):
    service = seed.service(default_price=18.0)
    seed.rule(service, [seed.field()], staff_capacity=True)
    return service


def test_client_default_staff_takes_the_booking(db, seed, writer, walk):
    van = seed.vehicle(pet_capacity=3)
    usual = seed.staff(vehicle=van)
    seed.staff_rule(usual)
    client = seed.client(default_staff=usual)

    booking = writer.create_booking(db, request_for(walk, client, seed.pets(client, 2)))

    assert booking.assigned_staff_id == usual.id
    assert booking.vehicle_id == van.id
    assert booking.price_per_pet == 18.0


def test_default_staff_van_full(db, seed, writer, walk):
    usual = seed.staff(vehicle=seed.vehicle(pet_capacity=3))
    seed.staff_rule(usual)
    client = seed.client(default_staff=usual)
    pets = seed.pets(client, 4)
    writer.create_booking(db, request_for(walk, client, pets[:2]))

    with pytest.raises(CapacityError) as exc:
        writer.create_booking(db, request_for(walk, client, pets[2:]))

    assert exc.value.reason == "staff_full"
    assert exc.value.remaining == 1


def test_default_staff_off_duty_points_at_other_staff(db, seed, writer, walk):
    usual = seed.staff(vehicle=seed.vehicle(pet_capacity=3))
    other = seed.staff(vehicle=seed.vehicle(pet_capacity=3))
    seed.staff_rule(other)
    client = seed.client(default_staff=usual)

    with pytest.raises(CapacityError) as exc:
        writer.create_booking(db, request_for(walk, client, seed.pets(client)))

    assert exc.value.reason == "staff_full"
    assert exc.value.other_staff_potentially_available is True


def test_explicit_staff_overrides_client_default(db, seed, writer, walk):
    usual = seed.staff(vehicle=seed.vehicle(pet_capacity=3))
    cover = seed.staff(vehicle=seed.vehicle(pet_capacity=3))
    seed.staff_rule(cover)
    client = seed.client(default_staff=usual)

    booking = writer.create_booking(
        db, request_for(walk, client, seed.pets(client), assigned_staff_id=cover.id)
    )

    assert booking.assigned_staff_id == cover.id


def test_without_staff_association_first_staff_with_room(db, seed, writer, walk):
    tiny = seed.staff(vehicle=seed.vehicle(pet_capacity=1))
    roomy = seed.staff(vehicle=seed.vehicle(pet_capacity=4))
    seed.staff_rule(tiny)
    seed.staff_rule(roomy)
    client = seed.client()

    booking = writer.create_booking(db, request_for(walk, client, seed.pets(client, 2)))

    assert booking.assigned_staff_id == roomy.id


def test_nobody_on_duty_rejects(db, seed, writer, walk):
    seed.staff(vehicle=seed.vehicle(pet_capacity=4))
    client = seed.client()

    with pytest.raises(CapacityError) as exc:
        writer.create_booking(db, request_for(walk, client, seed.pets(client)))

    assert exc.value.reason == "no_staff"
    assert exc.value.remaining == 0


# ── Batch ────────────────────────────────────────────────────────────────


def test_batch_continues_after_rejection(session_factory, seed, writer, events, paddock):
    service, _ = paddock
    client = seed.client()
    pets = seed.pets(client, 6)
    requests = [
        request_for(service, client, pets[:3]),
        request_for(service, client, pets[3:6]),
        request_for(service, client, pets[3:5]),
    ]

    result = writer.create_bookings(session_factory, requests)

    assert result.status == BatchStatus.PARTIALLY_BOOKED
    assert [o.status for o in result.outcomes] == [
        BookingStatus.COMMITTED, BookingStatus.REJECTED, BookingStatus.COMMITTED,
    ]
    rejected = result.outcomes[1]
    assert rejected.error_type == "capacity"
    assert rejected.details["remaining_capacity"] == 2
    assert len(events) == 2


def test_batch_all_committed_and_all_failed(session_factory, seed, writer, paddock):
    service, _ = paddock
    client = seed.client()
    pets = seed.pets(client, 2)

    booked = writer.create_bookings(session_factory, [
        request_for(service, client, pets[:1]),
        request_for(service, client, pets[1:]),
    ])
    failed = writer.create_bookings(session_factory, [
        request_for(service, client, pets, start=at(11), end=at(12)),
    ])

    assert booked.status == BatchStatus.FULLY_BOOKED
    assert failed.status == BatchStatus.FULLY_FAILED
    assert failed.outcomes[0].error_type == "validation"


def run_concurrently(session_factory, writer, requests):
    barrier = threading.Barrier(len(requests))
    committed, rejected = [], []

    def book(request):
        session = session_factory()
        try:
            barrier.wait()
            committed.append(writer.create_booking(session, request))
        except CapacityError as e:
            rejected.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=book, args=(r,)) for r in requests]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return committed, rejected


def pets_riding_with(db, staff):
    return (
        db.query(BookingPets)
        .join(Bookings, Bookings.id == BookingPets.booking_id)
        .filter(Bookings.assigned_staff_id == staff.id)
        .count()
    )


def test_concurrent_bookings_for_one_van(session_factory, db, seed, writer, walk):
    usual = seed.staff(vehicle=seed.vehicle(pet_capacity=5))
    seed.staff_rule(usual)
    requests = []
    for _ in range(6):
        client = seed.client(default_staff=usual)
        requests.append(request_for(walk, client, seed.pets(client, 2)))

    committed, rejected = run_concurrently(session_factory, writer, requests)

    assert len(committed) == 2
    assert len(rejected) == 4
    assert all(e.reason == "staff_full" for e in rejected)
    assert pets_riding_with(db, usual) == 4


def test_concurrent_bookings_spread_over_staff(session_factory, db, seed, writer, walk):
    first = seed.staff(vehicle=seed.vehicle(pet_capacity=2))
    second = seed.staff(vehicle=seed.vehicle(pet_capacity=2))
    seed.staff_rule(first)
    seed.staff_rule(second)
    requests = []
    for _ in range(6):
        client = seed.client()
        requests.append(request_for(walk, client, seed.pets(client, 1)))

    committed, rejected = run_concurrently(session_factory, writer, requests)

    assert len(committed) == 4
    assert len(rejected) == 2
    assert pets_riding_with(db, first) == 2
    assert pets_riding_with(db, second) == 2


# ── Field and staff rules on one window ──────────────────────────────────


@pytest.fixture
def mixed_window(seed):
    service = seed.service()
    field = seed.field(capacity=1)
    seed.rule(service, [field])
    seed.rule(service, [seed.field()], staff_capacity=True)
    walker = seed.staff(vehicle=seed.vehicle(pet_capacity=5))
    seed.staff_rule(walker)
    return service, field, walker


def test_mixed_window_is_listed_with_both_capacities(db, config, mixed_window):
    service, _, _ = mixed_window

    [slot] = resolve_availability(db, service.id, DAY, DAY, config=config)

    assert slot.remaining_capacity == 6


def test_mixed_window_books_field_first(db, seed, writer, mixed_window):
    service, field, _ = mixed_window
    client = seed.client()

    booking = writer.create_booking(db, request_for(service, client, seed.pets(client, 1)))

    assert booking.field_ids == (field.id,)
    assert booking.assigned_staff_id is None


def test_mixed_window_falls_back_to_staff(db, seed, writer, mixed_window):
    service, _, walker = mixed_window
    client = seed.client()

    booking = writer.create_booking(db, request_for(service, client, seed.pets(client, 3)))

    assert booking.assigned_staff_id == walker.id


def test_mixed_window_rejects_when_both_full(db, seed, writer, mixed_window):
    service, _, _ = mixed_window
    client = seed.client()

    with pytest.raises(CapacityError) as exc:
        writer.create_booking(db, request_for(service, client, seed.pets(client, 6)))

    assert exc.value.reason == "staff_full"
