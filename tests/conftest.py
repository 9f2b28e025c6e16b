import json
import os
from datetime import date, datetime

# Keep the application engine off the repository's data/ directory
os.environ.setdefault("PAWBOOK_DATABASE_URL", "sqlite://")
os.environ.pop("PAWBOOK_REDIS_URL", None)

import pytest
from sqlalchemy.orm import sessionmaker

from pawbook.database import init_db, make_engine
from pawbook.models.generated import (
    BookingClients,
    BookingPets,
    Bookings,
    Clients,
    Fields,
    Pets,
    ServiceAvailability,
    Services,
    Staff,
    StaffAvailability,
    Vehicles,
)
from pawbook.services.booking_writer import BookingWriter
from pawbook.services.resource_locks import ResourceLocker
from pawbook.services.slots.config import EngineConfig

# A Monday in British Summer Time
DAY = date(2030, 6, 3)
BEFORE_DAY = datetime(2030, 6, 1, 12, 0)


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute)


class Seeder:
    """Inserts reference rows through the ORM and commits each one."""

    def __init__(self, db):
        self.db = db

    def _add(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def service(self, default_price=25.0, requires_field_selection=False, is_active=True, name="Group walk"):
        return self._add(Services(
            name=name,
            service_type="walk",
            default_price=default_price,
            requires_field_selection=int(requires_field_selection),
            is_active=int(is_active),
        ))

    def field(self, capacity=None, name="Paddock"):
        return self._add(Fields(name=name, capacity=capacity))

    def vehicle(self, pet_capacity=None, name="Van"):
        return self._add(Vehicles(name=name, pet_capacity=pet_capacity))

    def staff(self, vehicle=None, is_active=True, name="Walker"):
        return self._add(Staff(
            display_name=name,
            default_vehicle_id=vehicle.id if vehicle else None,
            is_active=int(is_active),
        ))

    def client(self, default_staff=None, name="Client"):
        return self._add(Clients(
            name=name,
            default_staff_id=default_staff.id if default_staff else None,
        ))

    def pets(self, client, count=1, confirmed=True):
        pets = [
            Pets(client_id=client.id, name=f"Pet {client.id}-{i}", is_confirmed=int(confirmed))
            for i in range(count)
        ]
        self.db.add_all(pets)
        self.db.commit()
        return pets

    def rule(
        self,
        service,
        fields,
        start="09:00",
        end="10:00",
        days=(1, 2, 3, 4, 5, 6, 7),
        specific_date=None,
        staff_capacity=False,
        capacity_override=None,
        override_price=None,
        is_active=True,
    ):
        return self._add(ServiceAvailability(
            service_id=service.id,
            field_ids=json.dumps([f.id for f in fields]),
            start_time=start,
            end_time=end,
            use_staff_vehicle_capacity=int(staff_capacity),
            days_of_week=None if specific_date else json.dumps(list(days)),
            specific_date=specific_date.isoformat() if specific_date else None,
            capacity_override=capacity_override,
            override_price=override_price,
            is_active=int(is_active),
        ))

    def staff_rule(self, staff, start="08:00", end="18:00", days=None, specific_date=None, available=True):
        if days is None and specific_date is None:
            days = (1, 2, 3, 4, 5, 6, 7)
        return self._add(StaffAvailability(
            staff_id=staff.id,
            start_time=start,
            end_time=end,
            is_available=int(available),
            days_of_week=json.dumps(list(days)) if days is not None else None,
            specific_date=specific_date.isoformat() if specific_date else None,
        ))

    def booking(self, service, start, end, pets, fields=(), staff=None, client=None, status="committed"):
        obj = Bookings(
            service_id=service.id,
            booking_field_ids=json.dumps([f.id for f in fields]),
            start_time=start.isoformat(timespec="seconds"),
            end_time=end.isoformat(timespec="seconds"),
            assigned_staff_id=staff.id if staff else None,
            status=status,
            price_per_pet=service.default_price,
        )
        self.db.add(obj)
        self.db.flush()
        for pet in pets:
            self.db.add(BookingPets(booking_id=obj.id, pet_id=pet.id))
        if client is not None:
            self.db.add(BookingClients(booking_id=obj.id, client_id=client.id))
        self.db.commit()
        return obj


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'pawbook.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def config():
    return EngineConfig(timezone="Europe/London", exclude_same_day=False, lock_timeout_seconds=5.0)


@pytest.fixture
def events():
    return []


@pytest.fixture
def writer(config, events):
    def record(event_type, payload):
        events.append((event_type, payload))
        return True

    return BookingWriter(
        locker=ResourceLocker(timeout=config.lock_timeout_seconds),
        config=config,
        emit=record,
    )
