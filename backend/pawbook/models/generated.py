from sqlalchemy import Column, Float, ForeignKey, Integer, Text, UniqueConstraint, text

from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()
metadata = Base.metadata


class Services(Base):
    __tablename__ = 'services'

    name = Column(Text, nullable=False)
    service_type = Column(Text, nullable=False)
    requires_field_selection = Column(Integer, nullable=False, server_default=text('0'))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    default_price = Column(Float)
    description = Column(Text)
    created_at = Column(Text, server_default=text('CURRENT_TIMESTAMP'))

    availability_rules = relationship('ServiceAvailability', back_populates='service')
    bookings = relationship('Bookings', back_populates='service')


class Fields(Base):
    __tablename__ = 'fields'

    name = Column(Text, nullable=False)
    id = Column(Integer, primary_key=True)
    capacity = Column(Integer)  # NULL = unconstrained
    field_type = Column(Text)


class Vehicles(Base):
    __tablename__ = 'vehicles'

    name = Column(Text, nullable=False)
    id = Column(Integer, primary_key=True)
    pet_capacity = Column(Integer)  # NULL = unconstrained
    license_plate = Column(Text)

    staff = relationship('Staff', back_populates='default_vehicle')


class Staff(Base):
    __tablename__ = 'staff'

    display_name = Column(Text, nullable=False)
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    default_vehicle_id = Column(ForeignKey('vehicles.id', ondelete='SET NULL'))
    role = Column(Text)

    default_vehicle = relationship('Vehicles', back_populates='staff')
    availability = relationship('StaffAvailability', back_populates='staff')
    clients = relationship('Clients', back_populates='default_staff')


class Clients(Base):
    __tablename__ = 'clients'

    name = Column(Text, nullable=False)
    id = Column(Integer, primary_key=True)
    email = Column(Text)
    default_staff_id = Column(ForeignKey('staff.id', ondelete='SET NULL'))

    default_staff = relationship('Staff', back_populates='clients')
    pets = relationship('Pets', back_populates='client')


class Pets(Base):
    __tablename__ = 'pets'

    client_id = Column(ForeignKey('clients.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)
    is_confirmed = Column(Integer, nullable=False, server_default=text('0'))
    id = Column(Integer, primary_key=True)
    breed = Column(Text)

    client = relationship('Clients', back_populates='pets')


class ServiceAvailability(Base):
    __tablename__ = 'service_availability'

    service_id = Column(ForeignKey('services.id', ondelete='CASCADE'), nullable=False)
    field_ids = Column(Text, nullable=False, server_default=text("'[]'"))
    start_time = Column(Text, nullable=False)  # "HH:MM" or "HH:MM:SS"
    end_time = Column(Text, nullable=False)
    use_staff_vehicle_capacity = Column(Integer, nullable=False, server_default=text('0'))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    days_of_week = Column(Text)  # JSON list of ISO weekdays, NULL for specific-date rules
    specific_date = Column(Text)  # "YYYY-MM-DD"
    capacity_override = Column(Integer)
    override_price = Column(Float)
    created_at = Column(Text, server_default=text('CURRENT_TIMESTAMP'))

    service = relationship('Services', back_populates='availability_rules')


class StaffAvailability(Base):
    __tablename__ = 'staff_availability'

    staff_id = Column(ForeignKey('staff.id', ondelete='CASCADE'), nullable=False)
    start_time = Column(Text, nullable=False)
    end_time = Column(Text, nullable=False)
    is_available = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    days_of_week = Column(Text)
    specific_date = Column(Text)

    staff = relationship('Staff', back_populates='availability')


class Bookings(Base):
    __tablename__ = 'bookings'

    service_id = Column(ForeignKey('services.id'), nullable=False)
    booking_field_ids = Column(Text, nullable=False, server_default=text("'[]'"))
    start_time = Column(Text, nullable=False)  # naive local ISO timestamp
    end_time = Column(Text, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'committed'"))
    id = Column(Integer, primary_key=True)
    assigned_staff_id = Column(ForeignKey('staff.id', ondelete='SET NULL'))
    vehicle_id = Column(ForeignKey('vehicles.id', ondelete='SET NULL'))
    price_per_pet = Column(Float)
    created_at = Column(Text, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    service = relationship('Services', back_populates='bookings')
    pets = relationship('BookingPets', back_populates='booking', cascade='all, delete-orphan')
    clients = relationship('BookingClients', back_populates='booking', cascade='all, delete-orphan')


class BookingPets(Base):
    __tablename__ = 'booking_pets'
    __table_args__ = (
        UniqueConstraint('booking_id', 'pet_id'),
    )

    booking_id = Column(ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False)
    pet_id = Column(ForeignKey('pets.id', ondelete='CASCADE'), nullable=False)
    id = Column(Integer, primary_key=True)

    booking = relationship('Bookings', back_populates='pets')


class BookingClients(Base):
    __tablename__ = 'booking_clients'
    __table_args__ = (
        UniqueConstraint('booking_id', 'client_id'),
    )

    booking_id = Column(ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False)
    client_id = Column(ForeignKey('clients.id', ondelete='CASCADE'), nullable=False)
    id = Column(Integer, primary_key=True)

    booking = relationship('Bookings', back_populates='clients')


class ResourceLocks(Base):
    __tablename__ = 'resource_locks'

    lock_key = Column(Text, nullable=False, unique=True)
    id = Column(Integer, primary_key=True)
    created_at = Column(Text, server_default=text('CURRENT_TIMESTAMP'))
