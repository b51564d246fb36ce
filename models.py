import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _status_column(enum_cls, default):
    return Column(
        Enum(enum_cls, native_enum=False, length=16),
        nullable=False,
        default=default,
        index=True,
    )


class FlightStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    FLYING = "FLYING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class BookingStatus(str, enum.Enum):
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String)
    password_hash = Column(String, nullable=False)
    role = Column(String, default="user")  # 'user' or 'admin'

    reservations = relationship("Reservation", back_populates="user")
    bookings = relationship("Booking", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Airport(Base):
    __tablename__ = "airports"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(8), unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    city = Column(String)
    country = Column(String)


class Flight(Base):
    """A perpetually cycling aircraft rotation between two airports."""

    __tablename__ = "flights"

    id = Column(Integer, primary_key=True, index=True)
    flight_number = Column(String, unique=True, index=True, nullable=False)
    airline = Column(String, nullable=False)
    price = Column(Float, nullable=False)

    departure_airport_id = Column(Integer, ForeignKey("airports.id"), nullable=False)
    arrival_airport_id = Column(Integer, ForeignKey("airports.id"), nullable=False)
    original_departure_airport_id = Column(Integer, ForeignKey("airports.id"), nullable=False)
    original_arrival_airport_id = Column(Integer, ForeignKey("airports.id"), nullable=False)

    departure_time = Column(DateTime, nullable=False, index=True)
    arrival_time = Column(DateTime, nullable=False)
    next_departure_time = Column(DateTime, nullable=True)

    total_seats = Column(Integer, nullable=False)
    available_seats = Column(Integer, nullable=False)

    status = _status_column(FlightStatus, FlightStatus.SCHEDULED)
    cycle_count = Column(Integer, nullable=False, default=0)
    last_cycle_reset = Column(DateTime, nullable=True, default=utcnow)
    leg_number = Column(Integer, nullable=False, default=1)
    flight_duration_hours = Column(Float, nullable=False, default=2.5)
    ground_time_hours = Column(Float, nullable=False, default=1.0)
    is_route_reversed = Column(Boolean, nullable=False, default=False)
    cancellation_reason = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    departure_airport = relationship("Airport", foreign_keys=[departure_airport_id], lazy="joined", innerjoin=True)
    arrival_airport = relationship("Airport", foreign_keys=[arrival_airport_id], lazy="joined", innerjoin=True)
    original_departure_airport = relationship("Airport", foreign_keys=[original_departure_airport_id])
    original_arrival_airport = relationship("Airport", foreign_keys=[original_arrival_airport_id])

    reservations = relationship("Reservation", back_populates="flight")
    bookings = relationship("Booking", back_populates="flight")

    @property
    def route(self) -> str:
        return f"{self.departure_airport.code} → {self.arrival_airport.code}"


class Reservation(Base):
    """Provisional seat hold tracked against an external payment order."""

    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    flight_id = Column(Integer, ForeignKey("flights.id"), nullable=False, index=True)
    leg_number = Column(Integer, nullable=False, default=1)

    passenger_name = Column(String, nullable=False)
    passenger_phone = Column(String, nullable=True)
    seats = Column(Integer, nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String, default="INR")

    status = _status_column(ReservationStatus, ReservationStatus.PENDING)
    authority_order_id = Column(String, unique=True, index=True, nullable=False)
    authority_payment_id = Column(String, nullable=True)
    authority_signature = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)

    # Flight details at the time of the hold
    flight_number = Column(String, nullable=False)
    airline = Column(String, nullable=False)
    departure_airport_code = Column(String, nullable=False)
    arrival_airport_code = Column(String, nullable=False)
    departure_time = Column(DateTime, nullable=False)
    arrival_time = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="reservations")
    flight = relationship("Flight", back_populates="reservations")
    booking = relationship("Booking", back_populates="reservation", uselist=False)

    @property
    def route(self) -> str:
        return f"{self.departure_airport_code} → {self.arrival_airport_code}"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    flight_id = Column(Integer, ForeignKey("flights.id"), nullable=False, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), unique=True, nullable=False)
    leg_number = Column(Integer, nullable=False, default=1)

    passenger_name = Column(String, nullable=False)
    passenger_email = Column(String, nullable=False)
    passenger_phone = Column(String, nullable=True)
    seats_booked = Column(Integer, nullable=False, default=1)
    total_price = Column(Float, nullable=False)
    status = _status_column(BookingStatus, BookingStatus.CONFIRMED)

    # Snapshot; never rewritten after creation
    flight_number = Column(String, nullable=False)
    airline = Column(String, nullable=False)
    departure_airport_code = Column(String, nullable=False)
    arrival_airport_code = Column(String, nullable=False)
    departure_time = Column(DateTime, nullable=False)
    arrival_time = Column(DateTime, nullable=False)

    cancellation_reason = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    booking_date = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="bookings")
    flight = relationship("Flight", back_populates="bookings")
    reservation = relationship("Reservation", back_populates="booking")

    @property
    def route(self) -> str:
        return f"{self.departure_airport_code} → {self.arrival_airport_code}"
