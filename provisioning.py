"""Explicit, run-once provisioning of users, airports and the flight fleet."""

import logging
import random
import re
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from auth import hash_password
from config import settings
from errors import NotFound, ValidationFailed
from models import Airport, Flight, FlightStatus, User, utcnow

logger = logging.getLogger(__name__)

DEFAULT_AIRPORTS = [
    ("DEL", "Indira Gandhi International Airport", "Delhi", "India"),
    ("BOM", "Chhatrapati Shivaji Maharaj International Airport", "Mumbai", "India"),
    ("MAA", "Chennai International Airport", "Chennai", "India"),
    ("CCU", "Netaji Subhas Chandra Bose International Airport", "Kolkata", "India"),
    ("BLR", "Kempegowda International Airport", "Bengaluru", "India"),
    ("HYD", "Rajiv Gandhi International Airport", "Hyderabad", "India"),
]

DEMO_ROUTES = [
    ("DEL", "BOM", 2.0),
    ("MAA", "DEL", 2.5),
    ("CCU", "BOM", 2.5),
    ("BLR", "CCU", 2.5),
    ("HYD", "DEL", 2.0),
]

AIRLINE_CODES = {
    "Indigo": "6E",
    "Vistara": "UK",
    "Air India": "AI",
    "Spicejet": "SG",
    "Akasa Air": "QP",
}


def provision_admin(session: Session, email: Optional[str], password: Optional[str]) -> Optional[User]:
    if not email or not password:
        logger.info("No admin credentials configured; skipping admin provisioning")
        return None
    admin = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if admin is not None:
        if admin.role != "admin":
            admin.role = "admin"
            session.commit()
        return admin

    admin = User(email=email, full_name="Administrator", password_hash=hash_password(password), role="admin")
    session.add(admin)
    session.commit()
    logger.info("Provisioned admin user %s", email)
    return admin


def provision_airports(session: Session, airports: Iterable[Tuple[str, str, str, str]]) -> int:
    existing = set(session.execute(select(Airport.code)).scalars())
    created = 0
    for code, name, city, country in airports:
        if code in existing:
            continue
        session.add(Airport(code=code, name=name, city=city, country=country))
        created += 1
    session.commit()
    return created


AIRPORT_CODE = re.compile(r"^[A-Z]{3,4}$")


def create_airport(session: Session, code: str, name: str, city: Optional[str] = None, country: Optional[str] = None) -> Airport:
    code = (code or "").strip().upper()
    if not AIRPORT_CODE.match(code):
        raise ValidationFailed("Airport code must be 3 or 4 letters")
    if not name or not name.strip():
        raise ValidationFailed("Airport name is required")
    if session.execute(select(Airport.id).where(Airport.code == code)).first():
        raise ValidationFailed(f"Airport with code {code} already exists")

    airport = Airport(code=code, name=name.strip(), city=city, country=country)
    session.add(airport)
    session.commit()
    logger.info("Created airport %s (%s)", code, airport.name)
    return airport


def list_airports(session: Session) -> List[Airport]:
    return list(session.execute(select(Airport).order_by(Airport.name)).scalars())


def airport_by_code(session: Session, code: str) -> Airport:
    airport = session.execute(select(Airport).where(Airport.code == code.upper())).scalar_one_or_none()
    if airport is None:
        raise NotFound(f"Airport not found: {code}")
    return airport


def create_flight(
    session: Session,
    flight_number: str,
    airline: str,
    departure_code: str,
    arrival_code: str,
    departure_time: datetime,
    price: float,
    total_seats: int,
    flight_duration_hours: float = 2.5,
    ground_time_hours: float = 1.0,
    now: Optional[datetime] = None,
) -> Flight:
    departure = airport_by_code(session, departure_code)
    arrival = airport_by_code(session, arrival_code)
    if departure.id == arrival.id:
        raise ValidationFailed("Departure and arrival airports cannot be the same")
    if total_seats < 1:
        raise ValidationFailed("A flight needs at least one seat")
    if price <= 0:
        raise ValidationFailed("Price must be positive")
    taken = session.execute(select(Flight.id).where(Flight.flight_number == flight_number)).first()
    if taken:
        raise ValidationFailed(f"Flight number {flight_number} already exists")

    flight = Flight(
        flight_number=flight_number,
        airline=airline,
        price=price,
        departure_airport_id=departure.id,
        arrival_airport_id=arrival.id,
        original_departure_airport_id=departure.id,
        original_arrival_airport_id=arrival.id,
        departure_time=departure_time,
        arrival_time=departure_time + timedelta(hours=flight_duration_hours),
        next_departure_time=departure_time,
        total_seats=total_seats,
        available_seats=total_seats,
        status=FlightStatus.SCHEDULED,
        cycle_count=0,
        last_cycle_reset=now or utcnow(),
        leg_number=1,
        flight_duration_hours=flight_duration_hours,
        ground_time_hours=ground_time_hours,
        is_route_reversed=False,
    )
    session.add(flight)
    session.commit()
    logger.info("Created flight %s %s -> %s departing %s", flight_number, departure.code, arrival.code, departure_time)
    return flight


def seed_demo_network(session: Session, now: Optional[datetime] = None) -> int:
    if session.execute(select(func.count(Flight.id))).scalar():
        logger.info("Database already seeded with flights.")
        return 0

    logger.info("Database is empty, seeding with initial flight data...")
    now = now or utcnow()
    provision_airports(session, DEFAULT_AIRPORTS)
    created = 0
    for index, (origin, destination, duration) in enumerate(DEMO_ROUTES):
        airline = random.choice(list(AIRLINE_CODES.keys()))
        flight_number = f"{AIRLINE_CODES[airline]}{random.randint(1000, 9999)}"
        while session.execute(select(Flight.id).where(Flight.flight_number == flight_number)).first():
            flight_number = f"{AIRLINE_CODES[airline]}{random.randint(1000, 9999)}"
        create_flight(
            session,
            flight_number=flight_number,
            airline=airline,
            departure_code=origin,
            arrival_code=destination,
            departure_time=now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=3 + index * 2),
            price=float(3000 + random.randint(0, 40) * 100),
            total_seats=180,
            flight_duration_hours=duration,
            now=now,
        )
        created += 1
    logger.info("Database flight seeding complete.")
    return created


def provision(session: Session) -> None:
    provision_admin(session, settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD)
    if settings.SEED_AIRPORTS:
        created = provision_airports(session, DEFAULT_AIRPORTS)
        if created:
            logger.info("Provisioned %s airport(s)", created)
    if settings.SEED_DEMO_DATA:
        seed_demo_network(session)
