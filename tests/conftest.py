import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("SEED_DEMO_DATA", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from auth import hash_password  # noqa: E402
from database import init_db, make_engine  # noqa: E402
from inventory import available_seats  # noqa: E402
from models import User  # noqa: E402
from notifications import Notifier  # noqa: E402
from payments import PaymentAuthority  # noqa: E402
from provisioning import DEFAULT_AIRPORTS, create_flight, provision_airports  # noqa: E402
from reservations import ReservationCoordinator  # noqa: E402

NOW = datetime(2025, 3, 10, 8, 0, 0)
KEY_SECRET = "test-key-secret"
WEBHOOK_SECRET = "test-webhook-secret"


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def booking_confirmed(self, notice):
        self.sent.append(("booking_confirmed", notice))

    def payment_failed(self, notice):
        self.sent.append(("payment_failed", notice))

    def booking_cancelled(self, notice):
        self.sent.append(("booking_cancelled", notice))

    def kinds(self):
        return [kind for kind, _ in self.sent]


@pytest.fixture()
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'flights.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def airports(session):
    provision_airports(session, DEFAULT_AIRPORTS)


@pytest.fixture()
def make_flight(session, airports):
    counter = {"n": 0}

    def _make(
        total_seats=100,
        departure_time=None,
        departure_code="DEL",
        arrival_code="BOM",
        price=5000.0,
        flight_duration_hours=2.0,
        ground_time_hours=1.0,
        now=NOW,
    ):
        counter["n"] += 1
        return create_flight(
            session,
            flight_number=f"6E{1000 + counter['n']}",
            airline="Indigo",
            departure_code=departure_code,
            arrival_code=arrival_code,
            departure_time=departure_time or now + timedelta(hours=3),
            price=price,
            total_seats=total_seats,
            flight_duration_hours=flight_duration_hours,
            ground_time_hours=ground_time_hours,
            now=now,
        )

    return _make


@pytest.fixture()
def user(session):
    user = User(email="traveller@example.com", full_name="Asha Rao", password_hash=hash_password("secret"), role="user")
    session.add(user)
    session.commit()
    return user


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def authority():
    return PaymentAuthority(key_id="rzp_test_key", key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture()
def coordinator(authority, notifier):
    return ReservationCoordinator(
        authority=authority,
        notifier=notifier,
        reservation_timeout=timedelta(minutes=15),
        advance_months=1,
        currency="INR",
    )


@pytest.fixture()
def seats_left(session):
    """Read the counter, leaving the test session without an open transaction."""

    def _read(flight_id):
        session.commit()
        seats = available_seats(session, flight_id)
        session.commit()
        return seats

    return _read
