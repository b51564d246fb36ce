"""Seat inventory: the only code path that changes ``Flight.available_seats``.

Each operation is a single conditional UPDATE executed inside the caller's
transaction, so concurrent holds on one flight never interleave a
read-modify-write and holds on different flights never contend.
"""

import logging

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from errors import InsufficientInventory, NotFound, ValidationFailed
from models import Flight

logger = logging.getLogger(__name__)


def _require_positive(seats: int) -> None:
    if seats is None or seats < 1:
        raise ValidationFailed("Number of seats must be at least 1")


def _expire_counter(session: Session, flight_id: int) -> None:
    # The UPDATEs bypass the identity map; drop any stale in-session copy.
    loaded = session.identity_map.get(identity_key(Flight, flight_id))
    if loaded is not None:
        session.expire(loaded, ["available_seats"])


def _flight_exists(session: Session, flight_id: int) -> bool:
    return session.execute(select(Flight.id).where(Flight.id == flight_id)).first() is not None


def available_seats(session: Session, flight_id: int) -> int:
    seats = session.execute(
        select(Flight.available_seats).where(Flight.id == flight_id)
    ).scalar_one_or_none()
    if seats is None:
        raise NotFound(f"Flight {flight_id} not found")
    return seats


def reserve(session: Session, flight_id: int, seats: int) -> None:
    _require_positive(seats)
    result = session.execute(
        update(Flight)
        .where(Flight.id == flight_id, Flight.available_seats >= seats)
        .values(available_seats=Flight.available_seats - seats)
        .execution_options(synchronize_session=False)
    )
    _expire_counter(session, flight_id)
    if result.rowcount == 1:
        logger.info("Reserved %s seat(s) on flight %s", seats, flight_id)
        return
    if not _flight_exists(session, flight_id):
        raise NotFound(f"Flight {flight_id} not found")
    raise InsufficientInventory(flight_id, seats)


def release(session: Session, flight_id: int, seats: int) -> None:
    _require_positive(seats)
    restored = Flight.available_seats + seats
    result = session.execute(
        update(Flight)
        .where(Flight.id == flight_id)
        .values(
            available_seats=case(
                (restored > Flight.total_seats, Flight.total_seats),
                else_=restored,
            )
        )
        .execution_options(synchronize_session=False)
    )
    _expire_counter(session, flight_id)
    if result.rowcount != 1:
        raise NotFound(f"Flight {flight_id} not found")
    logger.info("Released %s seat(s) on flight %s", seats, flight_id)


def finalize(session: Session, flight_id: int, seats: int) -> None:
    # Seats were taken at reserve time; this only marks the hold permanent.
    _require_positive(seats)
    logger.info("Finalized hold of %s seat(s) on flight %s", seats, flight_id)


def restock(session: Session, flight_id: int) -> None:
    """Give a freshly regenerated leg its full cabin back."""
    result = session.execute(
        update(Flight)
        .where(Flight.id == flight_id)
        .values(available_seats=Flight.total_seats)
        .execution_options(synchronize_session=False)
    )
    _expire_counter(session, flight_id)
    if result.rowcount != 1:
        raise NotFound(f"Flight {flight_id} not found")
    logger.info("Restocked flight %s for its next leg", flight_id)
