"""Flight lifecycle engine.

Every flight cycles SCHEDULED -> FLYING -> COMPLETED -> SCHEDULED forever,
flipping its route and reopening a full cabin each time a leg closes.
``advance`` decides the next state from a plain ``FlightState`` record and the
wall clock; ``run_lifecycle_tick`` applies it to each stored flight in its own
transaction so one bad row never stalls the rest of the fleet.
"""

import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

import inventory
import reservations
from config import settings
from database import SessionLocal
from errors import InvalidState, NotFound
from models import Flight, FlightStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlightState:
    status: FlightStatus
    departure_airport_id: int
    arrival_airport_id: int
    departure_time: datetime
    arrival_time: datetime
    next_departure_time: Optional[datetime]
    cycle_count: int
    last_cycle_reset: Optional[datetime]
    leg_number: int
    flight_duration_hours: float
    ground_time_hours: float
    is_route_reversed: bool

    @classmethod
    def of(cls, flight: Flight) -> "FlightState":
        return cls(**{f.name: getattr(flight, f.name) for f in fields(cls)})

    def apply_to(self, flight: Flight) -> None:
        for f in fields(self):
            setattr(flight, f.name, getattr(self, f.name))


@dataclass(frozen=True)
class Transition:
    state: FlightState
    cycle_reset: bool = False
    status_changed: bool = False
    leg_rolled_over: bool = False

    @property
    def changed(self) -> bool:
        return self.cycle_reset or self.status_changed


def _hours(value: float) -> timedelta:
    return timedelta(hours=value)


def advance(
    state: FlightState,
    now: datetime,
    spread_hours: float = settings.CYCLE_SPREAD_HOURS,
    reset_after_hours: float = settings.CYCLE_RESET_HOURS,
) -> Transition:
    if state.status == FlightStatus.CANCELLED:
        return Transition(state)

    cycle_reset = state.last_cycle_reset is None or now - state.last_cycle_reset > _hours(reset_after_hours)
    if cycle_reset:
        state = replace(state, cycle_count=0, last_cycle_reset=now)

    if state.status == FlightStatus.SCHEDULED and now >= state.departure_time:
        return Transition(replace(state, status=FlightStatus.FLYING), cycle_reset, status_changed=True)

    if state.status == FlightStatus.FLYING and now >= state.arrival_time:
        return Transition(replace(state, status=FlightStatus.COMPLETED), cycle_reset, status_changed=True)

    if state.status == FlightStatus.COMPLETED:
        turnaround = state.arrival_time + _hours(state.ground_time_hours)
        if now >= turnaround:
            cycle_count = state.cycle_count + 1
            departure = turnaround + _hours(cycle_count * spread_hours)
            next_leg = replace(
                state,
                status=FlightStatus.SCHEDULED,
                cycle_count=cycle_count,
                departure_airport_id=state.arrival_airport_id,
                arrival_airport_id=state.departure_airport_id,
                is_route_reversed=not state.is_route_reversed,
                departure_time=departure,
                arrival_time=departure + _hours(state.flight_duration_hours),
                next_departure_time=departure,
                leg_number=state.leg_number + 1,
            )
            return Transition(next_leg, cycle_reset, status_changed=True, leg_rolled_over=True)

    return Transition(state, cycle_reset)


@dataclass
class TickSummary:
    examined: int = 0
    updated: int = 0
    failed: int = 0


def _advance_flight(session: Session, flight_id: int, now: datetime, spread_hours: float) -> bool:
    flight = session.execute(
        select(Flight).where(Flight.id == flight_id).with_for_update(of=Flight)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if flight is None:
        return False

    closing_leg = flight.leg_number
    transition = advance(FlightState.of(flight), now, spread_hours=spread_hours)
    if not transition.changed:
        return False

    if transition.leg_rolled_over:
        # Settle the closing leg before its cabin is handed to the next one.
        reservations.close_leg(session, flight.id, closing_leg, now)
        inventory.restock(session, flight.id)

    transition.state.apply_to(flight)
    session.commit()

    if transition.cycle_reset:
        logger.info("Flight %s cycle count reset to 0 after 24 hours", flight.flight_number)
    if transition.leg_rolled_over:
        session.refresh(flight)
        logger.info(
            "Flight %s prepared for next journey. Route: %s. Cycle count: %s. Departure: %s",
            flight.flight_number,
            flight.route,
            flight.cycle_count,
            flight.departure_time,
        )
    elif transition.status_changed:
        logger.info("Flight %s is now %s (%s)", flight.flight_number, flight.status.value, flight.route)
    return True


def run_lifecycle_tick(
    session_factory=SessionLocal,
    now: Optional[datetime] = None,
    spread_hours: Optional[float] = None,
) -> TickSummary:
    now = now or utcnow()
    spread_hours = settings.CYCLE_SPREAD_HOURS if spread_hours is None else spread_hours
    logger.debug("Checking flight statuses at %s", now)

    with session_factory() as session:
        flight_ids = session.execute(
            select(Flight.id).where(Flight.status != FlightStatus.CANCELLED).order_by(Flight.id)
        ).scalars().all()

    summary = TickSummary(examined=len(flight_ids))
    for flight_id in flight_ids:
        with session_factory() as session:
            try:
                if _advance_flight(session, flight_id, now, spread_hours):
                    summary.updated += 1
            except Exception:
                session.rollback()
                summary.failed += 1
                logger.exception("Error updating flight %s; retrying next tick", flight_id)

    if summary.updated:
        logger.info("Updated %s flights", summary.updated)
    else:
        logger.debug("No flight updates required at this time")
    return summary


def cancel_flight(session: Session, flight_id: int, reason: str, now: Optional[datetime] = None) -> Flight:
    now = now or utcnow()
    flight = session.execute(
        select(Flight).where(Flight.id == flight_id).with_for_update(of=Flight)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if flight is None:
        raise NotFound(f"Flight {flight_id} not found")
    if flight.status == FlightStatus.CANCELLED:
        raise InvalidState(f"Flight {flight.flight_number} is already cancelled")

    released = reservations.cancel_pending(session, flight.id, f"Flight cancelled: {reason}", now)
    flight.status = FlightStatus.CANCELLED
    flight.cancellation_reason = reason
    session.commit()
    logger.info("Flight %s cancelled (%s); %s pending reservation(s) released", flight.flight_number, reason, released)
    return flight


def _cycle_row(flight: Flight) -> dict:
    return {
        "flight_id": flight.id,
        "flight_number": flight.flight_number,
        "status": flight.status.value,
        "cycle_count": flight.cycle_count,
        "leg_number": flight.leg_number,
        "last_cycle_reset": flight.last_cycle_reset,
        "route": flight.route,
        "is_route_reversed": flight.is_route_reversed,
        "departure_time": flight.departure_time,
    }


def cycle_stats(session: Session) -> List[dict]:
    flights = session.execute(select(Flight).order_by(Flight.flight_number)).scalars().all()
    return [_cycle_row(flight) for flight in flights]


def cycle_info(session: Session, flight_id: int) -> dict:
    flight = session.get(Flight, flight_id, populate_existing=True)
    if flight is None:
        raise NotFound(f"Flight {flight_id} not found")
    row = _cycle_row(flight)
    row["summary"] = (
        f"Flight {flight.flight_number} has completed {flight.cycle_count} cycles. "
        f"Current route: {flight.route}. Route reversed: {'Yes' if flight.is_route_reversed else 'No'}"
    )
    return row


def reset_cycles(session: Session, flight_id: int, now: Optional[datetime] = None) -> Flight:
    """Zero the cycle counter ahead of the automatic daily reset."""
    now = now or utcnow()
    flight = session.execute(
        select(Flight).where(Flight.id == flight_id).with_for_update(of=Flight)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if flight is None:
        raise NotFound(f"Flight {flight_id} not found")
    flight.cycle_count = 0
    flight.last_cycle_reset = now
    session.commit()
    logger.info("Cycle count reset for flight %s", flight.flight_number)
    return flight
