"""Reservation/payment coordination and the booking ledger.

A reservation holds seats while the customer pays. It settles exactly once:
every terminal transition is a conditional ``UPDATE ... WHERE status =
<expected>`` and only the caller whose update touched the row goes on to move
seats or write a booking. Checkout callbacks, payment webhooks, the timeout
sweep and leg rollover all race through the same gate.
"""

import calendar
import hmac
import logging
import random
import re
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

import inventory
from config import settings
from database import SessionLocal
from errors import (
    AdvanceWindowExceeded,
    AlreadyTerminal,
    InvalidFlightState,
    InvalidState,
    NotFound,
    SignatureInvalid,
    ValidationFailed,
)
from models import (
    Booking,
    BookingStatus,
    Flight,
    FlightStatus,
    Reservation,
    ReservationStatus,
    User,
    utcnow,
)
from notifications import Notice, Notifier, build_notifier
from payments import CAPTURED_EVENT, FAILED_EVENT, PaymentAuthority, PaymentProof, WebhookProof, parse_webhook

logger = logging.getLogger(__name__)

BOOKABLE_STATUSES = {FlightStatus.SCHEDULED, FlightStatus.FLYING}
PHONE_PATTERN = re.compile(r"^\+?[0-9-]+$")


@dataclass(frozen=True)
class PassengerDetails:
    name: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class Confirmation:
    booking: Booking
    created: bool

    @property
    def outcome(self) -> str:
        return "CONFIRMED" if self.created else "ALREADY_FINALIZED"


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def generate_reference(session: Session, model, prefix: str, digits: int) -> str:
    for _ in range(5):
        candidate = prefix + "".join(random.choices(string.digits, k=digits))
        exists = session.execute(select(model.id).where(model.reference == candidate)).first()
        if not exists:
            return candidate
    return f"{prefix}{int(utcnow().timestamp() * 1000)}"


def _gate(session: Session, reservation: Reservation, source: ReservationStatus, target: ReservationStatus, **values) -> bool:
    """Move ``reservation`` from ``source`` to ``target``; False if someone else already did."""
    result = session.execute(
        update(Reservation)
        .where(Reservation.id == reservation.id, Reservation.status == source)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    session.expire(reservation)
    return result.rowcount == 1


def _current_leg(session: Session, flight_id: int) -> Optional[int]:
    return session.execute(select(Flight.leg_number).where(Flight.id == flight_id)).scalar_one_or_none()


def _release_if_current_leg(session: Session, flight_id: int, leg_number: int, seats: int) -> bool:
    # Seats of a closed leg went back to the pool when the next leg was restocked.
    if _current_leg(session, flight_id) != leg_number:
        return False
    inventory.release(session, flight_id, seats)
    return True


def close_leg(session: Session, flight_id: int, leg_number: int, now: datetime) -> None:
    """Settle everything still attached to a leg that is about to be regenerated.

    Runs inside the lifecycle transaction, before the cabin is restocked.
    Pending holds are cancelled without a release since the restock supersedes
    them; confirmed bookings of the leg are marked as flown.
    """
    cancelled = session.execute(
        update(Reservation)
        .where(
            Reservation.flight_id == flight_id,
            Reservation.leg_number <= leg_number,
            Reservation.status == ReservationStatus.PENDING,
        )
        .values(status=ReservationStatus.CANCELLED, failure_reason="Leg closed before payment", resolved_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    completed = session.execute(
        update(Booking)
        .where(
            Booking.flight_id == flight_id,
            Booking.leg_number <= leg_number,
            Booking.status == BookingStatus.CONFIRMED,
        )
        .values(status=BookingStatus.COMPLETED)
        .execution_options(synchronize_session=False)
    ).rowcount
    if cancelled or completed:
        logger.info(
            "Closed leg %s of flight %s: %s pending reservation(s) cancelled, %s booking(s) completed",
            leg_number,
            flight_id,
            cancelled,
            completed,
        )


def cancel_pending(session: Session, flight_id: int, reason: str, now: datetime) -> int:
    """Cancel every pending hold on a flight and give the seats back. Caller commits."""
    pending = session.execute(
        select(Reservation).where(
            Reservation.flight_id == flight_id,
            Reservation.status == ReservationStatus.PENDING,
        )
    ).scalars().all()
    released = 0
    for reservation in pending:
        leg_number, seats = reservation.leg_number, reservation.seats
        if _gate(session, reservation, ReservationStatus.PENDING, ReservationStatus.CANCELLED, failure_reason=reason, resolved_at=now):
            _release_if_current_leg(session, flight_id, leg_number, seats)
            released += 1
    return released


def _booking_notice(booking: Booking, reason: Optional[str] = None) -> Notice:
    return Notice(
        to_email=booking.passenger_email,
        reference=booking.reference,
        flight_number=booking.flight_number,
        route=booking.route,
        amount=booking.total_price,
        passenger_name=booking.passenger_name,
        seats=booking.seats_booked,
        departure_time=booking.departure_time,
        arrival_time=booking.arrival_time,
        reason=reason,
    )


def _reservation_notice(reservation: Reservation, reason: Optional[str] = None) -> Notice:
    return Notice(
        to_email=reservation.user.email,
        reference=reservation.reference,
        flight_number=reservation.flight_number,
        route=reservation.route,
        amount=reservation.amount,
        passenger_name=reservation.passenger_name,
        seats=reservation.seats,
        reason=reason,
    )


class ReservationCoordinator:
    def __init__(
        self,
        authority: Optional[PaymentAuthority] = None,
        notifier: Optional[Notifier] = None,
        reservation_timeout: timedelta = timedelta(minutes=settings.RESERVATION_TIMEOUT_MINUTES),
        advance_months: int = settings.ADVANCE_BOOKING_MONTHS,
        currency: str = settings.CURRENCY,
    ):
        self.authority = authority or PaymentAuthority()
        self.notifier = notifier or build_notifier()
        self.reservation_timeout = reservation_timeout
        self.advance_months = advance_months
        self.currency = currency

    def _notify(self, send: Callable[[Notice], None], notice: Notice) -> None:
        try:
            send(notice)
        except Exception:
            logger.exception("Failed to send %s notification for %s", send.__name__, notice.reference)

    # Opening a hold

    def _bookable_flight(self, session: Session, flight_id: int, now: datetime, lock: bool = False) -> Flight:
        stmt = select(Flight).where(Flight.id == flight_id).execution_options(populate_existing=True)
        if lock:
            stmt = stmt.with_for_update(of=Flight)
        flight = session.execute(stmt).scalar_one_or_none()
        if flight is None:
            raise NotFound(f"Flight {flight_id} not found")
        if flight.status not in BOOKABLE_STATUSES:
            raise InvalidFlightState(flight.flight_number, flight.status)
        if flight.departure_time > add_months(now, self.advance_months):
            raise AdvanceWindowExceeded(f"Cannot book flights more than {self.advance_months} month(s) in advance")
        return flight

    def open_reservation(
        self,
        session: Session,
        user: User,
        flight_id: int,
        seats: int,
        passenger: PassengerDetails,
        now: Optional[datetime] = None,
    ) -> Reservation:
        now = now or utcnow()
        if seats is None or seats < 1:
            raise ValidationFailed("Number of seats must be at least 1")
        if not passenger.name or not passenger.name.strip():
            raise ValidationFailed("Passenger name is required")
        if passenger.phone and not PHONE_PATTERN.match(passenger.phone.strip()):
            raise ValidationFailed("Invalid phone number format")

        # Quote and register the order with the authority before any row lock is taken.
        try:
            amount = round(self._bookable_flight(session, flight_id, now).price * seats, 2)
            reference = generate_reference(session, Reservation, "ORDER_", 10)
        except Exception:
            session.rollback()
            raise
        session.commit()
        order = self.authority.create_order(amount, self.currency, receipt=f"flight_booking_{reference}")

        try:
            # Fares are fixed at creation, so the quote still holds under the lock.
            flight = self._bookable_flight(session, flight_id, now, lock=True)
            inventory.reserve(session, flight.id, seats)
            reservation = Reservation(
                reference=reference,
                user_id=user.id,
                flight_id=flight.id,
                leg_number=flight.leg_number,
                passenger_name=passenger.name.strip(),
                passenger_phone=passenger.phone.strip() if passenger.phone else None,
                seats=seats,
                amount=amount,
                currency=self.currency,
                status=ReservationStatus.PENDING,
                authority_order_id=order.order_id,
                flight_number=flight.flight_number,
                airline=flight.airline,
                departure_airport_code=flight.departure_airport.code,
                arrival_airport_code=flight.arrival_airport.code,
                departure_time=flight.departure_time,
                arrival_time=flight.arrival_time,
                created_at=now,
            )
            session.add(reservation)
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info(
            "Reservation %s opened: %s seat(s) on %s, authority order %s",
            reservation.reference,
            seats,
            reservation.flight_number,
            reservation.authority_order_id,
        )
        return reservation

    # Settling a hold

    def _existing_booking(self, session: Session, reservation: Reservation) -> Booking:
        booking = session.execute(
            select(Booking).where(Booking.reservation_id == reservation.id)
        ).scalar_one_or_none()
        if booking is None:
            raise InvalidState(f"Reservation {reservation.reference} is completed but has no booking")
        return booking

    def _release_hold(
        self,
        session: Session,
        reservation: Reservation,
        target: ReservationStatus,
        reason: str,
        now: datetime,
        **values,
    ) -> bool:
        flight_id, leg_number, seats = reservation.flight_id, reservation.leg_number, reservation.seats
        won = _gate(
            session,
            reservation,
            ReservationStatus.PENDING,
            target,
            failure_reason=reason,
            resolved_at=now,
            **values,
        )
        if won:
            _release_if_current_leg(session, flight_id, leg_number, seats)
            session.commit()
        else:
            session.rollback()
        return won

    def confirm(
        self,
        session: Session,
        reference: str,
        proof: PaymentProof,
        now: Optional[datetime] = None,
    ) -> Confirmation:
        now = now or utcnow()
        reservation = self.get_reservation(session, reference)

        if reservation.status == ReservationStatus.COMPLETED:
            logger.info("Payment already processed: %s", reference)
            return Confirmation(self._existing_booking(session, reservation), created=False)
        if reservation.status != ReservationStatus.PENDING:
            raise AlreadyTerminal(reference, reservation.status)

        if not self.authority.verify(reservation.authority_order_id, proof):
            reason = "Invalid signature - payment verification failed"
            if self._release_hold(
                session,
                reservation,
                ReservationStatus.FAILED,
                reason,
                now,
                authority_payment_id=proof.payment_id,
            ):
                logger.warning("Payment verification failed. Order ID: %s, Payment ID: %s", reference, proof.payment_id)
                self._notify(self.notifier.payment_failed, _reservation_notice(reservation, reason))
            raise SignatureInvalid(f"Payment verification failed for {reference}")

        flight = session.execute(
            select(Flight).where(Flight.id == reservation.flight_id).with_for_update(of=Flight)
            .execution_options(populate_existing=True)
        ).scalar_one()
        if flight.leg_number != reservation.leg_number:
            self._release_hold(session, reservation, ReservationStatus.CANCELLED, "Leg closed before payment", now)
            session.refresh(reservation)
            if reservation.status == ReservationStatus.COMPLETED:
                return Confirmation(self._existing_booking(session, reservation), created=False)
            raise AlreadyTerminal(reference, reservation.status)

        won = _gate(
            session,
            reservation,
            ReservationStatus.PENDING,
            ReservationStatus.COMPLETED,
            authority_payment_id=proof.payment_id,
            authority_signature=proof.signature,
            payment_method=proof.method,
            resolved_at=now,
        )
        if not won:
            session.rollback()
            session.refresh(reservation)
            if reservation.status == ReservationStatus.COMPLETED:
                return Confirmation(self._existing_booking(session, reservation), created=False)
            raise AlreadyTerminal(reference, reservation.status)

        try:
            inventory.finalize(session, reservation.flight_id, reservation.seats)
            booking = Booking(
                reference=generate_reference(session, Booking, "FB", 9),
                user_id=reservation.user_id,
                flight_id=flight.id,
                reservation_id=reservation.id,
                leg_number=reservation.leg_number,
                passenger_name=reservation.passenger_name,
                passenger_email=reservation.user.email,
                passenger_phone=reservation.passenger_phone,
                seats_booked=reservation.seats,
                total_price=reservation.amount,
                status=BookingStatus.CONFIRMED,
                flight_number=flight.flight_number,
                airline=flight.airline,
                departure_airport_code=flight.departure_airport.code,
                arrival_airport_code=flight.arrival_airport.code,
                departure_time=flight.departure_time,
                arrival_time=flight.arrival_time,
                booking_date=now,
            )
            session.add(booking)
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info(
            "Payment verified successfully. Order ID: %s, Payment ID: %s, Booking Reference: %s",
            reference,
            proof.payment_id,
            booking.reference,
        )
        self._notify(self.notifier.booking_confirmed, _booking_notice(booking))
        return Confirmation(booking, created=True)

    def fail(self, session: Session, reference: str, reason: str, now: Optional[datetime] = None) -> Reservation:
        now = now or utcnow()
        reservation = self.get_reservation(session, reference)
        if reservation.status != ReservationStatus.PENDING:
            raise AlreadyTerminal(reference, reservation.status)
        if not self._release_hold(session, reservation, ReservationStatus.FAILED, reason, now):
            session.refresh(reservation)
            raise AlreadyTerminal(reference, reservation.status)

        logger.info("Payment marked as failed. Order ID: %s, Reason: %s", reference, reason)
        self._notify(self.notifier.payment_failed, _reservation_notice(reservation, reason))
        return reservation

    def _by_order(self, session: Session, authority_order_id: str) -> Optional[Reservation]:
        return session.execute(
            select(Reservation).where(Reservation.authority_order_id == authority_order_id)
        ).scalar_one_or_none()

    def confirm_by_order(
        self,
        session: Session,
        authority_order_id: str,
        proof: PaymentProof,
        now: Optional[datetime] = None,
    ) -> Confirmation:
        reservation = self._by_order(session, authority_order_id)
        if reservation is None:
            raise NotFound(f"No reservation for authority order {authority_order_id}")
        return self.confirm(session, reservation.reference, proof, now)

    def handle_webhook(self, session: Session, body: bytes, signature: Optional[str]) -> Optional[Confirmation]:
        if not signature or not hmac.compare_digest(signature, self.authority.webhook_signature(body)):
            raise SignatureInvalid("Invalid webhook signature")

        event = parse_webhook(body)
        logger.info("Processing webhook event: %s for order %s", event.event, event.order_id)

        reservation = self._by_order(session, event.order_id)
        if reservation is None:
            logger.warning("Reservation not found for authority order %s", event.order_id)
            return None

        if event.event == CAPTURED_EVENT:
            proof = WebhookProof(payment_id=event.payment_id or "", body=body, signature=signature)
            try:
                return self.confirm_by_order(session, event.order_id, proof)
            except AlreadyTerminal as exc:
                # Acknowledge so the gateway stops redelivering.
                logger.info("Ignoring capture webhook for %s: %s", reservation.reference, exc.message)
                return None

        if event.event == FAILED_EVENT:
            reason = f"Payment failed via webhook: {event.error_description or 'Payment failed'}"
            try:
                self.fail(session, reservation.reference, reason)
            except AlreadyTerminal as exc:
                logger.info("Ignoring failure webhook for %s: %s", reservation.reference, exc.message)
            return None

        logger.info("Unhandled webhook event type: %s", event.event)
        return None

    def expire_stale(self, session_factory=SessionLocal, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        cutoff = now - self.reservation_timeout
        with session_factory() as session:
            stale_ids = session.execute(
                select(Reservation.id).where(
                    Reservation.status == ReservationStatus.PENDING,
                    Reservation.created_at < cutoff,
                )
            ).scalars().all()

        expired = 0
        for reservation_id in stale_ids:
            with session_factory() as session:
                try:
                    reservation = session.get(Reservation, reservation_id)
                    if reservation is None:
                        continue
                    if self._release_hold(session, reservation, ReservationStatus.CANCELLED, "Payment timeout", now):
                        expired += 1
                        logger.info("Cancelled expired payment. Order ID: %s", reservation.reference)
                except Exception:
                    session.rollback()
                    logger.exception("Error expiring reservation %s; retrying next sweep", reservation_id)
        return expired

    # Booking ledger

    def _cancel_booking_row(self, session: Session, booking: Booking, reason: str, now: datetime) -> bool:
        flight_id, leg_number, seats = booking.flight_id, booking.leg_number, booking.seats_booked
        result = session.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == BookingStatus.CONFIRMED)
            .values(status=BookingStatus.CANCELLED, cancellation_reason=reason, cancelled_at=now)
            .execution_options(synchronize_session=False)
        )
        session.expire(booking)
        if result.rowcount != 1:
            return False
        _release_if_current_leg(session, flight_id, leg_number, seats)
        return True

    def cancel_booking(
        self,
        session: Session,
        reference: str,
        reason: str,
        user: Optional[User] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = now or utcnow()
        booking = self.get_booking(session, reference, user)
        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidState(f"Only confirmed bookings can be cancelled. Current status: {booking.status.value}")

        try:
            if not self._cancel_booking_row(session, booking, reason, now):
                session.rollback()
                session.refresh(booking)
                raise InvalidState(f"Booking {reference} is already {booking.status.value}")
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info("Booking %s cancelled: %s", reference, reason)
        self._notify(self.notifier.booking_cancelled, _booking_notice(booking, reason))
        return booking

    def refund(self, session: Session, reference: str, reason: str, now: Optional[datetime] = None) -> Reservation:
        now = now or utcnow()
        reservation = self.get_reservation(session, reference)
        if reservation.status != ReservationStatus.COMPLETED:
            raise InvalidState("Can only refund completed payments")

        booking = reservation.booking
        try:
            if not _gate(
                session,
                reservation,
                ReservationStatus.COMPLETED,
                ReservationStatus.REFUNDED,
                failure_reason=f"Admin refund: {reason}",
            ):
                session.rollback()
                session.refresh(reservation)
                raise AlreadyTerminal(reference, reservation.status)
            cancelled = booking is not None and self._cancel_booking_row(session, booking, f"Refunded: {reason}", now)
            session.commit()
        except Exception:
            session.rollback()
            raise

        logger.info("Admin processed refund for order: %s with reason: %s", reference, reason)
        if cancelled:
            self._notify(self.notifier.booking_cancelled, _booking_notice(booking, reason))
        return reservation

    # Read model

    def get_reservation(self, session: Session, reference: str, user: Optional[User] = None) -> Reservation:
        reservation = session.execute(
            select(Reservation)
            .where(Reservation.reference == reference)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if reservation is None or (user is not None and not user.is_admin and reservation.user_id != user.id):
            raise NotFound(f"Reservation {reference} not found")
        return reservation

    def list_reservations(
        self,
        session: Session,
        user: Optional[User] = None,
        status: Optional[ReservationStatus] = None,
    ) -> List[Reservation]:
        stmt = select(Reservation)
        if user is not None:
            stmt = stmt.where(Reservation.user_id == user.id)
        if status is not None:
            stmt = stmt.where(Reservation.status == status)
        return list(session.execute(stmt.order_by(Reservation.created_at.desc())).scalars())

    def get_booking(self, session: Session, reference: str, user: Optional[User] = None) -> Booking:
        booking = session.execute(
            select(Booking).where(Booking.reference == reference).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if booking is None or (user is not None and not user.is_admin and booking.user_id != user.id):
            raise NotFound(f"Booking {reference} not found")
        return booking

    def list_bookings(self, session: Session, user: Optional[User] = None) -> List[Booking]:
        stmt = select(Booking)
        if user is not None and not user.is_admin:
            stmt = stmt.where(Booking.user_id == user.id)
        return list(session.execute(stmt.order_by(Booking.booking_date.desc())).scalars())

    def upcoming_bookings(self, session: Session, user: User, now: Optional[datetime] = None) -> List[Booking]:
        """Confirmed bookings still to depart, soonest first."""
        now = now or utcnow()
        stmt = (
            select(Booking)
            .where(
                Booking.user_id == user.id,
                Booking.status == BookingStatus.CONFIRMED,
                Booking.departure_time > now,
            )
            .order_by(Booking.departure_time)
        )
        return list(session.execute(stmt).scalars())

    def past_bookings(self, session: Session, user: User, now: Optional[datetime] = None) -> List[Booking]:
        now = now or utcnow()
        stmt = (
            select(Booking)
            .where(Booking.user_id == user.id, Booking.departure_time <= now)
            .order_by(Booking.departure_time.desc())
        )
        return list(session.execute(stmt).scalars())

    def booking_statistics(self, session: Session, user: User, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        by_status = dict(
            session.execute(
                select(Booking.status, func.count(Booking.id))
                .where(Booking.user_id == user.id)
                .group_by(Booking.status)
            ).all()
        )
        return {
            "total_bookings": sum(by_status.values()),
            "upcoming_bookings": len(self.upcoming_bookings(session, user, now)),
            "past_bookings": len(self.past_bookings(session, user, now)),
            "confirmed_bookings": by_status.get(BookingStatus.CONFIRMED, 0),
            "cancelled_bookings": by_status.get(BookingStatus.CANCELLED, 0),
            "completed_bookings": by_status.get(BookingStatus.COMPLETED, 0),
        }

    def revenue_summary(self, session: Session) -> dict:
        rows = session.execute(
            select(Reservation.airline, func.sum(Reservation.amount), func.count(Reservation.id))
            .where(Reservation.status == ReservationStatus.COMPLETED)
            .group_by(Reservation.airline)
        ).all()
        by_airline = {airline: round(total or 0.0, 2) for airline, total, _ in rows}
        return {
            "total_revenue": round(sum(by_airline.values()), 2),
            "revenue_by_airline": by_airline,
            "total_completed_payments": sum(count for _, _, count in rows),
        }
