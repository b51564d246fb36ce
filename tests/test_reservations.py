import hashlib
import hmac
import json
import re
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from auth import hash_password
from conftest import NOW, WEBHOOK_SECRET
from errors import (
    AdvanceWindowExceeded,
    AlreadyTerminal,
    InsufficientInventory,
    InvalidState,
    NotFound,
    SignatureInvalid,
    ValidationFailed,
)
from models import Booking, BookingStatus, FlightStatus, Reservation, ReservationStatus, User
from notifications import Notifier
from payments import CheckoutProof, PaymentAuthority
from reservations import PassengerDetails, ReservationCoordinator, add_months

PASSENGER = PassengerDetails(name="Asha Rao", phone="+91-9876543210")


def _checkout(authority, reservation, payment_id="pay_001"):
    return CheckoutProof(payment_id, authority.checkout_signature(reservation.authority_order_id, payment_id))


def _webhook(reservation, event="payment.captured", payment_id="pay_hook", **entity):
    entity = {"id": payment_id, "order_id": reservation.authority_order_id, **entity}
    body = json.dumps({"event": event, "payload": {"payment": {"entity": entity}}}).encode()
    signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return body, signature


def _count(session, model):
    total = session.execute(select(func.count(model.id))).scalar()
    session.commit()
    return total


@pytest.fixture()
def other_user(session):
    other = User(email="someone@example.com", full_name="Other", password_hash=hash_password("secret"), role="user")
    session.add(other)
    session.commit()
    return other


class TestOpenReservation:
    def test_hold_takes_seats_and_snapshots_flight(self, session, make_flight, user, coordinator, seats_left):
        flight = make_flight(total_seats=100, price=4500.0)
        reservation = coordinator.open_reservation(session, user, flight.id, 3, PASSENGER, now=NOW)

        assert re.fullmatch(r"ORDER_\d{10}", reservation.reference)
        assert reservation.status == ReservationStatus.PENDING
        assert reservation.amount == 13500.0
        assert reservation.currency == "INR"
        assert reservation.leg_number == 1
        assert reservation.authority_order_id.startswith("order_")
        assert reservation.flight_number == flight.flight_number
        assert reservation.route == "DEL → BOM"
        assert reservation.passenger_phone == "+91-9876543210"
        assert seats_left(flight.id) == 97

    @pytest.mark.parametrize(
        "seats, passenger",
        [
            (0, PASSENGER),
            (2, PassengerDetails(name="   ")),
            (2, PassengerDetails(name="Asha Rao", phone="98-ab-12")),
        ],
    )
    def test_invalid_requests_are_rejected(self, session, make_flight, user, coordinator, seats_left, seats, passenger):
        flight = make_flight(total_seats=10)
        with pytest.raises(ValidationFailed):
            coordinator.open_reservation(session, user, flight.id, seats, passenger, now=NOW)
        assert seats_left(flight.id) == 10

    def test_unknown_flight(self, session, airports, user, coordinator):
        with pytest.raises(NotFound):
            coordinator.open_reservation(session, user, 12345, 1, PASSENGER, now=NOW)

    def test_advance_window(self, session, make_flight, user, coordinator, seats_left):
        flight = make_flight(total_seats=10, departure_time=NOW + timedelta(days=40))
        with pytest.raises(AdvanceWindowExceeded):
            coordinator.open_reservation(session, user, flight.id, 1, PASSENGER, now=NOW)
        assert seats_left(flight.id) == 10
        assert _count(session, Reservation) == 0

    def test_flying_flight_is_still_bookable(self, session, make_flight, user, coordinator):
        flight = make_flight()
        flight.status = FlightStatus.FLYING
        session.commit()
        reservation = coordinator.open_reservation(session, user, flight.id, 1, PASSENGER, now=NOW)
        assert reservation.status == ReservationStatus.PENDING

    def test_insufficient_inventory_leaves_no_reservation(self, session, make_flight, user, coordinator, seats_left):
        flight = make_flight(total_seats=5)
        with pytest.raises(InsufficientInventory):
            coordinator.open_reservation(session, user, flight.id, 6, PASSENGER, now=NOW)
        assert seats_left(flight.id) == 5
        assert _count(session, Reservation) == 0

    def test_concurrent_holds_never_oversell(self, session_factory, make_flight, user, coordinator, seats_left):
        flight = make_flight(total_seats=100)
        outcomes = []

        def worker():
            with session_factory() as own:
                try:
                    coordinator.open_reservation(own, user, flight.id, 60, PASSENGER, now=NOW)
                    outcomes.append("held")
                except InsufficientInventory:
                    outcomes.append("sold out")

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["held", "sold out"]
        assert seats_left(flight.id) == 40

    def test_authority_order_is_created_outside_the_transaction(self, session, make_flight, user, notifier):
        seen = []

        class WatchingAuthority(PaymentAuthority):
            def create_order(self, amount, currency, receipt):
                seen.append(session.in_transaction())
                return super().create_order(amount, currency, receipt)

        coordinator = ReservationCoordinator(authority=WatchingAuthority(), notifier=notifier)
        flight = make_flight(total_seats=10)

        reservation = coordinator.open_reservation(session, user, flight.id, 2, PASSENGER, now=NOW)

        assert seen == [False]
        assert reservation.status == ReservationStatus.PENDING


class TestConfirm:
    def test_valid_proof_creates_booking(self, session, make_flight, user, coordinator, authority, notifier, seats_left):
        flight = make_flight(total_seats=50)
        reservation = coordinator.open_reservation(session, user, flight.id, 2, PASSENGER, now=NOW)

        confirmation = coordinator.confirm(session, reservation.reference, _checkout(authority, reservation), now=NOW)
        booking = confirmation.booking

        assert confirmation.outcome == "CONFIRMED"
        assert re.fullmatch(r"FB\d{9}", booking.reference)
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.seats_booked == 2
        assert booking.total_price == reservation.amount
        assert booking.passenger_email == "traveller@example.com"
        assert booking.leg_number == 1
        assert coordinator.get_reservation(session, reservation.reference).status == ReservationStatus.COMPLETED
        assert reservation.payment_method == "checkout"
        assert seats_left(flight.id) == 48
        assert notifier.kinds() == ["booking_confirmed"]

    def test_second_confirm_is_idempotent(self, session, make_flight, user, coordinator, authority, notifier):
        flight = make_flight()
        reservation = coordinator.open_reservation(session, user, flight.id, 1, PASSENGER, now=NOW)
        proof = _checkout(authority, reservation)

        first = coordinator.confirm(session, reservation.reference, proof, now=NOW)
        second = coordinator.confirm(session, reservation.reference, proof, now=NOW)

        assert second.outcome == "ALREADY_FINALIZED"
        assert second.booking.reference == first.booking.reference
        assert _count(session, Booking) == 1
        assert notifier.kinds() == ["booking_confirmed"]

    def test_concurrent_confirms_write_one_booking(self, session, session_factory, make_flight, user, coordinator, authority, seats_left):
        flight = make_flight(total_seats=10)
        reservation = coordinator.open_reservation(session, user, flight.id, 4, PASSENGER, now=NOW)
        reference, proof = reservation.reference, _checkout(authority, reservation)
        outcomes = []

        def worker():
            with session_factory() as own:
                outcomes.append(coordinator.confirm(own, reference, proof, now=NOW).outcome)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["ALREADY_FINALIZED"] * 3 + ["CONFIRMED"]
        assert _count(session, Booking) == 1
        assert seats_left(flight.id) == 6

    def test_invalid_proof_fails_reservation_and_releases(self, session, make_flight, user, coordinator, authority, notifier, seats_left):
        flight = make_flight(total_seats=20)
        reservation = coordinator.open_reservation(session, user, flight.id, 5, PASSENGER, now=NOW)

        with pytest.raises(SignatureInvalid):
            coordinator.confirm(session, reservation.reference, CheckoutProof("pay_x", "forged"), now=NOW)

        failed = coordinator.get_reservation(session, reservation.reference)
        assert failed.status == ReservationStatus.FAILED
        assert failed.authority_payment_id == "pay_x"
        assert seats_left(flight.id) == 20
        assert notifier.kinds() == ["payment_failed"]

        with pytest.raises(AlreadyTerminal):
            coordinator.confirm(session, reservation.reference, _checkout(authority, reservation), now=NOW)
        assert seats_left(flight.id) == 20
        assert _count(session, Booking) == 0

    def test_confirm_after_leg_closed(self, session, make_flight, user, coordinator, authority, seats_left):
        flight = make_flight(total_seats=100)
        reservation = coordinator.open_reservation(session, user, flight.id, 4, PASSENGER, now=NOW)
        flight.leg_number = 2
        session.commit()

        with pytest.raises(AlreadyTerminal):
            coordinator.confirm(session, reservation.reference, _checkout(authority, reservation), now=NOW)

        assert coordinator.get_reservation(session, reservation.reference).status == ReservationStatus.CANCELLED
        # The closed leg's seats belong to the old cabin; nothing is handed back to the new one.
        assert seats_left(flight.id) == 96
        assert _count(session, Booking) == 0

    def test_notification_failure_does_not_undo_booking(self, session, make_flight, user, authority, seats_left):
        class BrokenNotifier(Notifier):
            def booking_confirmed(self, notice):
                raise ConnectionError("smtp down")

        coordinator = ReservationCoordinator(authority=authority, notifier=BrokenNotifier())
        flight = make_flight(total_seats=10)
        reservation = coordinator.open_reservation(session, user, flight.id, 1, PASSENGER, now=NOW)

        confirmation = coordinator.confirm(session, reservation.reference, _checkout(authority, reservation), now=NOW)

        assert confirmation.created
        assert confirmation.booking.status == BookingStatus.CONFIRMED
        assert seats_left(flight.id) == 9


class TestFailAndExpire:
    def test_fail_releases_seats_once(self, session, make_flight, user, coordinator, notifier, seats_left):
        flight = make_flight(total_seats=10)
        reservation = coordinator.open_reservation(session, user, flight.id, 3, PASSENGER, now=NOW)

        failed = coordinator.fail(session, reservation.reference, "Card declined", now=NOW)
        assert failed.status == ReservationStatus.FAILED
        assert failed.failure_reason == "Card declined"
        assert seats_left(flight.id) == 10

        with pytest.raises(AlreadyTerminal):
            coordinator.fail(session, reservation.reference, "Again", now=NOW)
        assert seats_left(flight.id) == 10
        assert notifier.kinds() == ["payment_failed"]

    def test_expire_stale_cancels_only_old_holds(self, session, session_factory, make_flight, user, coordinator, authority, seats_left):
        flight = make_flight(total_seats=30)
        stale = coordinator.open_reservation(session, user, flight.id, 5, PASSENGER, now=NOW)
        fresh = coordinator.open_reservation(session, user, flight.id, 2, PASSENGER, now=NOW + timedelta(minutes=10))

        expired = coordinator.expire_stale(session_factory, now=NOW + timedelta(minutes=16))

        assert expired == 1
        assert seats_left(flight.id) == 28
        assert coordinator.get_reservation(session, stale.reference).status == ReservationStatus.CANCELLED
        assert coordinator.get_reservation(session, fresh.reference).status == ReservationStatus.PENDING
        session.commit()

        with pytest.raises(AlreadyTerminal):
            coordinator.confirm(session, stale.reference, _checkout(authority, stale), now=NOW + timedelta(minutes=17))
        assert seats_left(flight.id) == 28
        assert coordinator.expire_stale(session_factory, now=NOW + timedelta(minutes=17)) == 0

    def test_confirm_and_sweep_race_settles_once(self, session, session_factory, make_flight, user, coordinator, authority, seats_left):
        flight = make_flight(total_seats=40)
        later = NOW + timedelta(minutes=16)
        confirmed = 0

        for _ in range(5):
            reservation = coordinator.open_reservation(session, user, flight.id, 3, PASSENGER, now=NOW)
            reference, proof = reservation.reference, _checkout(authority, reservation)
            start = threading.Barrier(2)
            errors = []

            def confirm():
                start.wait()
                with session_factory() as own:
                    try:
                        coordinator.confirm(own, reference, proof, now=later)
                    except AlreadyTerminal as exc:
                        errors.append(exc)

            def sweep():
                start.wait()
                coordinator.expire_stale(session_factory, now=later)

            threads = [threading.Thread(target=confirm), threading.Thread(target=sweep)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            settled = coordinator.get_reservation(session, reference)
            bookings = session.execute(
                select(func.count(Booking.id)).where(Booking.reservation_id == settled.id)
            ).scalar()
            session.commit()
            if settled.status == ReservationStatus.COMPLETED:
                assert bookings == 1 and not errors
                confirmed += 1
            else:
                assert settled.status == ReservationStatus.CANCELLED
                assert bookings == 0 and len(errors) == 1
            assert seats_left(flight.id) == 40 - 3 * confirmed


class TestBookingLedger:
    def _booked(self, session, flight, user, coordinator, authority, seats=2):
        reservation = coordinator.open_reservation(session, user, flight.id, seats, PASSENGER, now=NOW)
        return coordinator.confirm(session, reservation.reference, _checkout(authority, reservation), now=NOW).booking

    def test_cancel_booking_returns_seats(self, session, make_flight, user, coordinator, authority, notifier, seats_left):
        flight = make_flight(total_seats=10)
        booking = self._booked(session, flight, user, coordinator, authority, seats=3)
        assert seats_left(flight.id) == 7

        cancelled = coordinator.cancel_booking(session, booking.reference, "Change of plans", user, now=NOW)

        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.cancellation_reason == "Change of plans"
        assert cancelled.cancelled_at == NOW
        assert seats_left(flight.id) == 10
        assert notifier.kinds() == ["booking_confirmed", "booking_cancelled"]

        with pytest.raises(InvalidState):
            coordinator.cancel_booking(session, booking.reference, "Again", user, now=NOW)
        assert seats_left(flight.id) == 10

    def test_booking_is_private_to_its_owner(self, session, make_flight, user, other_user, coordinator, authority):
        flight = make_flight()
        booking = self._booked(session, flight, user, coordinator, authority)

        with pytest.raises(NotFound):
            coordinator.get_booking(session, booking.reference, other_user)
        with pytest.raises(NotFound):
            coordinator.cancel_booking(session, booking.reference, "Not mine", other_user, now=NOW)
        assert coordinator.list_bookings(session, other_user) == []
        assert [b.reference for b in coordinator.list_bookings(session, user)] == [booking.reference]

    def test_refund_cancels_booking_and_releases(self, session, make_flight, user, coordinator, authority, seats_left):
        flight = make_flight(total_seats=10)
        booking = self._booked(session, flight, user, coordinator, authority, seats=4)

        refunded = coordinator.refund(session, booking.reservation.reference, "Duplicate charge", now=NOW)

        assert refunded.status == ReservationStatus.REFUNDED
        assert coordinator.get_booking(session, booking.reference).status == BookingStatus.CANCELLED
        assert seats_left(flight.id) == 10
        with pytest.raises(InvalidState):
            coordinator.refund(session, booking.reservation.reference, "Twice", now=NOW)

    def test_refund_requires_completed_payment(self, session, make_flight, user, coordinator):
        flight = make_flight()
        reservation = coordinator.open_reservation(session, user, flight.id, 1, PASSENGER, now=NOW)
        with pytest.raises(InvalidState):
            coordinator.refund(session, reservation.reference, "Too early", now=NOW)

    def test_revenue_summary_counts_completed_payments(self, session, make_flight, user, coordinator, authority):
        first = make_flight(price=3000.0)
        second = make_flight(price=2500.0)
        self._booked(session, first, user, coordinator, authority, seats=2)
        self._booked(session, second, user, coordinator, authority, seats=1)
        coordinator.open_reservation(session, user, second.id, 3, PASSENGER, now=NOW)

        summary = coordinator.revenue_summary(session)

        assert summary["total_revenue"] == 8500.0
        assert summary["revenue_by_airline"] == {"Indigo": 8500.0}
        assert summary["total_completed_payments"] == 2

    def test_upcoming_past_and_statistics(self, session, make_flight, user, coordinator, authority):
        soon = make_flight(departure_time=NOW + timedelta(hours=3))
        later = make_flight(departure_time=NOW + timedelta(days=2))
        flown = self._booked(session, soon, user, coordinator, authority)
        ahead = self._booked(session, later, user, coordinator, authority)
        dropped = self._booked(session, later, user, coordinator, authority, seats=1)
        coordinator.cancel_booking(session, dropped.reference, "Plans changed", user, now=NOW)

        at = NOW + timedelta(hours=6)
        assert [b.reference for b in coordinator.upcoming_bookings(session, user, now=at)] == [ahead.reference]
        assert [b.reference for b in coordinator.past_bookings(session, user, now=at)] == [flown.reference]
        stats = coordinator.booking_statistics(session, user, now=at)
        session.commit()

        assert stats == {
            "total_bookings": 3,
            "upcoming_bookings": 1,
            "past_bookings": 1,
            "confirmed_bookings": 2,
            "cancelled_bookings": 1,
            "completed_bookings": 0,
        }


class TestWebhook:
    def test_captured_event_confirms(self, session, make_flight, user, coordinator, authority):
        flight = make_flight()
        reservation = coordinator.open_reservation(session, user, flight.id, 2, PASSENGER, now=NOW)
        body, signature = _webhook(reservation)

        confirmation = coordinator.handle_webhook(session, body, signature)

        assert confirmation.outcome == "CONFIRMED"
        stored = coordinator.get_reservation(session, reservation.reference)
        assert stored.payment_method == "webhook"
        assert stored.authority_payment_id == "pay_hook"

        again = coordinator.confirm(session, reservation.reference, _checkout(authority, reservation), now=NOW)
        assert again.outcome == "ALREADY_FINALIZED"
        assert again.booking.reference == confirmation.booking.reference

    def test_failed_event_releases_hold(self, session, make_flight, user, coordinator, seats_left):
        flight = make_flight(total_seats=10)
        reservation = coordinator.open_reservation(session, user, flight.id, 2, PASSENGER, now=NOW)
        body, signature = _webhook(reservation, event="payment.failed", error_description="Insufficient funds")

        assert coordinator.handle_webhook(session, body, signature) is None

        failed = coordinator.get_reservation(session, reservation.reference)
        assert failed.status == ReservationStatus.FAILED
        assert "Insufficient funds" in failed.failure_reason
        assert seats_left(flight.id) == 10

        # A redelivered failure is ignored.
        assert coordinator.handle_webhook(session, body, signature) is None

    def test_bad_signature_is_rejected(self, session, make_flight, user, coordinator, seats_left):
        flight = make_flight(total_seats=10)
        reservation = coordinator.open_reservation(session, user, flight.id, 2, PASSENGER, now=NOW)
        body, _ = _webhook(reservation)

        with pytest.raises(SignatureInvalid):
            coordinator.handle_webhook(session, body, "0" * 64)
        assert coordinator.get_reservation(session, reservation.reference).status == ReservationStatus.PENDING
        assert seats_left(flight.id) == 8

    def test_capture_after_timeout_is_acknowledged(self, session, session_factory, make_flight, user, coordinator, seats_left):
        flight = make_flight(total_seats=10)
        reservation = coordinator.open_reservation(session, user, flight.id, 3, PASSENGER, now=NOW)
        assert coordinator.expire_stale(session_factory, now=NOW + timedelta(minutes=16)) == 1
        body, signature = _webhook(reservation)

        assert coordinator.handle_webhook(session, body, signature) is None

        assert coordinator.get_reservation(session, reservation.reference).status == ReservationStatus.CANCELLED
        assert _count(session, Booking) == 0
        assert seats_left(flight.id) == 10

    def test_confirm_by_unknown_order(self, session, airports, coordinator):
        with pytest.raises(NotFound):
            coordinator.confirm_by_order(session, "order_missing", CheckoutProof("pay_1", "sig"))

    def test_unknown_order_is_ignored(self, session, make_flight, user, coordinator):
        flight = make_flight()
        reservation = coordinator.open_reservation(session, user, flight.id, 1, PASSENGER, now=NOW)
        body, signature = _webhook(reservation, order_id="order_unknown")

        assert coordinator.handle_webhook(session, body, signature) is None


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2025, 1, 31, 9, 30), 1) == datetime(2025, 2, 28, 9, 30)
    assert add_months(datetime(2024, 12, 15), 1) == datetime(2025, 1, 15)
