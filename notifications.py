"""Customer notifications sent after a reservation or booking settles."""

import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

BRAND = "SaiAirways"


@dataclass(frozen=True)
class Notice:
    to_email: str
    reference: str
    flight_number: str
    route: str
    amount: float
    passenger_name: Optional[str] = None
    seats: Optional[int] = None
    departure_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    reason: Optional[str] = None


class Notifier:
    def booking_confirmed(self, notice: Notice) -> None:
        raise NotImplementedError

    def payment_failed(self, notice: Notice) -> None:
        raise NotImplementedError

    def booking_cancelled(self, notice: Notice) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Used when no SMTP server is configured."""

    def booking_confirmed(self, notice: Notice) -> None:
        logger.info("Booking %s confirmed for %s on %s", notice.reference, notice.to_email, notice.flight_number)

    def payment_failed(self, notice: Notice) -> None:
        logger.info("Payment %s failed for %s: %s", notice.reference, notice.to_email, notice.reason)

    def booking_cancelled(self, notice: Notice) -> None:
        logger.info("Booking %s cancelled for %s", notice.reference, notice.to_email)


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


class EmailNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        sender: str = settings.MAIL_FROM,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender

    def _send(self, to_email: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to_email
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)
        logger.info("Sent '%s' to %s", subject, to_email)

    def booking_confirmed(self, notice: Notice) -> None:
        body = (
            f"Dear {notice.passenger_name or 'Customer'},\n\n"
            f"Your booking has been confirmed.\n\n"
            f"Booking reference: {notice.reference}\n"
            f"Flight: {notice.flight_number}\n"
            f"Route: {notice.route}\n"
            f"Departure: {_fmt(notice.departure_time)}\n"
            f"Arrival: {_fmt(notice.arrival_time)}\n"
            f"Seats: {notice.seats}\n"
            f"Amount paid: {notice.amount:.2f}\n\n"
            f"Thank you for flying with {BRAND}."
        )
        self._send(notice.to_email, f"{BRAND} - Booking Confirmation - {notice.reference}", body)

    def payment_failed(self, notice: Notice) -> None:
        body = (
            f"We could not confirm your payment for order {notice.reference}.\n\n"
            f"Flight: {notice.flight_number}\n"
            f"Route: {notice.route}\n"
            f"Amount: {notice.amount:.2f}\n"
            f"Reason: {notice.reason or 'Payment failed'}\n\n"
            f"Your seats have been released. Please contact support if the amount was debited."
        )
        self._send(notice.to_email, f"{BRAND} - Payment Failed - {notice.reference}", body)

    def booking_cancelled(self, notice: Notice) -> None:
        body = (
            f"Your booking {notice.reference} has been cancelled.\n\n"
            f"Flight: {notice.flight_number}\n"
            f"Route: {notice.route}\n"
            f"Amount: {notice.amount:.2f}\n"
            f"Reason: {notice.reason or '-'}\n"
        )
        self._send(notice.to_email, f"{BRAND} - Booking Cancelled - {notice.reference}", body)


def build_notifier() -> Notifier:
    if not settings.SMTP_HOST:
        return LogNotifier()
    return EmailNotifier(
        host=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        username=settings.SMTP_USERNAME,
        password=settings.SMTP_PASSWORD,
        use_tls=settings.SMTP_USE_TLS,
    )
