import logging
from contextlib import asynccontextmanager
from datetime import datetime, time
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session, aliased

import auth
import lifecycle
from config import configure_logging, settings
from database import SessionLocal, init_db
from errors import BookingError, NotFound
from models import Airport, Booking, Flight, Reservation, ReservationStatus, User, utcnow
from payments import CheckoutProof
from provisioning import airport_by_code, create_airport, create_flight, list_airports, provision
from reservations import BOOKABLE_STATUSES, PassengerDetails, ReservationCoordinator, add_months
from scheduler import Scheduler
from schemas import (
    AirportCreateRequest,
    AirportOut,
    BookingHistoryResponse,
    BookingOut,
    BookingStatistics,
    CancellationRequest,
    CleanupResponse,
    CycleInfo,
    CycleStat,
    FlightCancelRequest,
    FlightCreateRequest,
    FlightOut,
    FlightSearchResponse,
    PaymentVerificationRequest,
    PaymentVerificationResponse,
    RefundRequest,
    ReservationOut,
    ReservationRequest,
    RevenueSummary,
    TickResponse,
    UserCreate,
    UserLogin,
    UserOut,
)

configure_logging()
logger = logging.getLogger(__name__)

coordinator = ReservationCoordinator()
scheduler = Scheduler(coordinator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    with SessionLocal() as session:
        provision(session)
    if settings.ENABLE_SCHEDULER:
        scheduler.start()
    yield
    await scheduler.stop()


app = FastAPI(title="Flight Network - Reservations", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_coordinator() -> ReservationCoordinator:
    return coordinator


def get_session_factory():
    return SessionLocal


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


#
# Serialization
#

def serialize_user(user: User) -> UserOut:
    return UserOut(id=user.id, email=user.email, full_name=user.full_name, role=user.role)


def serialize_airport(airport: Airport) -> AirportOut:
    return AirportOut(id=airport.id, code=airport.code, name=airport.name, city=airport.city, country=airport.country)


def serialize_flight(flight: Flight) -> FlightOut:
    return FlightOut(
        flight_id=flight.id,
        flight_number=flight.flight_number,
        airline=flight.airline,
        origin=flight.departure_airport.code,
        destination=flight.arrival_airport.code,
        departure_time=flight.departure_time,
        arrival_time=flight.arrival_time,
        price=flight.price,
        seats_left=flight.available_seats,
        seats_total=flight.total_seats,
        status=flight.status.value,
        leg_number=flight.leg_number,
    )


def serialize_reservation(reservation: Reservation, key_id: Optional[str] = None) -> ReservationOut:
    return ReservationOut(
        reference=reservation.reference,
        status=reservation.status.value,
        flight_id=reservation.flight_id,
        flight_number=reservation.flight_number,
        route=reservation.route,
        departure_time=reservation.departure_time,
        arrival_time=reservation.arrival_time,
        seats=reservation.seats,
        amount=reservation.amount,
        currency=reservation.currency,
        passenger_name=reservation.passenger_name,
        authority_order_id=reservation.authority_order_id,
        authority_key_id=key_id,
        failure_reason=reservation.failure_reason,
        created_at=reservation.created_at,
        resolved_at=reservation.resolved_at,
    )


def serialize_booking(booking: Booking) -> BookingOut:
    return BookingOut(
        reference=booking.reference,
        status=booking.status.value,
        flight_number=booking.flight_number,
        airline=booking.airline,
        route=booking.route,
        departure_time=booking.departure_time,
        arrival_time=booking.arrival_time,
        passenger_name=booking.passenger_name,
        passenger_email=booking.passenger_email,
        passenger_phone=booking.passenger_phone,
        seats_booked=booking.seats_booked,
        total_price=booking.total_price,
        booking_date=booking.booking_date,
        cancellation_reason=booking.cancellation_reason,
        cancelled_at=booking.cancelled_at,
    )


#
# Authentication Endpoints
#

@app.post("/api/signup", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def signup(user: UserCreate, response: Response, db: Session = Depends(auth.get_db)):
    email = user.email.strip().lower()
    existing = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    new_user = User(
        email=email,
        full_name=user.full_name,
        password_hash=auth.hash_password(user.password),
        role="user",
    )
    db.add(new_user)
    db.commit()
    logger.info("Registered user %s", email)

    auth.login_user(response, new_user)
    return serialize_user(new_user)


@app.post("/api/login")
def login(credentials: UserLogin, response: Response, db: Session = Depends(auth.get_db)):
    email = credentials.email.strip().lower()
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user or not auth.verify_password(credentials.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
        )
    auth.login_user(response, user)
    return {"message": "Login successful"}


@app.post("/api/logout")
def logout(response: Response):
    auth.logout_user(response)
    return {"message": "Logout successful"}


@app.get("/api/users/me", response_model=UserOut)
def read_users_me(current_user: User = Depends(auth.require_user)):
    return serialize_user(current_user)


#
# Flight Endpoints
#

@app.get("/api/airports", response_model=List[AirportOut])
def airports(db: Session = Depends(auth.get_db)):
    return [serialize_airport(airport) for airport in list_airports(db)]


@app.get("/api/airports/{code}", response_model=AirportOut)
def airport_detail(code: str, db: Session = Depends(auth.get_db)):
    return serialize_airport(airport_by_code(db, code))


@app.get("/api/flights/search", response_model=FlightSearchResponse)
def search_flights(
    origin: Optional[str] = Query(None, description="Origin airport code e.g. DEL"),
    destination: Optional[str] = Query(None, description="Destination airport code e.g. BOM"),
    date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    db: Session = Depends(auth.get_db),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    now = utcnow()
    departure = aliased(Airport)
    arrival = aliased(Airport)
    stmt = (
        select(Flight)
        .join(departure, Flight.departure_airport_id == departure.id)
        .join(arrival, Flight.arrival_airport_id == arrival.id)
        .where(
            Flight.status.in_(BOOKABLE_STATUSES),
            Flight.departure_time <= add_months(now, service.advance_months),
        )
    )
    if origin:
        stmt = stmt.where(departure.code == origin.upper())
    if destination:
        stmt = stmt.where(arrival.code == destination.upper())
    if date:
        try:
            day = datetime.strptime(date, "%Y-%m-%d").date()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid date format, expected YYYY-MM-DD")
        stmt = stmt.where(
            Flight.departure_time >= datetime.combine(day, time.min),
            Flight.departure_time <= datetime.combine(day, time.max),
        )

    flights = db.execute(stmt.order_by(Flight.departure_time)).scalars().all()
    results = [serialize_flight(flight) for flight in flights]
    return FlightSearchResponse(total=len(results), flights=results)


@app.get("/api/flights/{flight_id}", response_model=FlightOut)
def flight_detail(flight_id: int, db: Session = Depends(auth.get_db)):
    flight = db.get(Flight, flight_id)
    if not flight:
        raise NotFound(f"Flight {flight_id} not found")
    return serialize_flight(flight)


#
# Reservation and Payment Endpoints
#

@app.post("/api/reservations", response_model=ReservationOut, status_code=status.HTTP_201_CREATED)
def open_reservation(
    payload: ReservationRequest,
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    reservation = service.open_reservation(
        db,
        current_user,
        payload.flight_id,
        payload.seats,
        PassengerDetails(name=payload.passenger_name, phone=payload.passenger_phone),
    )
    return serialize_reservation(reservation, service.authority.key_id)


@app.get("/api/reservations", response_model=List[ReservationOut])
def my_reservations(
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    return [serialize_reservation(r, service.authority.key_id) for r in service.list_reservations(db, current_user)]


@app.get("/api/reservations/{reference}", response_model=ReservationOut)
def reservation_detail(
    reference: str,
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    reservation = service.get_reservation(db, reference, current_user)
    return serialize_reservation(reservation, service.authority.key_id)


@app.post("/api/reservations/{reference}/verify", response_model=PaymentVerificationResponse)
def verify_payment(
    reference: str,
    payload: PaymentVerificationRequest,
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    service.get_reservation(db, reference, current_user)
    confirmation = service.confirm(
        db, reference, CheckoutProof(payment_id=payload.payment_id, signature=payload.signature)
    )
    message = "Payment verified successfully" if confirmation.created else "Payment already processed"
    return PaymentVerificationResponse(
        success=True,
        message=message,
        status=confirmation.outcome,
        booking=serialize_booking(confirmation.booking),
    )


@app.post("/api/webhooks/payment")
async def payment_webhook(
    request: Request,
    db: Session = Depends(auth.get_db),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")
    # Settlement blocks on the database write lock; keep it off the event loop.
    confirmation = await run_in_threadpool(service.handle_webhook, db, body, signature)
    response = {"status": "processed"}
    if confirmation is not None:
        response["outcome"] = confirmation.outcome
        response["booking_reference"] = confirmation.booking.reference
    return response


#
# Booking Endpoints
#

@app.get("/api/bookings", response_model=BookingHistoryResponse)
def list_bookings(
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    bookings = [serialize_booking(booking) for booking in service.list_bookings(db, current_user)]
    return BookingHistoryResponse(count=len(bookings), bookings=bookings)


@app.get("/api/bookings/upcoming", response_model=BookingHistoryResponse)
def upcoming_bookings(
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    bookings = [serialize_booking(booking) for booking in service.upcoming_bookings(db, current_user)]
    return BookingHistoryResponse(count=len(bookings), bookings=bookings)


@app.get("/api/bookings/past", response_model=BookingHistoryResponse)
def past_bookings(
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    bookings = [serialize_booking(booking) for booking in service.past_bookings(db, current_user)]
    return BookingHistoryResponse(count=len(bookings), bookings=bookings)


@app.get("/api/bookings/statistics", response_model=BookingStatistics)
def booking_statistics(
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    return BookingStatistics(**service.booking_statistics(db, current_user))


@app.get("/api/bookings/{reference}", response_model=BookingOut)
def booking_detail(
    reference: str,
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    return serialize_booking(service.get_booking(db, reference, current_user))


@app.post("/api/bookings/{reference}/cancel", response_model=BookingOut)
def cancel_booking(
    reference: str,
    payload: Optional[CancellationRequest] = None,
    db: Session = Depends(auth.get_db),
    current_user: User = Depends(auth.require_user),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    reason = payload.reason if payload else CancellationRequest().reason
    booking = service.cancel_booking(db, reference, reason, current_user)
    return serialize_booking(booking)


#
# Admin Endpoints
#

@app.post("/api/admin/airports", response_model=AirportOut, status_code=status.HTTP_201_CREATED)
def admin_create_airport(
    payload: AirportCreateRequest,
    db: Session = Depends(auth.get_db),
    admin: User = Depends(auth.require_admin),
):
    airport = create_airport(db, payload.code, payload.name, payload.city, payload.country)
    return serialize_airport(airport)


@app.post("/api/admin/flights", response_model=FlightOut, status_code=status.HTTP_201_CREATED)
def admin_create_flight(
    payload: FlightCreateRequest,
    db: Session = Depends(auth.get_db),
    admin: User = Depends(auth.require_admin),
):
    flight = create_flight(
        db,
        flight_number=payload.flight_number,
        airline=payload.airline,
        departure_code=payload.departure_airport,
        arrival_code=payload.arrival_airport,
        departure_time=payload.departure_time,
        price=payload.price,
        total_seats=payload.total_seats,
        flight_duration_hours=payload.flight_duration_hours,
        ground_time_hours=payload.ground_time_hours,
    )
    return serialize_flight(flight)


@app.post("/api/admin/flights/{flight_id}/cancel", response_model=FlightOut)
def admin_cancel_flight(
    flight_id: int,
    payload: FlightCancelRequest,
    db: Session = Depends(auth.get_db),
    admin: User = Depends(auth.require_admin),
):
    flight = lifecycle.cancel_flight(db, flight_id, payload.reason)
    logger.info("Admin %s cancelled flight %s", admin.email, flight.flight_number)
    return serialize_flight(flight)


@app.get("/api/admin/flights/stats", response_model=List[CycleStat])
def admin_cycle_stats(db: Session = Depends(auth.get_db), admin: User = Depends(auth.require_admin)):
    return [CycleStat(**row) for row in lifecycle.cycle_stats(db)]


@app.get("/api/admin/flights/{flight_id}/cycle-info", response_model=CycleInfo)
def admin_cycle_info(flight_id: int, db: Session = Depends(auth.get_db), admin: User = Depends(auth.require_admin)):
    return CycleInfo(**lifecycle.cycle_info(db, flight_id))


@app.post("/api/admin/flights/{flight_id}/reset-cycles", response_model=CycleInfo)
def admin_reset_cycles(flight_id: int, db: Session = Depends(auth.get_db), admin: User = Depends(auth.require_admin)):
    flight = lifecycle.reset_cycles(db, flight_id)
    logger.info("Admin %s reset cycles of flight %s", admin.email, flight.flight_number)
    return CycleInfo(**lifecycle.cycle_info(db, flight_id))


@app.get("/api/admin/reservations", response_model=List[ReservationOut])
def admin_list_reservations(
    status_filter: Optional[ReservationStatus] = Query(None, alias="status"),
    db: Session = Depends(auth.get_db),
    admin: User = Depends(auth.require_admin),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    return [serialize_reservation(r) for r in service.list_reservations(db, status=status_filter)]


@app.post("/api/admin/reservations/{reference}/refund", response_model=ReservationOut)
def admin_refund(
    reference: str,
    payload: RefundRequest,
    db: Session = Depends(auth.get_db),
    admin: User = Depends(auth.require_admin),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    reservation = service.refund(db, reference, payload.reason)
    return serialize_reservation(reservation)


@app.get("/api/admin/revenue", response_model=RevenueSummary)
def admin_revenue(
    db: Session = Depends(auth.get_db),
    admin: User = Depends(auth.require_admin),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    return RevenueSummary(**service.revenue_summary(db))


@app.post("/api/admin/lifecycle/run", response_model=TickResponse)
def admin_run_lifecycle(
    db: Session = Depends(auth.get_db),
    admin: User = Depends(auth.require_admin),
    session_factory=Depends(get_session_factory),
):
    admin_email = admin.email
    # The tick opens its own sessions; end this one's transaction so it holds no lock.
    db.rollback()
    now = utcnow()
    summary = lifecycle.run_lifecycle_tick(session_factory, now=now)
    logger.info("Manual flight status update triggered by %s", admin_email)
    return TickResponse(examined=summary.examined, updated=summary.updated, failed=summary.failed, triggered_at=now)


@app.post("/api/admin/cleanup/run", response_model=CleanupResponse)
def admin_run_cleanup(
    db: Session = Depends(auth.get_db),
    admin: User = Depends(auth.require_admin),
    session_factory=Depends(get_session_factory),
    service: ReservationCoordinator = Depends(get_coordinator),
):
    admin_email = admin.email
    db.rollback()
    now = utcnow()
    expired = service.expire_stale(session_factory, now=now)
    logger.info("Manual reservation cleanup triggered by %s", admin_email)
    return CleanupResponse(expired=expired, triggered_at=now)


@app.get("/health")
def health(db: Session = Depends(auth.get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "scheduler_running": scheduler.running}
