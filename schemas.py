from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    email: str
    password: str = Field(..., min_length=4)
    full_name: Optional[str] = None


class UserLogin(BaseModel):
    email: str
    password: str


class UserOut(BaseModel):
    id: int
    email: str
    full_name: Optional[str]
    role: str


class AirportCreateRequest(BaseModel):
    code: str = Field(..., description="IATA code e.g. DEL")
    name: str
    city: Optional[str] = None
    country: Optional[str] = None


class AirportOut(BaseModel):
    id: int
    code: str
    name: str
    city: Optional[str]
    country: Optional[str]


class FlightOut(BaseModel):
    flight_id: int
    flight_number: str
    airline: str
    origin: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    price: float
    seats_left: int
    seats_total: int
    status: str
    leg_number: int


class FlightSearchResponse(BaseModel):
    total: int
    flights: List[FlightOut] = Field(default_factory=list)


class FlightCreateRequest(BaseModel):
    flight_number: str = Field(..., min_length=2)
    airline: str
    departure_airport: str = Field(..., description="Airport code e.g. DEL")
    arrival_airport: str = Field(..., description="Airport code e.g. BOM")
    departure_time: datetime
    price: float = Field(..., gt=0)
    total_seats: int = Field(..., ge=1)
    flight_duration_hours: float = Field(default=2.5, gt=0)
    ground_time_hours: float = Field(default=1.0, ge=0)


class FlightCancelRequest(BaseModel):
    reason: str = "Operational reasons"


class ReservationRequest(BaseModel):
    flight_id: int
    seats: int = Field(default=1, ge=1)
    passenger_name: str
    passenger_phone: Optional[str] = None


class ReservationOut(BaseModel):
    reference: str
    status: str
    flight_id: int
    flight_number: str
    route: str
    departure_time: datetime
    arrival_time: datetime
    seats: int
    amount: float
    currency: str
    passenger_name: str
    authority_order_id: str
    authority_key_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime]
    resolved_at: Optional[datetime] = None


class PaymentVerificationRequest(BaseModel):
    payment_id: str
    signature: str


class BookingOut(BaseModel):
    reference: str
    status: str
    flight_number: str
    airline: str
    route: str
    departure_time: datetime
    arrival_time: datetime
    passenger_name: str
    passenger_email: str
    passenger_phone: Optional[str]
    seats_booked: int
    total_price: float
    booking_date: Optional[datetime]
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None


class PaymentVerificationResponse(BaseModel):
    success: bool
    message: str
    status: str
    booking: Optional[BookingOut] = None


class CancellationRequest(BaseModel):
    reason: str = "Cancelled by customer"


class RefundRequest(BaseModel):
    reason: str


class BookingHistoryResponse(BaseModel):
    count: int
    bookings: List[BookingOut] = Field(default_factory=list)


class TickResponse(BaseModel):
    examined: int
    updated: int
    failed: int
    triggered_at: datetime


class CleanupResponse(BaseModel):
    expired: int
    triggered_at: datetime


class CycleStat(BaseModel):
    flight_id: int
    flight_number: str
    status: str
    cycle_count: int
    leg_number: int
    last_cycle_reset: Optional[datetime]
    route: str
    is_route_reversed: bool
    departure_time: datetime


class RevenueSummary(BaseModel):
    total_revenue: float
    revenue_by_airline: Dict[str, float]
    total_completed_payments: int


class CycleInfo(CycleStat):
    summary: str


class BookingStatistics(BaseModel):
    total_bookings: int
    upcoming_bookings: int
    past_bookings: int
    confirmed_bookings: int
    cancelled_bookings: int
    completed_bookings: int
