"""Failure taxonomy surfaced by the booking core."""


class BookingError(Exception):
    status_code = 400
    code = "BOOKING_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(BookingError):
    status_code = 404
    code = "NOT_FOUND"


class ValidationFailed(BookingError):
    code = "VALIDATION_FAILED"


class InvalidState(BookingError):
    code = "INVALID_STATE"


class InvalidFlightState(InvalidState):
    code = "INVALID_FLIGHT_STATE"

    def __init__(self, flight_number: str, status):
        self.status = status
        super().__init__(f"Flight {flight_number} is not available for booking. Status: {status.value}")


class AdvanceWindowExceeded(BookingError):
    code = "ADVANCE_WINDOW_EXCEEDED"


class InsufficientInventory(BookingError):
    status_code = 409
    code = "INSUFFICIENT_INVENTORY"

    def __init__(self, flight_id: int, requested: int):
        self.flight_id = flight_id
        self.requested = requested
        super().__init__(f"Not enough seats available on flight {flight_id} for {requested} seat(s)")


class SignatureInvalid(BookingError):
    status_code = 402
    code = "SIGNATURE_INVALID"


class AlreadyTerminal(BookingError):
    status_code = 409
    code = "ALREADY_TERMINAL"

    def __init__(self, reference: str, status):
        self.reference = reference
        self.status = status
        super().__init__(f"Reservation {reference} is already {status.value}")
