from fastapi import HTTPException, status

from src.utils.constants import SessionStatus


class ParkingException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An error occurred",
    ):
        super().__init__(status_code=status_code, detail=detail)


class NotFoundError(ParkingException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ValidationError(ParkingException):
    def __init__(self, detail: str = "Validation error"):
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class WindowOutOfRangeError(ParkingException):
    def __init__(self, detail: str = "Reservation time is outside the allowed booking window"):
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class CapacityExceededError(ParkingException):
    def __init__(
        self,
        detail: str = "Not enough available spots for the requested time window",
    ):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class NoSpotAvailableError(ParkingException):
    def __init__(self, detail: str = "No conflict-free parking spot is available"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class InvalidStateError(ParkingException):
    def __init__(self, current_status: SessionStatus | None, detail: str | None = None):
        self.current_status = current_status
        if detail is None:
            label = current_status.value if current_status else "unknown"
            detail = f"Operation not allowed for a session in status '{label}'"
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class AlreadyExtendedError(ParkingException):
    def __init__(self, detail: str = "Parking time can only be extended once per session"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ExtensionCappedError(ParkingException):
    def __init__(self, max_extension: int):
        self.max_extension = max_extension
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Can only extend by {max_extension} hour(s) due to upcoming reservations",
        )
