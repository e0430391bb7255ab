from src.models.session import ParkingSession
from src.models.spot import ParkingSpot
from src.models.user import User

__all__ = [
    "User",
    "ParkingSpot",
    "ParkingSession",
]
