from src.services import (
    allocation,
    availability,
    expiry,
    notification,
    overstay,
    report,
    user,
)

__all__ = [
    "allocation",
    "availability",
    "expiry",
    "notification",
    "overstay",
    "report",
    "user",
]
