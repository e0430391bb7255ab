from sqlalchemy import Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import BaseModel


class ParkingSpot(BaseModel):
    __tablename__ = "parking_spots"

    # Assigned once when the pool is seeded; never autoincremented
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    is_occupied: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    # Relationships
    sessions: Mapped[list["ParkingSession"]] = relationship(back_populates="spot")  # noqa: F821
