from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models.base import BaseModel
from src.models.types import UTCDateTime
from src.utils.constants import SessionStatus


class ParkingSession(BaseModel):
    __tablename__ = "parking_sessions"
    __table_args__ = (
        Index("ix_parking_sessions_status_start", "status", "estimated_start"),
        Index("ix_parking_sessions_status_end", "status", "estimated_end"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    spot_id: Mapped[int] = mapped_column(ForeignKey("parking_spots.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    placed_at: Mapped[datetime] = mapped_column(UTCDateTime())
    estimated_start: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    estimated_end: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    actual_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    actual_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    is_preordered: Mapped[bool] = mapped_column(Boolean, default=False)
    is_late: Mapped[bool] = mapped_column(Boolean, default=False)
    is_extended: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[SessionStatus] = mapped_column(default=SessionStatus.PREORDER)

    # Relationships
    spot: Mapped["ParkingSpot"] = relationship(back_populates="sessions")  # noqa: F821
    user: Mapped["User"] = relationship(back_populates="sessions")  # noqa: F821
