from datetime import datetime
from typing import Any

from pydantic import Field

from src.schemas.common import BaseSchema
from src.utils.constants import NotificationType


class Notification(BaseSchema):
    type: NotificationType
    user_id: int
    session_id: int | None = None
    recipient_name: str | None = None
    recipient_email: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
