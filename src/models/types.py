from datetime import datetime

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

from src.utils.timeutils import as_utc


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored and returned as UTC on every backend."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)
