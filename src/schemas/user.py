from src.schemas.common import BaseSchema, TimestampSchema


class UserResponse(TimestampSchema):
    id: int
    username: str
    full_name: str
    email: str | None = None
    phone: str | None = None


class UserLookupResponse(BaseSchema):
    id: int
    username: str


class CodeRecoveryResponse(BaseSchema):
    parking_code: int
    spot_id: int
    message: str
