from enum import Enum


class SessionStatus(str, Enum):
    PREORDER = "preorder"
    ACTIVE = "active"
    FINISHED = "finished"
    CANCELLED = "cancelled"


# Sessions in these states hold their spot for [estimated_start, estimated_end)
HOLDING_STATUSES = (SessionStatus.PREORDER, SessionStatus.ACTIVE)


class ActivationOutcome(str, Enum):
    EARLY = "early"
    ON_TIME = "on_time"
    LATE_WITHIN_GRACE = "late_within_grace"
    FORFEITED = "forfeited"


class NotificationType(str, Enum):
    RESERVATION_CONFIRMED = "reservation_confirmed"
    RESERVATION_CANCELLED = "reservation_cancelled"
    EXTENSION_CONFIRMED = "extension_confirmed"
    LATE_PICKUP = "late_pickup"
    PARKING_CODE_RECOVERY = "parking_code_recovery"
