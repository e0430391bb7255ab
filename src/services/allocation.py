import logging
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Integer, func, insert, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from src.config import settings
from src.core.exceptions import (
    AlreadyExtendedError,
    CapacityExceededError,
    ExtensionCappedError,
    InvalidStateError,
    NoSpotAvailableError,
    NotFoundError,
    ValidationError,
    WindowOutOfRangeError,
)
from src.models.session import ParkingSession
from src.models.spot import ParkingSpot
from src.models.types import UTCDateTime
from src.schemas.session import (
    ActivationResponse,
    CancelResponse,
    ExitResponse,
    ExtensionResponse,
    ReservationCreateResponse,
    SessionListResponse,
    SessionResponse,
    WalkInResponse,
)
from src.schemas.user import CodeRecoveryResponse
from src.services import availability
from src.services import user as user_service
from src.services.notification import NotificationOutbox, build_notification
from src.utils.constants import ActivationOutcome, NotificationType, SessionStatus
from src.utils.timeutils import as_utc, utcnow, whole_minutes

logger = logging.getLogger(__name__)

_sessions = ParkingSession.__table__


def _resolve_now(now: datetime | None) -> datetime:
    return as_utc(now) if now else utcnow()


async def _get_session(db: AsyncSession, session_id: int) -> ParkingSession:
    result = await db.execute(
        select(ParkingSession)
        .where(ParkingSession.id == session_id)
        .options(selectinload(ParkingSession.user))
        .execution_options(populate_existing=True)
    )
    session = result.scalar_one_or_none()
    if not session:
        raise NotFoundError("Parking session not found")
    return session


async def _transition(db: AsyncSession, session_id: int, *conditions, **values) -> bool:
    """Apply ``values`` only if the row still matches ``conditions``."""
    result = await db.execute(
        update(ParkingSession)
        .where(ParkingSession.id == session_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def _sync_spot_occupancy(db: AsyncSession, spot_id: int) -> None:
    has_active = (
        select(ParkingSession.id)
        .where(
            ParkingSession.spot_id == spot_id,
            ParkingSession.status == SessionStatus.ACTIVE,
        )
        .exists()
    )
    await db.execute(
        update(ParkingSpot)
        .where(ParkingSpot.id == spot_id)
        .values(is_occupied=has_active)
        .execution_options(synchronize_session=False)
    )


async def _spot_held_by_another(db: AsyncSession, session: ParkingSession) -> bool:
    result = await db.execute(
        select(ParkingSession.id)
        .where(
            ParkingSession.spot_id == session.spot_id,
            ParkingSession.status == SessionStatus.ACTIVE,
            ParkingSession.id != session.id,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _insert_if_spot_free(
    db: AsyncSession,
    *,
    spot_id: int,
    user_id: int,
    now: datetime,
    start: datetime,
    end: datetime,
    status: SessionStatus,
    actual_start: datetime | None,
    is_preordered: bool,
    include_overstays: bool,
) -> int | None:
    """Insert a session on ``spot_id`` unless another holding session overlaps it.

    Returns the new session id, or ``None`` if the spot was taken meanwhile.
    """
    busy = availability.occupies_window if include_overstays else availability.overlaps_window
    clash = (
        select(ParkingSession.id)
        .where(
            ParkingSession.spot_id == spot_id,
            busy(start, end),
        )
        .correlate(None)
        .exists()
    )
    row = select(
        literal(spot_id, Integer),
        literal(user_id, Integer),
        literal(now, UTCDateTime()),
        literal(start, UTCDateTime()),
        literal(end, UTCDateTime()),
        literal(actual_start, UTCDateTime()),
        literal(is_preordered, Boolean),
        literal(False, Boolean),
        literal(False, Boolean),
        literal(status, _sessions.c.status.type),
    ).where(~clash)
    stmt = (
        insert(_sessions)
        .from_select(
            [
                "spot_id",
                "user_id",
                "placed_at",
                "estimated_start",
                "estimated_end",
                "actual_start",
                "is_preordered",
                "is_late",
                "is_extended",
                "status",
            ],
            row,
        )
        .returning(_sessions.c.id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _allocate(
    db: AsyncSession,
    *,
    user_id: int,
    now: datetime,
    start: datetime,
    end: datetime,
    status: SessionStatus,
    actual_start: datetime | None,
    is_preordered: bool,
    include_overstays: bool = False,
) -> int | None:
    for attempt in range(1, settings.allocation_retries + 1):
        spot_id = await availability.find_free_spot(
            db, start, end, include_overstays=include_overstays
        )
        if spot_id is None:
            return None
        session_id = await _insert_if_spot_free(
            db,
            spot_id=spot_id,
            user_id=user_id,
            now=now,
            start=start,
            end=end,
            status=status,
            actual_start=actual_start,
            is_preordered=is_preordered,
            include_overstays=include_overstays,
        )
        if session_id is not None:
            return session_id
        logger.info(
            f"Spot {spot_id} was taken concurrently, retrying "
            f"({attempt}/{settings.allocation_retries})"
        )
    return None


async def reserve(
    db: AsyncSession,
    outbox: NotificationOutbox,
    user_id: int,
    start: datetime,
    now: datetime | None = None,
) -> ReservationCreateResponse:
    now = _resolve_now(now)
    start = as_utc(start)

    if start < now + timedelta(hours=settings.min_reservation_lead_hours):
        raise WindowOutOfRangeError(
            f"Reservation must be at least {settings.min_reservation_lead_hours} hours in advance"
        )
    if start > now + timedelta(days=settings.max_reservation_days_ahead):
        raise WindowOutOfRangeError(
            f"Reservation cannot be more than {settings.max_reservation_days_ahead} days in advance"
        )

    await user_service.lookup_user(db, user_id)

    end = start + timedelta(hours=settings.standard_booking_hours)
    if not await availability.meets_threshold(db, start, end):
        raise CapacityExceededError(
            f"Not enough available spots for your requested time window "
            f"(need {availability.reservation_threshold()} of {settings.total_spots} available)"
        )

    session_id = await _allocate(
        db,
        user_id=user_id,
        now=now,
        start=start,
        end=end,
        status=SessionStatus.PREORDER,
        actual_start=None,
        is_preordered=True,
    )
    if session_id is None:
        raise NoSpotAvailableError("No available parking spots for the selected time window")
    await db.commit()

    session = await _get_session(db, session_id)
    logger.info(
        f"Reservation {session.id} created for user {user_id} at {start:%Y-%m-%d %H:%M} "
        f"on spot {session.spot_id}"
    )
    outbox.publish(
        build_notification(
            NotificationType.RESERVATION_CONFIRMED,
            session,
            confirmation_code=session.id,
            start_time=start.isoformat(),
        )
    )
    return ReservationCreateResponse(
        reservation=SessionResponse.model_validate(session),
        confirmation_code=session.id,
        spot_id=session.spot_id,
    )


async def walk_in(
    db: AsyncSession, user_id: int, now: datetime | None = None
) -> WalkInResponse:
    now = _resolve_now(now)
    await user_service.lookup_user(db, user_id)

    # Longest stay first, never below the minimum
    for hours in range(settings.walk_in_max_hours, settings.walk_in_min_hours - 1, -1):
        session_id = await _allocate(
            db,
            user_id=user_id,
            now=now,
            start=now,
            end=now + timedelta(hours=hours),
            status=SessionStatus.ACTIVE,
            actual_start=now,
            is_preordered=False,
            include_overstays=True,
        )
        if session_id is not None:
            break
    else:
        raise NoSpotAvailableError(
            f"No parking spots available for spontaneous parking "
            f"(minimum {settings.walk_in_min_hours} hours required)"
        )

    session = await _get_session(db, session_id)
    await _sync_spot_occupancy(db, session.spot_id)
    await db.commit()

    logger.info(
        f"Walk-in session {session.id} started for user {user_id} on spot {session.spot_id} "
        f"for {hours}h"
    )
    return WalkInResponse(
        session=SessionResponse.model_validate(session),
        parking_code=session.id,
        spot_id=session.spot_id,
        allocated_hours=hours,
        full_window_available=hours >= settings.walk_in_max_hours,
    )


async def forfeit(
    db: AsyncSession, outbox: NotificationOutbox, session_id: int
) -> bool:
    """Cancel a reservation whose holder missed the grace period.

    Returns ``False`` without side effects if the reservation is no longer a
    preorder, e.g. because it was activated or cancelled concurrently.
    """
    forfeited = await _transition(
        db,
        session_id,
        ParkingSession.status == SessionStatus.PREORDER,
        status=SessionStatus.CANCELLED,
        is_late=True,
    )
    if not forfeited:
        await db.rollback()
        return False

    session = await _get_session(db, session_id)
    await _sync_spot_occupancy(db, session.spot_id)
    await db.commit()

    logger.info(f"Reservation {session_id} forfeited (preorder -> cancelled) on spot {session.spot_id}")
    outbox.publish(
        build_notification(
            NotificationType.RESERVATION_CANCELLED, session, reason="late_arrival"
        )
    )
    return True


async def activate(
    db: AsyncSession,
    outbox: NotificationOutbox,
    reservation_id: int,
    now: datetime | None = None,
) -> ActivationResponse:
    now = _resolve_now(now)
    session = await _get_session(db, reservation_id)
    if session.status != SessionStatus.PREORDER:
        raise InvalidStateError(
            session.status,
            f"Reservation cannot be activated from status '{session.status.value}'",
        )

    minutes_late = whole_minutes(now - session.estimated_start)
    if minutes_late > settings.grace_period_minutes:
        if not await forfeit(db, outbox, reservation_id):
            current = await _get_session(db, reservation_id)
            raise InvalidStateError(current.status)
        session = await _get_session(db, reservation_id)
        return ActivationResponse(
            session=SessionResponse.model_validate(session),
            outcome=ActivationOutcome.FORFEITED,
            minutes_late=minutes_late,
            message=(
                f"Reservation cancelled due to late arrival (over "
                f"{settings.grace_period_minutes} minutes). Please make a new reservation."
            ),
        )

    spot_id = session.spot_id
    conditions = [ParkingSession.status == SessionStatus.PREORDER]
    if await _spot_held_by_another(db, session):
        # Previous car has not left yet; move to a spot that is free right now
        window_start = min(now, session.estimated_start)
        spot_id = await availability.find_free_spot(
            db, window_start, session.estimated_end, include_overstays=True
        )
        if spot_id is None:
            raise NoSpotAvailableError(
                "Your reserved spot is still occupied and no other spot is free"
            )
        other = aliased(ParkingSession)
        conditions.append(
            ~select(other.id)
            .where(
                other.spot_id == spot_id,
                availability.occupies_window(window_start, session.estimated_end, other),
            )
            .exists()
        )
        logger.info(
            f"Spot {session.spot_id} is still occupied, moving reservation {reservation_id} "
            f"to spot {spot_id}"
        )

    activated = await _transition(
        db,
        reservation_id,
        *conditions,
        spot_id=spot_id,
        status=SessionStatus.ACTIVE,
        actual_start=now,
        is_late=False,
    )
    if not activated:
        await db.rollback()
        current = await _get_session(db, reservation_id)
        if current.status == SessionStatus.PREORDER:
            raise NoSpotAvailableError(f"Spot {spot_id} was taken concurrently, please retry")
        raise InvalidStateError(
            current.status,
            f"Reservation cannot be activated from status '{current.status.value}'",
        )
    await _sync_spot_occupancy(db, spot_id)
    await db.commit()
    session = await _get_session(db, reservation_id)

    if minutes_late < 0:
        outcome = ActivationOutcome.EARLY
        greeting = f"Welcome! You arrived {abs(minutes_late)} minutes early."
    elif minutes_late == 0:
        outcome = ActivationOutcome.ON_TIME
        greeting = "Welcome! Perfect timing - right on schedule."
    else:
        outcome = ActivationOutcome.LATE_WITHIN_GRACE
        greeting = f"Welcome! You arrived {minutes_late} minutes late (within grace period)."

    logger.info(f"Reservation {reservation_id} activated (preorder -> active) on spot {session.spot_id}")
    return ActivationResponse(
        session=SessionResponse.model_validate(session),
        outcome=outcome,
        minutes_late=minutes_late,
        message=f"{greeting} Parking code: {session.id}, Spot: {session.spot_id}",
    )


async def extend(
    db: AsyncSession,
    outbox: NotificationOutbox,
    session_id: int,
    additional_hours: int,
    now: datetime | None = None,
) -> ExtensionResponse:
    now = _resolve_now(now)
    if not 1 <= additional_hours <= settings.max_extension_hours:
        raise ValidationError(
            f"Can only extend parking by 1-{settings.max_extension_hours} hours"
        )

    session = await _get_session(db, session_id)
    if session.status != SessionStatus.ACTIVE:
        raise InvalidStateError(
            session.status,
            f"Only active parking sessions can be extended (status '{session.status.value}')",
        )
    if session.is_extended:
        raise AlreadyExtendedError()

    current_end = session.estimated_end
    if now >= current_end:
        raise InvalidStateError(session.status, "Cannot extend expired parking session")
    if whole_minutes(current_end - now) > settings.extension_window_minutes:
        raise InvalidStateError(
            session.status,
            f"Extension only allowed in the last {settings.extension_window_minutes} "
            f"minutes of parking time",
        )

    max_extension = await availability.find_maximum_extension(
        db, session.spot_id, current_end, exclude_session_id=session.id
    )
    if max_extension < additional_hours:
        raise ExtensionCappedError(max_extension)

    new_end = current_end + timedelta(hours=additional_hours)
    extended = await _transition(
        db,
        session_id,
        ParkingSession.status == SessionStatus.ACTIVE,
        ParkingSession.is_extended.is_(False),
        estimated_end=new_end,
        is_extended=True,
    )
    if not extended:
        await db.rollback()
        current = await _get_session(db, session_id)
        if current.is_extended:
            raise AlreadyExtendedError()
        raise InvalidStateError(current.status)
    await db.commit()
    session = await _get_session(db, session_id)

    logger.info(f"Session {session_id} extended by {additional_hours}h until {new_end:%H:%M}")
    outbox.publish(
        build_notification(
            NotificationType.EXTENSION_CONFIRMED,
            session,
            additional_hours=additional_hours,
            new_end_time=new_end.isoformat(),
        )
    )
    return ExtensionResponse(
        session=SessionResponse.model_validate(session),
        additional_hours=additional_hours,
        new_estimated_end=new_end,
    )


async def exit_session(
    db: AsyncSession,
    outbox: NotificationOutbox,
    session_id: int,
    now: datetime | None = None,
) -> ExitResponse:
    now = _resolve_now(now)
    session = await _get_session(db, session_id)
    if session.status != SessionStatus.ACTIVE:
        raise InvalidStateError(
            session.status,
            f"Parking session is not active (status '{session.status.value}')",
        )

    is_late = now > session.estimated_end
    finished = await _transition(
        db,
        session_id,
        ParkingSession.status == SessionStatus.ACTIVE,
        status=SessionStatus.FINISHED,
        actual_end=now,
        is_late=is_late,
    )
    if not finished:
        await db.rollback()
        current = await _get_session(db, session_id)
        raise InvalidStateError(
            current.status,
            f"Parking session is not active (status '{current.status.value}')",
        )
    await _sync_spot_occupancy(db, session.spot_id)
    await db.commit()
    session = await _get_session(db, session_id)

    started = session.actual_start or session.estimated_start
    duration_minutes = whole_minutes(now - started)
    logger.info(
        f"Session {session_id} finished on spot {session.spot_id} after {duration_minutes} min"
        f"{' (late)' if is_late else ''}"
    )

    if is_late:
        outbox.publish(
            build_notification(
                NotificationType.LATE_PICKUP,
                session,
                minutes_overdue=whole_minutes(now - session.estimated_end),
                exited=True,
            )
        )
        message = "Exit successful. You were late - please exit on time in the future"
    else:
        message = "Exit successful. Thank you for parking with us!"

    return ExitResponse(
        session=SessionResponse.model_validate(session),
        is_late=is_late,
        duration_minutes=duration_minutes,
        message=message,
    )


def _cancel_refusal(session: ParkingSession) -> InvalidStateError:
    messages = {
        SessionStatus.ACTIVE: "Cannot cancel active parking session. Please exit properly.",
        SessionStatus.FINISHED: "This parking session is already completed.",
        SessionStatus.CANCELLED: "This reservation is already cancelled.",
    }
    return InvalidStateError(
        session.status,
        messages.get(session.status, "Invalid reservation status for cancellation."),
    )


async def cancel(
    db: AsyncSession, outbox: NotificationOutbox, session_id: int
) -> CancelResponse:
    session = await _get_session(db, session_id)
    if session.status != SessionStatus.PREORDER:
        raise _cancel_refusal(session)

    cancelled = await _transition(
        db,
        session_id,
        ParkingSession.status == SessionStatus.PREORDER,
        status=SessionStatus.CANCELLED,
    )
    if not cancelled:
        await db.rollback()
        raise _cancel_refusal(await _get_session(db, session_id))
    await _sync_spot_occupancy(db, session.spot_id)
    await db.commit()
    session = await _get_session(db, session_id)

    logger.info(f"Reservation {session_id} cancelled (preorder -> cancelled)")
    outbox.publish(
        build_notification(NotificationType.RESERVATION_CANCELLED, session, reason="user_request")
    )
    return CancelResponse(
        session=SessionResponse.model_validate(session),
        message="Reservation cancelled successfully",
    )


async def get_session(db: AsyncSession, session_id: int) -> SessionResponse:
    return SessionResponse.model_validate(await _get_session(db, session_id))


async def get_history(
    db: AsyncSession, user_id: int, page: int = 1, limit: int = 20
) -> SessionListResponse:
    await user_service.lookup_user(db, user_id)

    query = (
        select(ParkingSession)
        .where(ParkingSession.user_id == user_id)
        .options(selectinload(ParkingSession.user))
        .order_by(
            func.coalesce(ParkingSession.actual_start, ParkingSession.estimated_start).desc(),
            ParkingSession.id.desc(),
        )
    )
    count_query = select(func.count(ParkingSession.id)).where(ParkingSession.user_id == user_id)

    result = await db.execute(count_query)
    total = result.scalar() or 0

    offset = (page - 1) * limit
    result = await db.execute(query.offset(offset).limit(limit))
    sessions = result.scalars().all()

    return SessionListResponse(
        sessions=[SessionResponse.model_validate(s) for s in sessions],
        total=total,
        page=page,
        limit=limit,
    )


async def get_active_sessions(
    db: AsyncSession, page: int = 1, limit: int = 20
) -> SessionListResponse:
    query = (
        select(ParkingSession)
        .where(ParkingSession.status == SessionStatus.ACTIVE)
        .options(selectinload(ParkingSession.user))
        .order_by(ParkingSession.actual_start, ParkingSession.id)
    )
    count_query = select(func.count(ParkingSession.id)).where(
        ParkingSession.status == SessionStatus.ACTIVE
    )

    result = await db.execute(count_query)
    total = result.scalar() or 0

    offset = (page - 1) * limit
    result = await db.execute(query.offset(offset).limit(limit))
    sessions = result.scalars().all()

    return SessionListResponse(
        sessions=[SessionResponse.model_validate(s) for s in sessions],
        total=total,
        page=page,
        limit=limit,
    )


async def recover_parking_code(
    db: AsyncSession, outbox: NotificationOutbox, username: str
) -> CodeRecoveryResponse:
    user_id = await user_service.lookup_user_id(db, username)
    result = await db.execute(
        select(ParkingSession)
        .where(
            ParkingSession.user_id == user_id,
            ParkingSession.status == SessionStatus.ACTIVE,
        )
        .options(selectinload(ParkingSession.user))
        .order_by(ParkingSession.actual_start.desc())
        .limit(1)
    )
    session = result.scalar_one_or_none()
    if not session:
        raise NotFoundError("No active parking session found")

    outbox.publish(
        build_notification(
            NotificationType.PARKING_CODE_RECOVERY, session, parking_code=session.id
        )
    )
    return CodeRecoveryResponse(
        parking_code=session.id,
        spot_id=session.spot_id,
        message="Your parking code has been sent to your registered email",
    )
