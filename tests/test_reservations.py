import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.core.exceptions import (
    CapacityExceededError,
    InvalidStateError,
    NoSpotAvailableError,
    NotFoundError,
    WindowOutOfRangeError,
)
from src.models.session import ParkingSession
from src.models.spot import ParkingSpot
from src.services import allocation
from src.utils.constants import ActivationOutcome, NotificationType, SessionStatus

NOW = datetime(2026, 3, 10, 10, 0, tzinfo=UTC)
START = NOW + timedelta(days=2)


async def reload(db: AsyncSession, session_id: int) -> ParkingSession:
    return await db.get(ParkingSession, session_id, populate_existing=True)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "start",
    [NOW + timedelta(hours=23, minutes=59), NOW + timedelta(days=7, minutes=1), NOW],
)
async def test_reserve_outside_booking_window(db_session, outbox, users, start):
    with pytest.raises(WindowOutOfRangeError):
        await allocation.reserve(db_session, outbox, users[0].id, start, now=NOW)
    assert outbox.pending == 0


@pytest.mark.asyncio
async def test_reserve_unknown_user(db_session, outbox, users):
    with pytest.raises(NotFoundError):
        await allocation.reserve(db_session, outbox, 999, START, now=NOW)


@pytest.mark.asyncio
async def test_reserve_creates_preorder(db_session, outbox, users):
    response = await allocation.reserve(db_session, outbox, users[0].id, START, now=NOW)

    reservation = response.reservation
    assert reservation.status == SessionStatus.PREORDER
    assert reservation.is_preordered is True
    assert reservation.estimated_start == START
    assert reservation.estimated_end == START + timedelta(hours=4)
    assert reservation.placed_at == NOW
    assert response.spot_id == 1
    assert response.confirmation_code == reservation.id

    # A reservation does not occupy the spot until activation
    spot = await db_session.get(ParkingSpot, 1, populate_existing=True)
    assert spot.is_occupied is False

    assert outbox.pending == 1
    await outbox.dispatch_pending()
    [notification] = outbox.sender.sent
    assert notification.type == NotificationType.RESERVATION_CONFIRMED
    assert notification.recipient_email == "alice@example.com"
    assert notification.details["spot_id"] == 1


@pytest.mark.asyncio
async def test_reserve_accepts_exactly_the_threshold(db_session, outbox, users, make_session):
    for spot_id in range(1, 61):
        await make_session(spot_id=spot_id, start=START)

    response = await allocation.reserve(db_session, outbox, users[1].id, START, now=NOW)
    assert response.spot_id == 61


@pytest.mark.asyncio
async def test_reserve_rejects_below_threshold(db_session, outbox, users, make_session):
    for spot_id in range(1, 62):
        await make_session(spot_id=spot_id, start=START)

    with pytest.raises(CapacityExceededError):
        await allocation.reserve(db_session, outbox, users[1].id, START, now=NOW)

    result = await db_session.execute(select(ParkingSession))
    assert len(result.scalars().all()) == 61


@pytest.mark.asyncio
async def test_consecutive_reservations_get_distinct_spots(db_session, outbox, users):
    first = await allocation.reserve(db_session, outbox, users[0].id, START, now=NOW)
    second = await allocation.reserve(
        db_session, outbox, users[1].id, START + timedelta(hours=1), now=NOW
    )
    later = await allocation.reserve(
        db_session, outbox, users[2].id, START + timedelta(hours=4), now=NOW
    )

    assert first.spot_id == 1
    assert second.spot_id == 2
    # Back-to-back windows may share a spot
    assert later.spot_id == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("arrival", "outcome", "minutes_late"),
    [
        (START - timedelta(minutes=10), ActivationOutcome.EARLY, -10),
        (START, ActivationOutcome.ON_TIME, 0),
        (START + timedelta(minutes=15), ActivationOutcome.LATE_WITHIN_GRACE, 15),
    ],
)
async def test_activate_within_grace(db_session, outbox, users, arrival, outcome, minutes_late):
    reservation = (await allocation.reserve(db_session, outbox, users[0].id, START, now=NOW)).reservation

    response = await allocation.activate(db_session, outbox, reservation.id, now=arrival)

    assert response.outcome == outcome
    assert response.minutes_late == minutes_late
    assert response.session.status == SessionStatus.ACTIVE
    assert response.session.actual_start == arrival
    assert response.session.is_late is False
    assert f"Parking code: {reservation.id}" in response.message

    spot = await db_session.get(ParkingSpot, reservation.spot_id, populate_existing=True)
    assert spot.is_occupied is True


@pytest.mark.asyncio
async def test_activate_past_grace_forfeits(db_session, outbox, users):
    reservation = (await allocation.reserve(db_session, outbox, users[0].id, START, now=NOW)).reservation
    await outbox.dispatch_pending()

    response = await allocation.activate(
        db_session, outbox, reservation.id, now=START + timedelta(minutes=16)
    )

    assert response.outcome == ActivationOutcome.FORFEITED
    assert response.minutes_late == 16
    assert response.session.status == SessionStatus.CANCELLED
    assert response.session.is_late is True
    assert response.session.actual_start is None

    await outbox.dispatch_pending()
    cancellation = outbox.sender.sent[-1]
    assert cancellation.type == NotificationType.RESERVATION_CANCELLED
    assert cancellation.details["reason"] == "late_arrival"

    with pytest.raises(InvalidStateError) as exc_info:
        await allocation.activate(db_session, outbox, reservation.id, now=START)
    assert exc_info.value.current_status == SessionStatus.CANCELLED


@pytest.mark.asyncio
async def test_activate_unknown_reservation(db_session, outbox):
    with pytest.raises(NotFoundError):
        await allocation.activate(db_session, outbox, 12345, now=NOW)


@pytest.mark.asyncio
async def test_cancel_preorder(db_session, outbox, users):
    reservation = (await allocation.reserve(db_session, outbox, users[0].id, START, now=NOW)).reservation

    response = await allocation.cancel(db_session, outbox, reservation.id)

    assert response.session.status == SessionStatus.CANCELLED
    assert response.session.is_late is False
    stored = await reload(db_session, reservation.id)
    assert stored.status == SessionStatus.CANCELLED

    # The freed window can be booked again on the same spot
    again = await allocation.reserve(db_session, outbox, users[1].id, START, now=NOW)
    assert again.spot_id == reservation.spot_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "message"),
    [
        (SessionStatus.ACTIVE, "Cannot cancel active parking session. Please exit properly."),
        (SessionStatus.FINISHED, "This parking session is already completed."),
        (SessionStatus.CANCELLED, "This reservation is already cancelled."),
    ],
)
async def test_cancel_refused_outside_preorder(db_session, outbox, make_session, status, message):
    session = await make_session(spot_id=1, start=NOW, status=status)

    with pytest.raises(InvalidStateError) as exc_info:
        await allocation.cancel(db_session, outbox, session.id)

    assert exc_info.value.current_status == status
    assert exc_info.value.detail == message
    assert outbox.pending == 0


@pytest.mark.asyncio
async def test_concurrent_reservations_never_share_a_spot(
    db_session, session_factory, outbox, users, monkeypatch
):
    monkeypatch.setattr(settings, "total_spots", 3)
    monkeypatch.setattr(settings, "reservation_threshold", 0.0)
    monkeypatch.setattr(settings, "allocation_retries", 6)
    user_ids = [user.id for user in users]

    async def attempt(index: int):
        # SQLite allows one writer; a locked database means the racer retries from scratch
        for _ in range(50):
            try:
                async with session_factory() as db:
                    return await allocation.reserve(
                        db, outbox, user_ids[index % len(user_ids)], START, now=NOW
                    )
            except OperationalError:
                await asyncio.sleep(0.01)
        raise AssertionError("database stayed locked")

    results = await asyncio.gather(*(attempt(i) for i in range(6)), return_exceptions=True)

    succeeded = [r for r in results if not isinstance(r, BaseException)]
    failed = [r for r in results if isinstance(r, BaseException)]
    assert all(isinstance(error, NoSpotAvailableError) for error in failed)
    assert len(succeeded) == min(6, settings.total_spots)
    assert {r.spot_id for r in succeeded} == {1, 2, 3}

    result = await db_session.execute(
        select(ParkingSession).where(ParkingSession.status == SessionStatus.PREORDER)
    )
    spots = [s.spot_id for s in result.scalars().all()]
    assert sorted(spots) == [1, 2, 3]


@pytest.mark.asyncio
async def test_activate_moves_away_from_overstaying_car(
    db_session, outbox, users, make_session
):
    overstayer = await make_session(
        spot_id=1, start=START - timedelta(hours=5), status=SessionStatus.ACTIVE, user=users[1]
    )
    reservation = await make_session(spot_id=1, start=START)
    reservation_id = reservation.id

    response = await allocation.activate(db_session, outbox, reservation_id, now=START)

    assert response.outcome == ActivationOutcome.ON_TIME
    assert response.session.status == SessionStatus.ACTIVE
    assert response.session.spot_id == 2
    assert "Spot: 2" in response.message
    assert (await reload(db_session, overstayer.id)).spot_id == 1

    spot = await db_session.get(ParkingSpot, 2, populate_existing=True)
    assert spot.is_occupied is True


@pytest.mark.asyncio
async def test_activate_refused_while_only_spot_is_overstayed(
    db_session, outbox, users, make_session, monkeypatch
):
    monkeypatch.setattr(settings, "total_spots", 1)
    await make_session(
        spot_id=1, start=START - timedelta(hours=5), status=SessionStatus.ACTIVE, user=users[1]
    )
    reservation = await make_session(spot_id=1, start=START)
    reservation_id = reservation.id

    with pytest.raises(NoSpotAvailableError):
        await allocation.activate(db_session, outbox, reservation_id, now=START)

    assert (await reload(db_session, reservation_id)).status == SessionStatus.PREORDER


@pytest.mark.asyncio
async def test_create_reservation_endpoint(client: AsyncClient, users, outbox):
    start_time = datetime.now(UTC) + timedelta(days=2)

    response = await client.post(
        "/api/v1/reservations",
        json={"user_id": users[0].id, "start_time": start_time.isoformat()},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["spot_id"] == 1
    assert data["reservation"]["status"] == SessionStatus.PREORDER.value
    assert data["confirmation_code"] == data["reservation"]["id"]
    assert outbox.pending == 1

    response = await client.post(f"/api/v1/reservations/{data['confirmation_code']}/cancel")
    assert response.status_code == 200
    assert response.json()["message"] == "Reservation cancelled successfully"

    response = await client.post(f"/api/v1/reservations/{data['confirmation_code']}/cancel")
    assert response.status_code == 409
    assert response.json()["detail"] == "This reservation is already cancelled."


@pytest.mark.asyncio
async def test_create_reservation_endpoint_errors(client: AsyncClient, users):
    too_soon = datetime.now(UTC) + timedelta(hours=2)
    response = await client.post(
        "/api/v1/reservations",
        json={"user_id": users[0].id, "start_time": too_soon.isoformat()},
    )
    assert response.status_code == 422
    assert "24 hours in advance" in response.json()["detail"]

    response = await client.post(
        "/api/v1/reservations",
        json={"user_id": 999, "start_time": (too_soon + timedelta(days=1)).isoformat()},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_activate_endpoint(client: AsyncClient, users):
    start_time = datetime.now(UTC) + timedelta(days=2)
    created = await client.post(
        "/api/v1/reservations",
        json={"user_id": users[0].id, "start_time": start_time.isoformat()},
    )
    reservation_id = created.json()["confirmation_code"]

    response = await client.post(f"/api/v1/reservations/{reservation_id}/activate")
    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == ActivationOutcome.EARLY.value
    assert data["session"]["status"] == SessionStatus.ACTIVE.value

    response = await client.post(f"/api/v1/reservations/{reservation_id}/activate")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_slots_endpoint(client: AsyncClient):
    preferred = (datetime.now(UTC) + timedelta(days=3)).replace(minute=0, second=0, microsecond=0)

    response = await client.get(
        "/api/v1/reservations/slots", params={"preferred_time": preferred.isoformat()}
    )
    assert response.status_code == 200
    data = response.json()
    assert len(data["slots"]) == 9
    assert data["threshold"] == 40
    assert all(slot["is_available"] for slot in data["slots"])
