"""
Tests for the maintenance sweep and the background sweeper worker.
"""

from datetime import timedelta

import pytest

from studio_booking.core.policy import StudioPolicy
from studio_booking.db.base import utcnow
from studio_booking.models.reservation import Reservation
from studio_booking.models.status import ClassStatus, ReservationStatus
from studio_booking.services import attendance_service
from studio_booking.services.context import Actor, build_booking_context
from studio_booking.services.interfaces.notifier import NotificationKind
from studio_booking.services.policy_service import PolicyStore
from studio_booking.services.registry_service import get_class_instance
from studio_booking.services.reservation_service import (
    cancel,
    confirm,
    get_reservation,
    reserve,
    send_confirmation_reminders,
)
from studio_booking.services.sweep_service import run_sweep
from studio_booking.workers.sweeper import Sweeper


@pytest.mark.asyncio
async def test_sweep_expires_promotions_and_closes_out_classes(db_session, ctx, make_class, grant):
    upcoming = await make_class(max_capacity=1)
    ending = await make_class(max_capacity=2, starts_in=timedelta(hours=1))
    upcoming_id, ending_id = upcoming.id, ending.id
    ids = {}
    for member_id in (1, 2, 3):
        await grant(member_id)
        ids[member_id] = (await reserve(db_session, ctx, upcoming_id, member_id)).id
    no_show_id = (await reserve(db_session, ctx, ending_id, member_id=1)).id
    now = utcnow()
    await cancel(db_session, ctx, ids[1], Actor.member(1), now=now)

    sweep_at = max(now + timedelta(hours=2), ending.ends_at) + timedelta(minutes=5)
    report = await run_sweep(db_session, ctx, now=sweep_at)

    assert report.ran_at == sweep_at
    assert (report.promotions_expired, report.requeued, report.promoted) == (1, 0, 1)
    assert (report.classes_completed, report.no_shows) == (1, 1)
    assert report.notifications_retried == 0
    assert (await get_reservation(db_session, ids[2])).status is ReservationStatus.EXPIRED
    assert (await get_reservation(db_session, ids[3])).status is ReservationStatus.PROMOTED
    assert (await get_reservation(db_session, no_show_id)).status is ReservationStatus.NO_SHOW


@pytest.mark.asyncio
async def test_sweep_with_nothing_to_do(db_session, ctx, make_class):
    await make_class()

    report = await run_sweep(db_session, ctx)

    assert report.promotions_expired == 0
    assert report.classes_completed == 0


@pytest.mark.asyncio
async def test_sweeper_run_once_uses_its_own_session(session_factory, ctx, make_class, grant):
    instance = await make_class(starts_in=timedelta(hours=-2))
    assert instance.ends_at < utcnow()

    sweeper = Sweeper(session_factory, lambda: ctx, interval_seconds=60)
    report = await sweeper.run_once()

    assert report is not None
    assert report.classes_completed == 1


@pytest.mark.asyncio
async def test_sweeper_survives_failures(session_factory):
    def broken_context():
        raise RuntimeError("payment authority misconfigured")

    sweeper = Sweeper(session_factory, broken_context, interval_seconds=60)

    assert await sweeper.run_once() is None


@pytest.mark.asyncio
async def test_sweeper_start_and_stop(session_factory, ctx):
    sweeper = Sweeper(session_factory, lambda: ctx, interval_seconds=3600)

    sweeper.start()
    await sweeper.stop()
    await sweeper.stop()


class FlakyPolicyStore(PolicyStore):
    def __init__(self):
        self.broken_studios: set[int] = set()

    async def for_studio(self, db, studio_id):
        if studio_id in self.broken_studios:
            raise RuntimeError("policy row unreadable")
        return StudioPolicy()


@pytest.mark.asyncio
async def test_one_failing_class_does_not_stop_the_sweep(db_session, notifier, payments, make_class, grant):
    store = FlakyPolicyStore()
    ctx = build_booking_context(notifier, payments, store)
    ending = await make_class(starts_in=timedelta(hours=1))
    troubled = await make_class(max_capacity=1, studio_id=2)
    ending_id, troubled_id = ending.id, troubled.id
    await grant(1)
    no_show_id = (await reserve(db_session, ctx, ending_id, member_id=1)).id
    for member_id in (2, 3):
        await grant(member_id, studio_id=2)
    seat_id = (await reserve(db_session, ctx, troubled_id, member_id=2)).id
    waiting_id = (await reserve(db_session, ctx, troubled_id, member_id=3)).id
    now = utcnow()
    await cancel(db_session, ctx, seat_id, Actor.member(2), now=now)
    store.broken_studios.add(2)

    report = await run_sweep(db_session, ctx, now=now + timedelta(hours=3))

    assert report.promotions_expired == 0
    assert report.classes_completed == 1
    assert (await get_reservation(db_session, no_show_id)).status is ReservationStatus.NO_SHOW
    stored, capacity = await get_class_instance(db_session, ending_id)
    assert stored.status is ClassStatus.COMPLETED
    assert capacity.swept_at is not None
    assert (await get_reservation(db_session, waiting_id)).status is ReservationStatus.PROMOTED

    # Fixed on the next tick
    store.broken_studios.clear()
    report = await run_sweep(db_session, ctx, now=now + timedelta(hours=3, minutes=1))
    assert report.promotions_expired == 1
    assert (await get_reservation(db_session, waiting_id)).status is ReservationStatus.EXPIRED


@pytest.mark.asyncio
async def test_failed_close_out_is_retried(db_session, ctx, make_class, monkeypatch):
    first = await make_class(starts_in=timedelta(hours=-3))
    second = await make_class(starts_in=timedelta(hours=-2))
    first_id, second_id = first.id, second.id
    complete_class = attendance_service.complete_class

    async def failing_for_first(db, ctx, class_instance_id, now=None, by_staff=False):
        if class_instance_id == first_id:
            raise RuntimeError("ledger row missing")
        return await complete_class(db, ctx, class_instance_id, now, by_staff)

    monkeypatch.setattr(attendance_service, "complete_class", failing_for_first)
    report = await run_sweep(db_session, ctx)
    assert report.classes_completed == 1
    _, capacity = await get_class_instance(db_session, second_id)
    assert capacity.swept_at is not None

    monkeypatch.setattr(attendance_service, "complete_class", complete_class)
    report = await run_sweep(db_session, ctx)
    assert report.classes_completed == 1
    _, capacity = await get_class_instance(db_session, first_id)
    assert capacity.swept_at is not None


@pytest.mark.asyncio
async def test_confirmation_reminder_sent_once_window_opens(db_session, ctx, notifier, make_class, grant):
    instance = await make_class(max_capacity=1)
    class_id = instance.id
    starts_at = instance.starts_at
    for member_id in (1, 2):
        await grant(member_id)
    booked_id = (await reserve(db_session, ctx, class_id, member_id=1)).id
    await reserve(db_session, ctx, class_id, member_id=2)

    assert await send_confirmation_reminders(db_session, ctx, now=starts_at - timedelta(hours=30)) == 0

    window_open = starts_at - timedelta(hours=23)
    report = await run_sweep(db_session, ctx, now=window_open)

    assert report.reminders_sent == 1
    reminders = notifier.of_kind(NotificationKind.CONFIRMATION_REMINDER)
    assert [(n.member_id, n.reservation_id) for n in reminders] == [(1, booked_id)]
    assert reminders[0].data["starts_at"] == starts_at.isoformat()
    stored = await db_session.get(Reservation, booked_id, populate_existing=True)
    assert stored.confirmation_reminded_at == window_open

    assert await send_confirmation_reminders(db_session, ctx, now=window_open + timedelta(hours=1)) == 0


@pytest.mark.asyncio
async def test_confirmed_reservations_are_not_reminded(db_session, ctx, notifier, make_class, grant):
    instance = await make_class()
    starts_at = instance.starts_at
    await grant(1)
    booked = await reserve(db_session, ctx, instance.id, member_id=1)
    await confirm(db_session, ctx, booked.id, member_id=1, now=starts_at - timedelta(hours=20))

    assert await send_confirmation_reminders(db_session, ctx, now=starts_at - timedelta(hours=19)) == 0
    assert notifier.of_kind(NotificationKind.CONFIRMATION_REMINDER) == []


@pytest.mark.asyncio
async def test_undelivered_reminder_is_retried(db_session, ctx, notifier, make_class, grant):
    instance = await make_class()
    window_open = instance.starts_at - timedelta(hours=12)
    await grant(1)
    await reserve(db_session, ctx, instance.id, member_id=1)

    notifier.failing = True
    assert await send_confirmation_reminders(db_session, ctx, now=window_open) == 0

    notifier.failing = False
    assert await send_confirmation_reminders(db_session, ctx, now=window_open + timedelta(minutes=5)) == 1
