from datetime import datetime

import pytest

from ptbook.errors import NotFound, ValidationError
from ptbook.models import Appointment, AppointmentStatus
from ptbook.services.availability import (
    Busy,
    SlotState,
    get_availability,
    grid_minutes,
    is_slot_free,
    overlaps,
    paint_day,
)
from ptbook.time_utils import minute_to_hm

DAY = "2024-06-10"
BEFORE = datetime(2024, 6, 9, 12, 0)


def states(views):
    return {v.time: v.state for v in views}


@pytest.mark.parametrize("start", grid_minutes()[1:-2])
def test_sixty_minute_block_covers_two_cells(start):
    busy = [Busy(date=DAY, start_minute=start, duration_minutes=60)]
    painted = states(paint_day(DAY, busy, [], BEFORE, staff_view=False))
    assert painted[minute_to_hm(start)] == SlotState.busy_opaque
    assert painted[minute_to_hm(start + 30)] == SlotState.busy_opaque
    assert painted[minute_to_hm(start - 30)] == SlotState.free
    assert painted[minute_to_hm(start + 60)] == SlotState.free


def test_free_cell_before_busy_block_is_not_bookable_for_an_hour():
    busy = [Busy(date=DAY, start_minute=600, duration_minutes=60)]
    views = {v.time: v for v in paint_day(DAY, busy, [], BEFORE, staff_view=False)}
    assert views["09:30"].state == SlotState.free
    assert not views["09:30"].bookable
    views_30 = {
        v.time: v
        for v in paint_day(DAY, busy, [], BEFORE, staff_view=False, duration_minutes=30)
    }
    assert views_30["09:30"].bookable


def test_overlap_is_half_open():
    assert not overlaps(540, 60, 600, 30)
    assert overlaps(540, 60, 570, 30)
    assert not overlaps(600, 30, 540, 60)


def test_lead_time_and_past():
    now = datetime(2024, 6, 10, 8, 30)
    assert is_slot_free(DAY, 480, 60, [], now).past
    soon = is_slot_free(DAY, 540, 60, [], now)
    assert not soon.past and not soon.lead_time_ok and not soon.bookable
    assert is_slot_free(DAY, 570, 60, [], now).bookable


def test_past_cells_are_painted_past():
    now = datetime(2024, 6, 10, 12, 0)
    painted = states(paint_day(DAY, [], [], now, staff_view=False))
    assert painted["11:30"] == SlotState.past
    assert painted["12:00"] == SlotState.past
    assert painted["12:30"] == SlotState.free


def test_last_cell_cannot_start_an_hour():
    views = paint_day(DAY, [], [], BEFORE, staff_view=False)
    assert views[-1].time == "21:30"
    assert not views[-1].bookable
    assert views[-2].bookable


def test_staff_see_detail_members_do_not():
    appointment = Appointment(
        id=5,
        member_id=1,
        member_name="Mina",
        member_email="mina@example.com",
        trainer_id=2,
        trainer_name="Trainer X",
        date=DAY,
        start_minute=540,
    )
    busy = [Busy(date=DAY, start_minute=540, duration_minutes=60, appointment=appointment)]

    staff = {v.time: v for v in paint_day(DAY, busy, [], BEFORE, staff_view=True)}
    assert staff["09:00"].state == SlotState.busy_detailed
    assert staff["09:00"].member_name == "Mina"
    assert staff["09:30"].continuation

    member = {v.time: v for v in paint_day(DAY, busy, [], BEFORE, staff_view=False)}
    assert member["09:00"].state == SlotState.busy_opaque
    assert member["09:00"].member_name is None
    assert "member_name" not in member["09:00"].as_dict()


def test_own_booking_wins_over_trainer_busy():
    appointment = Appointment(
        id=9,
        member_id=1,
        member_name="Mina",
        member_email="mina@example.com",
        trainer_id=3,
        trainer_name="Trainer Y",
        date=DAY,
        start_minute=600,
        duration_minutes=30,
    )
    own = [Busy(date=DAY, start_minute=600, duration_minutes=30, appointment=appointment)]
    other = [Busy(date=DAY, start_minute=600, duration_minutes=60)]
    views = {v.time: v for v in paint_day(DAY, other, own, BEFORE, staff_view=False)}
    assert views["10:00"].state == SlotState.own
    assert views["10:00"].appointment_id == 9
    assert views["10:30"].state == SlotState.busy_opaque


def _book(session, member, trainer, date, start_minute, status=AppointmentStatus.scheduled):
    appointment = Appointment(
        member_id=member.id,
        member_name=member.name,
        member_email=member.email,
        trainer_id=trainer.id,
        trainer_name=trainer.name,
        date=date,
        start_minute=start_minute,
        status=status,
    )
    session.add(appointment)
    session.commit()
    return appointment


def test_get_availability_for_member(session, people):
    member, other = people["member"], people["other"]
    trainer_x, trainer_y = people["trainer_x"], people["trainer_y"]
    _book(session, other, trainer_x, DAY, 540)
    _book(session, member, trainer_y, DAY, 720)
    _book(session, other, trainer_x, DAY, 780, status=AppointmentStatus.cancelled)

    grid = get_availability(session, member, trainer_x.id, DAY, BEFORE, days=1)
    painted = states(grid[DAY])
    assert painted["09:00"] == SlotState.busy_opaque
    assert painted["12:00"] == SlotState.own
    assert painted["13:00"] == SlotState.free
    assert all(v.member_name is None for v in grid[DAY])


def test_get_availability_for_trainer(session, people):
    _book(session, people["other"], people["trainer_x"], DAY, 540)
    grid = get_availability(session, people["trainer_x"], people["trainer_x"].id, DAY, BEFORE, days=2)
    assert list(grid) == [DAY, "2024-06-11"]
    assert grid[DAY][6].member_name == "Otto"


def test_get_availability_rejects_bad_input(session, people):
    with pytest.raises(ValidationError):
        get_availability(session, people["member"], people["trainer_x"].id, "10/06/2024", BEFORE)
    with pytest.raises(ValidationError):
        get_availability(session, people["member"], people["trainer_x"].id, DAY, BEFORE, days=40)
    with pytest.raises(NotFound):
        get_availability(session, people["member"], people["member"].id, DAY, BEFORE)
