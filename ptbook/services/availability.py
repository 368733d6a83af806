from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from sqlmodel import Session, select

from ptbook.errors import NotFound, ValidationError
from ptbook.models import Appointment, AppointmentStatus, User, UserRole
from ptbook.settings import settings
from ptbook.time_utils import at_minute, hm_to_minute, minute_to_hm, parse_ymd


class SlotState(str, Enum):
    free = "free"
    own = "own"
    busy_detailed = "busy-detailed"
    busy_opaque = "busy-opaque"
    past = "past"


@dataclass(frozen=True)
class Busy:
    date: str
    start_minute: int
    duration_minutes: int
    appointment: Optional[Appointment] = None

    @property
    def end_minute(self) -> int:
        return self.start_minute + self.duration_minutes


@dataclass(frozen=True)
class SlotCheck:
    free: bool
    past: bool
    lead_time_ok: bool

    @property
    def bookable(self) -> bool:
        return self.free and not self.past and self.lead_time_ok


@dataclass(frozen=True)
class SlotView:
    date: str
    start_minute: int
    state: SlotState
    bookable: bool = False
    # Second half of a 60-minute block: painted busy, never separately clickable.
    continuation: bool = False
    appointment_id: Optional[int] = None
    member_name: Optional[str] = None
    duration_minutes: Optional[int] = None

    @property
    def time(self) -> str:
        return minute_to_hm(self.start_minute)

    def as_dict(self) -> dict:
        data = {
            "date": self.date,
            "time": self.time,
            "state": self.state.value,
            "bookable": self.bookable,
            "continuation": self.continuation,
        }
        if self.appointment_id is not None:
            data["appointment_id"] = self.appointment_id
            data["duration_minutes"] = self.duration_minutes
        if self.member_name is not None:
            data["member_name"] = self.member_name
        return data


def day_bounds() -> tuple:
    return hm_to_minute(settings.day_start), hm_to_minute(settings.day_end)


def grid_minutes() -> List[int]:
    start, end = day_bounds()
    return list(range(start, end, settings.slot_minutes))


def overlaps(start: int, duration: int, other_start: int, other_duration: int) -> bool:
    """Half-open interval test on minutes since midnight."""
    end = start + duration
    other_end = other_start + other_duration
    return not (end <= other_start or start >= other_end)


def busy_from(appointments: Iterable[Appointment], keep_detail: bool = True) -> List[Busy]:
    return [
        Busy(
            date=a.date,
            start_minute=a.start_minute,
            duration_minutes=a.duration_minutes,
            appointment=a if keep_detail else None,
        )
        for a in appointments
        if a.status != AppointmentStatus.cancelled
    ]


def is_slot_free(
    date: str,
    start_minute: int,
    duration_minutes: int,
    busy: Sequence[Busy],
    now: datetime,
    lead_minutes: Optional[int] = None,
) -> SlotCheck:
    lead = settings.booking_lead_minutes if lead_minutes is None else lead_minutes
    starts_at = at_minute(date, start_minute)
    conflict = any(
        b.date == date
        and overlaps(start_minute, duration_minutes, b.start_minute, b.duration_minutes)
        for b in busy
    )
    return SlotCheck(
        free=not conflict,
        past=starts_at <= now,
        lead_time_ok=starts_at >= now + timedelta(minutes=lead),
    )


def _covering(busy: Sequence[Busy], date: str, minute: int) -> Optional[Busy]:
    for b in busy:
        if b.date == date and overlaps(minute, settings.slot_minutes, b.start_minute, b.duration_minutes):
            return b
    return None


def paint_day(
    date: str,
    trainer_busy: Sequence[Busy],
    own_busy: Sequence[Busy],
    now: datetime,
    staff_view: bool,
    duration_minutes: int = 60,
) -> List[SlotView]:
    """Classify every grid cell of one day."""
    _, day_end = day_bounds()
    everything = list(trainer_busy) + list(own_busy)
    views: List[SlotView] = []
    for minute in grid_minutes():
        own = _covering(own_busy, date, minute)
        if own is not None:
            views.append(
                SlotView(
                    date=date,
                    start_minute=minute,
                    state=SlotState.own,
                    continuation=minute != own.start_minute,
                    appointment_id=own.appointment.id if own.appointment else None,
                    duration_minutes=own.duration_minutes,
                )
            )
            continue

        taken = _covering(trainer_busy, date, minute)
        if taken is not None:
            detail = taken.appointment if staff_view else None
            views.append(
                SlotView(
                    date=date,
                    start_minute=minute,
                    state=SlotState.busy_detailed if staff_view else SlotState.busy_opaque,
                    continuation=minute != taken.start_minute,
                    appointment_id=detail.id if detail else None,
                    member_name=detail.member_name if detail else None,
                    duration_minutes=taken.duration_minutes if detail else None,
                )
            )
            continue

        if at_minute(date, minute) <= now:
            views.append(SlotView(date=date, start_minute=minute, state=SlotState.past))
            continue

        check = is_slot_free(date, minute, duration_minutes, everything, now)
        fits = minute + duration_minutes <= day_end
        views.append(
            SlotView(
                date=date,
                start_minute=minute,
                state=SlotState.free,
                bookable=check.bookable and fits,
            )
        )
    return views


def _live_appointments(start: str, end: str):
    return (
        select(Appointment)
        .where(
            Appointment.date >= start,
            Appointment.date <= end,
            Appointment.status != AppointmentStatus.cancelled,
        )
        .order_by(Appointment.date, Appointment.start_minute)
    )


def trainer_appointments(session: Session, trainer_id: int, start: str, end: str) -> List[Appointment]:
    stmt = _live_appointments(start, end).where(Appointment.trainer_id == trainer_id)
    return list(session.exec(stmt).all())


def member_appointments(session: Session, member_id: int, start: str, end: str) -> List[Appointment]:
    stmt = _live_appointments(start, end).where(Appointment.member_id == member_id)
    return list(session.exec(stmt).all())


def unavailable_slots(session: Session, trainer_id: int, start: str, end: str) -> List[dict]:
    """Busy cells of a trainer with every member-identifying field stripped."""
    rows = session.exec(
        select(Appointment.date, Appointment.start_minute, Appointment.duration_minutes)
        .where(
            Appointment.trainer_id == trainer_id,
            Appointment.date >= start,
            Appointment.date <= end,
            Appointment.status != AppointmentStatus.cancelled,
        )
        .order_by(Appointment.date, Appointment.start_minute)
    ).all()
    return [
        {
            "date": date,
            "time": minute_to_hm(start_minute),
            "duration_minutes": duration or 60,
            "status": "unavailable",
        }
        for date, start_minute, duration in rows
    ]


def get_trainer(session: Session, trainer_id: int) -> User:
    trainer = session.get(User, trainer_id)
    if not trainer or trainer.role != UserRole.trainer or not trainer.is_active:
        raise NotFound("Trainer not found")
    return trainer


def get_availability(
    session: Session,
    viewer: User,
    trainer_id: int,
    start_date: str,
    now: datetime,
    days: int = 7,
    duration_minutes: int = 60,
) -> Dict[str, List[SlotView]]:
    """Slot grid for one trainer, computed fresh per request.

    Staff see who booked each busy cell. Members get the opaque projection for
    other people's bookings and full detail for their own, across all trainers.
    """
    try:
        first = parse_ymd(start_date)
    except ValueError:
        raise ValidationError("Invalid date format")
    if days < 1 or days > 31:
        raise ValidationError("Date range must be between 1 and 31 days")
    get_trainer(session, trainer_id)

    dates = [(first + timedelta(days=i)).strftime("%Y-%m-%d") for i in range(days)]
    start, end = dates[0], dates[-1]
    staff_view = viewer.is_staff

    if staff_view:
        trainer_busy = busy_from(trainer_appointments(session, trainer_id, start, end))
        own_busy: List[Busy] = []
    else:
        mine = member_appointments(session, viewer.id, start, end)
        own_busy = busy_from(mine)
        trainer_busy = [
            Busy(
                date=s["date"],
                start_minute=hm_to_minute(s["time"]),
                duration_minutes=s["duration_minutes"],
            )
            for s in unavailable_slots(session, trainer_id, start, end)
        ]

    return {
        day: paint_day(day, trainer_busy, own_busy, now, staff_view, duration_minutes)
        for day in dates
    }
