"""Appointment lifecycle.

    scheduled -> completed | cancelled | no_show
    completed -> no_show        (staff correction)

Booking deducts one point from the matching duration bucket, cancellation
refunds one point, no-show refunds nothing. Every transition appends an
AppointmentLog entry after the state change has been committed; a failed
append is reported as a warning and never undoes the transition.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional, Sequence

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from ptbook.errors import (
    AccessDenied,
    CancellationWindowExpired,
    InvalidTransition,
    NotFound,
    SlotUnavailable,
    ValidationError,
)
from ptbook.models import (
    DURATION_BUCKETS,
    Appointment,
    AppointmentLog,
    AppointmentStatus,
    LogAction,
    SlotClaim,
    User,
    UserRole,
)
from ptbook.services.availability import (
    busy_from,
    day_bounds,
    get_trainer,
    grid_minutes,
    is_slot_free,
    member_appointments,
    trainer_appointments,
)
from ptbook.services.ledger import (
    deduct_points,
    load_batches,
    member_trainer_type,
    migrate_legacy_points,
    pick_duration,
    refund_point,
)
from ptbook.settings import settings
from ptbook.time_utils import at_minute, canonical_ymd, hm_to_minute, parse_ymd

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.scheduled: frozenset(
        {AppointmentStatus.completed, AppointmentStatus.cancelled, AppointmentStatus.no_show}
    ),
    AppointmentStatus.completed: frozenset({AppointmentStatus.no_show}),
    AppointmentStatus.cancelled: frozenset(),
    AppointmentStatus.no_show: frozenset(),
}

LOG_FAILED = "Audit log entry could not be written"


@dataclass
class BookingResult:
    appointment: Appointment
    warnings: List[str] = field(default_factory=list)


@dataclass
class BulkResult:
    appointments: List[Appointment]
    cutoff: datetime
    warnings: List[str] = field(default_factory=list)


def check_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot change an appointment from {current.value} to {target.value}"
        )


def member_cancel_allowed(appointment: Appointment, now: datetime) -> bool:
    """Members may cancel only sessions on a later calendar day."""
    return member_cancel_allowed_on(appointment.date, now)


def member_cancel_allowed_on(date: str, now: datetime) -> bool:
    return parse_ymd(date) > now.date()


def staff_cancel_allowed(appointment: Appointment, now: datetime) -> bool:
    """Staff may cancel up to a fixed lead time before the session starts."""
    starts_at = at_minute(appointment.date, appointment.start_minute)
    return starts_at - now >= timedelta(minutes=settings.staff_cancel_lead_minutes)


def get_appointment(session: Session, appointment_id: int) -> Appointment:
    appointment = session.get(Appointment, appointment_id)
    if not appointment:
        raise NotFound("Appointment not found")
    return appointment


def get_member(session: Session, member_id: int) -> User:
    member = session.get(User, member_id)
    if not member or member.role != UserRole.member or not member.is_active:
        raise NotFound("Member not found")
    return member


def _log_entry(
    appointment: Appointment, action: LogAction, actor: User, notes: Optional[str]
) -> AppointmentLog:
    return AppointmentLog(
        appointment_id=appointment.id,
        action=action,
        action_by=actor.id,
        action_by_name=actor.name,
        action_by_role=actor.role,
        appointment_date=appointment.date,
        appointment_time=appointment.time,
        trainer_id=appointment.trainer_id,
        trainer_name=appointment.trainer_name,
        member_id=appointment.member_id,
        member_name=appointment.member_name,
        member_email=appointment.member_email or "",
        product_id=appointment.product_id,
        used_point_batch_id=appointment.used_point_batch_id,
        notes=notes,
    )


def record_logs(
    session: Session,
    appointments: Sequence[Appointment],
    action: LogAction,
    actor: User,
    notes: Optional[str] = None,
) -> List[str]:
    """Append audit entries; failures come back as warnings."""
    if not appointments:
        return []
    try:
        for appointment in appointments:
            session.add(_log_entry(appointment, action, actor, notes))
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception(
            "Failed to write %s log for appointments %s",
            action.value,
            [a.id for a in appointments],
        )
        return [LOG_FAILED]
    return []


def _claim_slots(session: Session, appointment: Appointment) -> None:
    for minute in range(appointment.start_minute, appointment.end_minute, settings.slot_minutes):
        session.add(
            SlotClaim(
                trainer_id=appointment.trainer_id,
                date=appointment.date,
                slot_minute=minute,
                appointment_id=appointment.id,
            )
        )


def _release_slots(session: Session, appointment: Appointment) -> None:
    claims = session.exec(select(SlotClaim).where(SlotClaim.appointment_id == appointment.id)).all()
    for claim in claims:
        session.delete(claim)


def create_booking(
    session: Session,
    actor: User,
    member_id: int,
    trainer_id: int,
    date: str,
    time: str,
    now: datetime,
    duration_minutes: Optional[int] = None,
    notes: Optional[str] = None,
) -> BookingResult:
    if actor.role == UserRole.trainer:
        raise AccessDenied("Trainers cannot book sessions")
    if actor.role == UserRole.member and actor.id != member_id:
        raise AccessDenied("You can only book sessions for yourself")

    member = get_member(session, member_id)
    trainer = get_trainer(session, trainer_id)
    try:
        date = canonical_ymd(date)
        start_minute = hm_to_minute(time)
    except ValueError:
        raise ValidationError("Invalid date or time format")
    if start_minute not in grid_minutes():
        raise ValidationError(
            f"Time must be on the {settings.slot_minutes}-minute grid "
            f"between {settings.day_start} and {settings.day_end}"
        )

    migrate_legacy_points(session, member, now)
    trainer_type = member_trainer_type(session, member)
    if duration_minutes is None:
        duration_minutes = pick_duration(load_batches(session, member.id, trainer_type), now)
    if duration_minutes not in DURATION_BUCKETS:
        raise ValidationError("Session length must be 30 or 60 minutes")
    if start_minute + duration_minutes > day_bounds()[1]:
        raise SlotUnavailable("The session would run past closing time")

    busy = busy_from(trainer_appointments(session, trainer.id, date, date))
    busy += busy_from(member_appointments(session, member.id, date, date))
    check = is_slot_free(date, start_minute, duration_minutes, busy, now)
    if check.past:
        raise SlotUnavailable("Cannot book a time in the past")
    if not check.lead_time_ok:
        raise SlotUnavailable(
            f"Bookings must be made at least {settings.booking_lead_minutes} minutes in advance"
        )
    if not check.free:
        raise SlotUnavailable("This time slot is not available")

    batches = load_batches(session, member.id, trainer_type, duration_minutes, for_update=True)
    touched = deduct_points(batches, now)

    appointment = Appointment(
        member_id=member.id,
        member_name=member.name,
        member_email=member.email,
        trainer_id=trainer.id,
        trainer_name=trainer.name,
        date=date,
        start_minute=start_minute,
        duration_minutes=duration_minutes,
        status=AppointmentStatus.scheduled,
        product_id=touched[0].product_id,
        used_point_batch_id=touched[0].id,
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    session.add(appointment)
    try:
        session.flush()
        if settings.enforce_slot_claims:
            _claim_slots(session, appointment)
            session.flush()
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.info("Slot %s %s for trainer %s was taken concurrently", date, time, trainer.id)
        raise SlotUnavailable("This time slot was just taken")
    session.refresh(appointment)
    logger.info(
        "Appointment %s booked: member=%s trainer=%s %s %s (%s min)",
        appointment.id,
        member.id,
        trainer.id,
        date,
        appointment.time,
        duration_minutes,
    )
    warnings = record_logs(session, [appointment], LogAction.booked, actor, notes="Appointment booking")
    return BookingResult(appointment=appointment, warnings=warnings)


def _require_staff_for(actor: User, appointment: Appointment) -> None:
    if not actor.is_staff:
        raise AccessDenied("Only trainers and administrators can do this")
    if actor.role == UserRole.trainer and appointment.trainer_id != actor.id:
        raise AccessDenied("This appointment belongs to another trainer")


def cancel_booking(
    session: Session, actor: User, appointment_id: int, now: datetime
) -> BookingResult:
    appointment = get_appointment(session, appointment_id)
    if actor.role == UserRole.member:
        if appointment.member_id != actor.id:
            raise AccessDenied("You can only cancel your own appointments")
        check_transition(appointment.status, AppointmentStatus.cancelled)
        if not member_cancel_allowed(appointment, now):
            raise CancellationWindowExpired(
                "Appointments can only be cancelled before the day of the session"
            )
    else:
        _require_staff_for(actor, appointment)
        check_transition(appointment.status, AppointmentStatus.cancelled)
        if not staff_cancel_allowed(appointment, now):
            raise CancellationWindowExpired(
                f"Appointments can only be cancelled up to "
                f"{settings.staff_cancel_lead_minutes // 60} hours before the start"
            )

    batches = load_batches(session, appointment.member_id, for_update=True)
    batch, created = refund_point(
        batches, appointment.member_id, now, duration_minutes=appointment.duration_minutes
    )
    if created:
        session.add(batch)
    appointment.status = AppointmentStatus.cancelled
    appointment.updated_at = now
    session.add(appointment)
    _release_slots(session, appointment)
    session.commit()
    session.refresh(appointment)
    logger.info(
        "Appointment %s cancelled by %s (%s); refunded 1 point to batch %s%s",
        appointment.id,
        actor.id,
        actor.role.value,
        batch.id,
        " (new)" if created else "",
    )
    warnings = record_logs(session, [appointment], LogAction.cancelled, actor)
    return BookingResult(appointment=appointment, warnings=warnings)


def _staff_transition(
    session: Session,
    actor: User,
    appointment_id: int,
    target: AppointmentStatus,
    action: LogAction,
    now: datetime,
) -> BookingResult:
    appointment = get_appointment(session, appointment_id)
    _require_staff_for(actor, appointment)
    check_transition(appointment.status, target)
    previous = appointment.status
    appointment.status = target
    appointment.updated_at = now
    session.add(appointment)
    session.commit()
    session.refresh(appointment)
    logger.info(
        "Appointment %s moved %s -> %s by %s",
        appointment.id,
        previous.value,
        target.value,
        actor.id,
    )
    warnings = record_logs(session, [appointment], action, actor)
    return BookingResult(appointment=appointment, warnings=warnings)


def complete_booking(
    session: Session, actor: User, appointment_id: int, now: datetime
) -> BookingResult:
    return _staff_transition(
        session, actor, appointment_id, AppointmentStatus.completed, LogAction.completed, now
    )


def mark_no_show(
    session: Session, actor: User, appointment_id: int, now: datetime
) -> BookingResult:
    return _staff_transition(
        session, actor, appointment_id, AppointmentStatus.no_show, LogAction.no_show, now
    )


def auto_complete_past(session: Session, actor: User, cutoff: datetime) -> BulkResult:
    """Complete every scheduled appointment that started before ``cutoff``."""
    if actor.role != UserRole.admin:
        raise AccessDenied("Only administrators can perform bulk appointment updates")
    cutoff_date = cutoff.strftime("%Y-%m-%d")
    cutoff_minute = cutoff.hour * 60 + cutoff.minute
    due = session.exec(
        select(Appointment)
        .where(Appointment.status == AppointmentStatus.scheduled)
        .where(
            or_(
                Appointment.date < cutoff_date,
                and_(Appointment.date == cutoff_date, Appointment.start_minute < cutoff_minute),
            )
        )
        .order_by(Appointment.date, Appointment.start_minute)
    ).all()
    for appointment in due:
        appointment.status = AppointmentStatus.completed
        appointment.updated_at = cutoff
        session.add(appointment)
    session.commit()
    for appointment in due:
        session.refresh(appointment)
    logger.info("Auto-completed %d appointments before %s", len(due), cutoff.isoformat())
    warnings = record_logs(
        session, due, LogAction.completed, actor, notes="Auto-completed via bulk operation"
    )
    return BulkResult(appointments=list(due), cutoff=cutoff, warnings=warnings)


def list_appointments(
    session: Session,
    viewer: User,
    member_id: Optional[int] = None,
    trainer_id: Optional[int] = None,
    date: Optional[str] = None,
    status: Optional[AppointmentStatus] = None,
) -> List[Appointment]:
    stmt = select(Appointment)
    if viewer.role == UserRole.member:
        if member_id is not None and member_id != viewer.id:
            raise AccessDenied("Access denied")
        stmt = stmt.where(Appointment.member_id == viewer.id)
    elif viewer.role == UserRole.trainer:
        if trainer_id is not None and trainer_id != viewer.id:
            raise AccessDenied("Access denied")
        stmt = stmt.where(Appointment.trainer_id == viewer.id)
    if member_id is not None and viewer.role != UserRole.member:
        stmt = stmt.where(Appointment.member_id == member_id)
    if trainer_id is not None and viewer.role == UserRole.admin:
        stmt = stmt.where(Appointment.trainer_id == trainer_id)
    if date:
        try:
            date = canonical_ymd(date)
        except ValueError:
            raise ValidationError("Invalid date")
        stmt = stmt.where(Appointment.date == date)
    if status is not None:
        stmt = stmt.where(Appointment.status == status)
    stmt = stmt.order_by(Appointment.date.desc(), Appointment.start_minute.desc())
    return list(session.exec(stmt).all())


def list_logs(
    session: Session, viewer: User, appointment_id: Optional[int] = None
) -> List[AppointmentLog]:
    stmt = select(AppointmentLog)
    if viewer.role != UserRole.admin:
        stmt = stmt.where(
            or_(AppointmentLog.member_id == viewer.id, AppointmentLog.action_by == viewer.id)
        )
    if appointment_id is not None:
        stmt = stmt.where(AppointmentLog.appointment_id == appointment_id)
    stmt = stmt.order_by(AppointmentLog.timestamp.desc(), AppointmentLog.id.desc())
    return list(session.exec(stmt).all())

