"""JSON routes under /api."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from sqlmodel import Session, select

from ptbook.auth import (
    SESSION_USER_KEY,
    change_password,
    deactivate_account,
    get_current_user,
    list_users,
    require_roles,
    update_user,
)
from ptbook.db import get_session
from ptbook.errors import AccessDenied, ValidationError
from ptbook.models import (
    Appointment,
    AppointmentLog,
    AppointmentStatus,
    PointBatch,
    Product,
    PurchaseLog,
    User,
    UserRole,
)
from ptbook.services import bookings, ledger, purchases
from ptbook.services.availability import get_availability, get_trainer, unavailable_slots
from ptbook.services.settlement import settlement_for_month
from ptbook.time_utils import canonical_ymd, current_time, minute_to_hm, parse_ym

router = APIRouter(prefix="/api")
logger = logging.getLogger(__name__)

staff_only = require_roles([UserRole.trainer, UserRole.admin])
admin_only = require_roles([UserRole.admin])
members_only = require_roles([UserRole.member])


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "role": user.role,
        "trainer_type": user.trainer_type,
        "assigned_trainer_id": user.assigned_trainer_id,
    }


def admin_user_to_dict(user: User) -> dict:
    data = user_to_dict(user)
    data.update(
        memo=user.memo,
        is_active=user.is_active,
        legacy_points=user.legacy_points,
        created_at=user.created_at.isoformat(),
    )
    return data


def appointment_to_dict(a: Appointment) -> dict:
    return {
        "id": a.id,
        "member_id": a.member_id,
        "member_name": a.member_name,
        "member_email": a.member_email,
        "trainer_id": a.trainer_id,
        "trainer_name": a.trainer_name,
        "date": a.date,
        "time": a.time,
        "end_time": minute_to_hm(a.end_minute),
        "duration_minutes": a.duration_minutes,
        "status": a.status,
        "product_id": a.product_id,
        "used_point_batch_id": a.used_point_batch_id,
        "notes": a.notes,
    }


def batch_to_dict(b: PointBatch) -> dict:
    return {
        "id": b.id,
        "product_id": b.product_id,
        "duration_minutes": b.duration_minutes,
        "original_points": b.original_points,
        "remaining_points": b.remaining_points,
        "purchase_date": b.purchase_date.isoformat(),
        "expiry_date": b.expiry_date.isoformat(),
    }


def product_to_dict(p: Product) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "duration_minutes": p.duration_minutes,
        "points": p.points,
        "price": p.price,
        "trainer_type": p.trainer_type,
    }


def log_to_dict(entry: AppointmentLog) -> dict:
    return {
        "id": entry.id,
        "appointment_id": entry.appointment_id,
        "action": entry.action,
        "action_by": entry.action_by,
        "action_by_name": entry.action_by_name,
        "action_by_role": entry.action_by_role,
        "timestamp": entry.timestamp.isoformat(),
        "appointment_date": entry.appointment_date,
        "appointment_time": entry.appointment_time,
        "trainer_id": entry.trainer_id,
        "trainer_name": entry.trainer_name,
        "member_id": entry.member_id,
        "member_name": entry.member_name,
        "member_email": entry.member_email,
        "product_id": entry.product_id,
        "notes": entry.notes,
    }


def purchase_to_dict(row: PurchaseLog) -> dict:
    return {
        "id": row.id,
        "member_id": row.member_id,
        "member_name": row.member_name,
        "member_email": row.member_email,
        "product_id": row.product_id,
        "points": row.points,
        "price": row.price,
        "payment_method": row.payment_method,
        "payment_status": row.payment_status,
        "datetime": row.created_at.isoformat(),
    }


def summary_to_dict(member_id: int, summary: ledger.PointSummary) -> dict:
    return {
        "userId": member_id,
        "totalPoints": summary.total,
        "pointsByDuration": summary.by_duration,
        "expiringPoints": {
            "total": summary.expiring_total,
            "byDuration": summary.expiring_by_duration,
            "earliestExpiry": summary.earliest_expiry.isoformat() if summary.earliest_expiry else None,
        },
        "summary": {
            "total30MinPoints": summary.by_duration[30],
            "total60MinPoints": summary.by_duration[60],
            "totalActiveBatches": summary.active_batches,
        },
    }


def _parse_date_arg(value: Optional[str], name: str) -> Optional[str]:
    if not value:
        return None
    try:
        return canonical_ymd(value)
    except ValueError:
        raise ValidationError(f"Invalid {name}")


@router.get("/health")
def health(session: Session = Depends(get_session)):
    session.exec(select(User.id).limit(1)).first()
    return {"ok": True}


@router.get("/auth/me")
def me(user: User = Depends(get_current_user)):
    return {"user": user_to_dict(user)}


@router.post("/auth/change-password")
def api_change_password(
    current_password: str = Form(...),
    new_password: str = Form(...),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    change_password(session, user, current_password, new_password)
    return {"success": True}


@router.post("/users/delete-account")
def api_delete_account(
    request: Request,
    user_id: Optional[int] = Form(None),
    other_id: Optional[int] = Form(None, alias="id"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if user_id is not None or other_id is not None:
        raise AccessDenied("Cannot specify a user id; you can only deactivate your own account")
    deactivate_account(session, user)
    request.session.pop(SESSION_USER_KEY, None)
    return {"success": True, "message": "Account deactivated successfully"}


@router.get("/users")
def api_users(
    include_inactive: bool = False,
    user: User = Depends(admin_only),
    session: Session = Depends(get_session),
):
    return {"users": [admin_user_to_dict(u) for u in list_users(session, include_inactive)]}


@router.put("/users")
def api_update_user(
    user_id: int = Form(...),
    name: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    memo: Optional[str] = Form(None),
    is_active: Optional[bool] = Form(None),
    assigned_trainer_id: Optional[int] = Form(None),
    user: User = Depends(admin_only),
    session: Session = Depends(get_session),
):
    updated = update_user(
        session,
        user,
        user_id,
        name=name,
        phone=phone,
        memo=memo,
        is_active=is_active,
        assigned_trainer_id=assigned_trainer_id,
    )
    return {"user": admin_user_to_dict(updated)}


@router.get("/trainers")
def api_trainers(session: Session = Depends(get_session)):
    trainers = session.exec(
        select(User)
        .where(User.role == UserRole.trainer, User.is_active == True)  # noqa: E712
        .order_by(User.name)
    ).all()
    return {
        "trainers": [
            {"id": t.id, "name": t.name, "trainer_type": t.trainer_type} for t in trainers
        ]
    }


@router.get("/products")
def api_products(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return {"products": [product_to_dict(p) for p in purchases.list_products(session, user)]}


@router.post("/purchases")
def api_purchase(
    product_id: int = Form(...),
    user: User = Depends(members_only),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    batch = purchases.purchase_product(session, user, product_id, now)
    return {"success": True, "batch": batch_to_dict(batch)}


@router.get("/purchase-logs")
def api_purchase_logs(
    member_id: Optional[int] = None,
    product_id: Optional[int] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    start = _parse_date_arg(start_date, "start date")
    end = _parse_date_arg(end_date, "end date")
    rows, stats = purchases.purchase_history(
        session,
        user,
        member_id=member_id,
        product_id=product_id,
        start=datetime.fromisoformat(start) if start else None,
        end=datetime.fromisoformat(end) + timedelta(days=1, microseconds=-1) if end else None,
    )
    return {
        "purchases": [purchase_to_dict(r) for r in rows],
        "stats": {
            "total_purchases": stats.total_purchases,
            "total_revenue": stats.total_revenue,
            "unique_customers": stats.unique_customers,
            "avg_purchase_value": stats.avg_purchase_value,
        },
    }


@router.get("/user-points")
def api_user_points(
    user_id: Optional[int] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    target_id = user_id or user.id
    if target_id != user.id and user.role != UserRole.admin:
        raise AccessDenied("Access denied")
    target = bookings.get_member(session, target_id) if target_id != user.id else user
    if target.role != UserRole.member:
        raise ValidationError("Points are only tracked for members")
    ledger.migrate_legacy_points(session, target, now)
    trainer_type = ledger.member_trainer_type(session, target)
    batches = ledger.load_batches(session, target.id, trainer_type)
    return summary_to_dict(target.id, ledger.summarize_points(batches, now))


@router.get("/admin/user-point-batches")
def api_admin_point_batches(
    user_id: int,
    user: User = Depends(admin_only),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    bookings.get_member(session, user_id)
    batches = ledger.active_batches(ledger.load_batches(session, user_id), now)
    return {"userId": user_id, "pointBatches": [batch_to_dict(b) for b in batches]}


@router.get("/appointments")
def api_list_appointments(
    member_id: Optional[int] = None,
    trainer_id: Optional[int] = None,
    date: Optional[str] = None,
    status: Optional[AppointmentStatus] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    rows = bookings.list_appointments(
        session,
        user,
        member_id=member_id,
        trainer_id=trainer_id,
        date=_parse_date_arg(date, "date"),
        status=status,
    )
    return {"appointments": [appointment_to_dict(a) for a in rows]}


@router.post("/appointments")
def api_create_appointment(
    trainer_id: int = Form(...),
    date: str = Form(...),
    time: str = Form(...),
    duration_minutes: Optional[int] = Form(None),
    member_id: Optional[int] = Form(None),
    notes: Optional[str] = Form(None),
    user: User = Depends(require_roles([UserRole.member, UserRole.admin])),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    if user.role == UserRole.admin and member_id is None:
        raise ValidationError("member_id is required when booking on behalf of a member")
    result = bookings.create_booking(
        session,
        user,
        member_id=member_id if member_id is not None else user.id,
        trainer_id=trainer_id,
        date=date,
        time=time,
        now=now,
        duration_minutes=duration_minutes,
        notes=notes,
    )
    return {
        "success": True,
        "appointment": appointment_to_dict(result.appointment),
        "warnings": result.warnings,
    }


@router.post("/appointments/auto-complete")
def api_auto_complete(
    cutoff_time: Optional[str] = Form(None),
    user: User = Depends(admin_only),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    cutoff = now
    if cutoff_time:
        try:
            cutoff = datetime.fromisoformat(cutoff_time)
        except ValueError:
            raise ValidationError("Invalid cutoff time")
    result = bookings.auto_complete_past(session, user, cutoff)
    return {
        "success": True,
        "updatedCount": len(result.appointments),
        "cutoffTime": result.cutoff.isoformat(),
        "updatedAppointments": [appointment_to_dict(a) for a in result.appointments],
        "warnings": result.warnings,
    }


@router.post("/appointments/{appointment_id}/cancel")
def api_cancel_appointment(
    appointment_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    result = bookings.cancel_booking(session, user, appointment_id, now)
    return {"appointment": appointment_to_dict(result.appointment), "warnings": result.warnings}


@router.post("/appointments/{appointment_id}/complete")
def api_complete_appointment(
    appointment_id: int,
    user: User = Depends(staff_only),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    result = bookings.complete_booking(session, user, appointment_id, now)
    return {"appointment": appointment_to_dict(result.appointment), "warnings": result.warnings}


@router.post("/appointments/{appointment_id}/no-show")
def api_no_show_appointment(
    appointment_id: int,
    user: User = Depends(staff_only),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    result = bookings.mark_no_show(session, user, appointment_id, now)
    return {"appointment": appointment_to_dict(result.appointment), "warnings": result.warnings}


@router.get("/trainer-availability")
def api_trainer_availability(
    trainer_id: int,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    get_trainer(session, trainer_id)
    start = _parse_date_arg(start_date, "start date") or "0000-01-01"
    end = _parse_date_arg(end_date, "end date") or "9999-12-31"
    return {
        "trainerId": trainer_id,
        "unavailableSlots": unavailable_slots(session, trainer_id, start, end),
        "dateRange": {"startDate": start_date, "endDate": end_date},
    }


@router.get("/availability")
def api_availability(
    trainer_id: int,
    start_date: str,
    days: int = 7,
    duration_minutes: int = 60,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    grid = get_availability(
        session, user, trainer_id, start_date, now, days=days, duration_minutes=duration_minutes
    )
    return {
        "trainerId": trainer_id,
        "days": [
            {"date": day, "slots": [slot.as_dict() for slot in slots]}
            for day, slots in grid.items()
        ],
    }


@router.get("/appointment-logs")
def api_appointment_logs(
    appointment_id: Optional[int] = None,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    logs = bookings.list_logs(session, user, appointment_id=appointment_id)
    return {"logs": [log_to_dict(entry) for entry in logs]}


@router.get("/settlement")
def api_settlement(
    month: str,
    user: User = Depends(admin_only),
    session: Session = Depends(get_session),
):
    try:
        year, month_number = parse_ym(month)
    except ValueError:
        raise ValidationError("Month must look like YYYY-MM")
    stats = settlement_for_month(session, year, month_number)
    return {"month": month, "trainers": [s.as_dict() for s in stats]}
