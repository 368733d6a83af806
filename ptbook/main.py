import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, Form, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import JSONResponse

from ptbook.api import router as api_router
from ptbook.auth import (
    SESSION_USER_KEY,
    authenticate_user,
    create_user,
    ensure_bootstrap_admin,
    get_current_user,
    require_roles,
    signup_member,
    toggle_active,
)
from ptbook.db import create_db_and_tables, engine, get_session
from ptbook.errors import BookingError, DependencyFailure, InsufficientPoints
from ptbook.models import AppointmentStatus, Product, TrainerType, User, UserRole
from ptbook.services import bookings, ledger, purchases
from ptbook.services.availability import SlotState, get_availability, grid_minutes
from ptbook.services.settlement import settlement_for_month
from ptbook.settings import settings
from ptbook.time_utils import (
    canonical_ymd,
    current_time,
    minute_to_hm,
    parse_ym,
    parse_ymd,
    week_start,
    weekday_label,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).parent

app = FastAPI(title="ptbook")
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    same_site="lax",
    https_only=settings.cookie_secure,
)

app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
app.include_router(api_router)


def _wants_html(request: Request) -> bool:
    return not request.url.path.startswith("/api/")


@app.exception_handler(BookingError)
def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code == 401 and request.method == "GET" and _wants_html(request):
        return RedirectResponse(url="/login", status_code=302)
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.message, "code": exc.code}
    )


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "error": "Missing or malformed fields: " + ", ".join(f for f in fields if f),
            "code": "validation_error",
        },
    )


@app.exception_handler(SQLAlchemyError)
def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database failure on %s %s", request.method, request.url.path)
    failure = DependencyFailure("The service is temporarily unavailable")
    return JSONResponse(
        status_code=failure.status_code, content={"error": failure.message, "code": failure.code}
    )


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()
    with Session(engine) as session:
        ensure_bootstrap_admin(
            session=session,
            email=settings.bootstrap_admin_email,
            password=settings.bootstrap_admin_password,
        )
    logger.info("ptbook started")


def _redirect(url: str, msg: Optional[str] = None) -> RedirectResponse:
    if msg:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}msg={quote(msg)}"
    return RedirectResponse(url=url, status_code=302)


def _active_trainers(session: Session):
    return session.exec(
        select(User)
        .where(User.role == UserRole.trainer, User.is_active == True)  # noqa: E712
        .order_by(User.name)
    ).all()


@app.get("/")
def root(request: Request):
    if not request.session.get(SESSION_USER_KEY):
        return RedirectResponse(url="/login", status_code=302)
    return RedirectResponse(url="/dashboard", status_code=302)


@app.get("/login")
def login_page(request: Request, msg: Optional[str] = None):
    if request.session.get(SESSION_USER_KEY):
        return RedirectResponse(url="/dashboard", status_code=302)
    return templates.TemplateResponse(request, "login.html", {"msg": msg})


@app.post("/login")
def login_submit(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    session: Session = Depends(get_session),
):
    user = authenticate_user(session=session, email=email, password=password)
    if not user:
        logger.info("Failed login for %s", email)
        return templates.TemplateResponse(
            request,
            "login.html",
            {"error": "Invalid email or password"},
            status_code=400,
        )
    request.session[SESSION_USER_KEY] = user.id
    return RedirectResponse(url="/dashboard", status_code=302)


@app.get("/signup")
def signup_page(request: Request, session: Session = Depends(get_session)):
    return templates.TemplateResponse(
        request, "signup.html", {"trainers": _active_trainers(session)}
    )


@app.post("/signup")
def signup_submit(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    phone: str = Form(""),
    password: str = Form(""),
    assigned_trainer_id: Optional[int] = Form(None),
    session: Session = Depends(get_session),
):
    try:
        member = signup_member(session, name, email, phone, password, assigned_trainer_id)
    except BookingError as e:
        return templates.TemplateResponse(
            request,
            "signup.html",
            {"trainers": _active_trainers(session), "error": e.message},
            status_code=e.status_code,
        )
    request.session[SESSION_USER_KEY] = member.id
    return RedirectResponse(url="/dashboard", status_code=302)


@app.get("/logout")
def logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/login", status_code=302)


@app.get("/dashboard")
def dashboard(
    request: Request,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
    msg: Optional[str] = None,
):
    summary = None
    if user.role == UserRole.member:
        ledger.migrate_legacy_points(session, user, now)
        trainer_type = ledger.member_trainer_type(session, user)
        summary = ledger.summarize_points(ledger.load_batches(session, user.id, trainer_type), now)
    upcoming = [
        a
        for a in bookings.list_appointments(session, user, status=AppointmentStatus.scheduled)
        if a.date >= now.strftime("%Y-%m-%d")
    ]
    upcoming.reverse()
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {"user": user, "summary": summary, "upcoming": upcoming[:10], "msg": msg},
    )


def _default_duration(session: Session, user: User, now: datetime) -> int:
    """Session length of the batch a member would spend first."""
    if user.role != UserRole.member:
        return 60
    ledger.migrate_legacy_points(session, user, now)
    batches = ledger.load_batches(session, user.id, ledger.member_trainer_type(session, user))
    try:
        return ledger.pick_duration(batches, now)
    except InsufficientPoints:
        return 60


@app.get("/schedule")
def schedule_page(
    request: Request,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
    trainer_id: Optional[int] = None,
    week: Optional[str] = None,
    duration: Optional[int] = None,
    msg: Optional[str] = None,
):
    trainers = _active_trainers(session)
    if duration is None:
        duration = _default_duration(session, user, now)
    if trainer_id is None:
        if user.role == UserRole.member and user.assigned_trainer_id:
            trainer_id = user.assigned_trainer_id
        elif user.role == UserRole.trainer:
            trainer_id = user.id
        elif trainers:
            trainer_id = trainers[0].id
    try:
        first_day = week_start(parse_ymd(week) if week else now.date())
    except ValueError:
        first_day = week_start(now.date())

    grid = {}
    if trainer_id is not None:
        try:
            grid = get_availability(
                session, user, trainer_id, first_day.strftime("%Y-%m-%d"), now,
                duration_minutes=duration,
            )
        except BookingError as e:
            msg = e.message

    rows = []
    for index, minute in enumerate(grid_minutes()):
        rows.append(
            {
                "time": minute_to_hm(minute),
                "cells": [slots[index] for slots in grid.values()],
            }
        )

    return templates.TemplateResponse(
        request,
        "schedule.html",
        {
            "user": user,
            "trainers": trainers,
            "trainer_id": trainer_id,
            "days": [(day, weekday_label(parse_ymd(day).weekday())) for day in grid],
            "rows": rows,
            "duration": duration,
            "week": first_day.strftime("%Y-%m-%d"),
            "prev_week": (first_day - timedelta(days=7)).strftime("%Y-%m-%d"),
            "next_week": (first_day + timedelta(days=7)).strftime("%Y-%m-%d"),
            "SlotState": SlotState,
            "can_cancel": lambda day: bookings.member_cancel_allowed_on(day, now),
            "msg": msg,
        },
    )


@app.post("/schedule/book")
def schedule_book(
    trainer_id: int = Form(...),
    date: str = Form(...),
    time: str = Form(...),
    duration_minutes: Optional[int] = Form(None),
    user: User = Depends(require_roles([UserRole.member])),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    back = f"/schedule?trainer_id={trainer_id}&week={quote(date)}"
    if duration_minutes is not None:
        back += f"&duration={duration_minutes}"
    try:
        bookings.create_booking(
            session, user, user.id, trainer_id, date, time, now, duration_minutes=duration_minutes
        )
    except BookingError as e:
        return _redirect(back, e.message)
    return _redirect(back, "Appointment booked")


@app.post("/schedule/{appointment_id}/cancel")
def schedule_cancel(
    appointment_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    try:
        result = bookings.cancel_booking(session, user, appointment_id, now)
    except BookingError as e:
        return _redirect("/schedule", e.message)
    appointment = result.appointment
    return _redirect(
        f"/schedule?trainer_id={appointment.trainer_id}&week={appointment.date}",
        "Appointment cancelled and point refunded",
    )


@app.get("/sessions")
def sessions_page(
    request: Request,
    user: User = Depends(require_roles([UserRole.trainer, UserRole.admin])),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
    trainer_id: Optional[int] = None,
    date: Optional[str] = None,
    msg: Optional[str] = None,
):
    if date:
        try:
            date = canonical_ymd(date)
        except ValueError:
            date, msg = None, "Invalid date"
    items = bookings.list_appointments(session, user, trainer_id=trainer_id, date=date or None)
    today = now.strftime("%Y-%m-%d")
    upcoming = [a for a in items if a.status == AppointmentStatus.scheduled and a.date >= today]
    history = [a for a in items if a not in upcoming]
    upcoming.reverse()
    return templates.TemplateResponse(
        request,
        "sessions.html",
        {
            "user": user,
            "trainers": _active_trainers(session),
            "trainer_id": trainer_id,
            "date": date,
            "upcoming": upcoming,
            "history": history,
            "minute_to_hm": minute_to_hm,
            "AppointmentStatus": AppointmentStatus,
            "msg": msg,
        },
    )


_SESSION_ACTIONS = {
    "complete": (bookings.complete_booking, "Session marked completed"),
    "no-show": (bookings.mark_no_show, "Session marked as no-show"),
    "cancel": (bookings.cancel_booking, "Session cancelled and point refunded"),
}


@app.post("/sessions/{appointment_id}/{action}")
def sessions_action(
    appointment_id: int,
    action: str,
    user: User = Depends(require_roles([UserRole.trainer, UserRole.admin])),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    if action not in _SESSION_ACTIONS:
        return _redirect("/sessions", "Unknown action")
    handler, done = _SESSION_ACTIONS[action]
    try:
        handler(session, user, appointment_id, now)
    except BookingError as e:
        return _redirect("/sessions", e.message)
    return _redirect("/sessions", done)


@app.post("/sessions/auto-complete")
def sessions_auto_complete(
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    result = bookings.auto_complete_past(session, user, now)
    return _redirect("/sessions", f"Auto-completed {len(result.appointments)} past appointments")


@app.get("/purchase")
def purchase_page(
    request: Request,
    user: User = Depends(require_roles([UserRole.member])),
    session: Session = Depends(get_session),
    msg: Optional[str] = None,
):
    products = purchases.list_products(session, user)
    history, stats = purchases.purchase_history(session, user)
    return templates.TemplateResponse(
        request,
        "purchase.html",
        {"user": user, "products": products, "history": history, "stats": stats, "msg": msg},
    )


@app.post("/purchase")
def purchase_submit(
    product_id: int = Form(...),
    user: User = Depends(require_roles([UserRole.member])),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
):
    try:
        batch = purchases.purchase_product(session, user, product_id, now)
    except BookingError as e:
        return _redirect("/purchase", e.message)
    return _redirect("/purchase", f"{batch.original_points} points added")


@app.get("/settlement")
def settlement_page(
    request: Request,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
    now: datetime = Depends(current_time),
    month: Optional[str] = None,
):
    selected = month or now.strftime("%Y-%m")
    error = None
    try:
        year, month_number = parse_ym(selected)
        stats = settlement_for_month(session, year, month_number)
    except ValueError:
        stats, error = [], "Month must look like YYYY-MM"
    return templates.TemplateResponse(
        request,
        "settlement.html",
        {
            "user": user,
            "month": selected,
            "stats": stats,
            "total_fulfilled": sum(s.fulfilled_appointments for s in stats),
            "total_cancelled": sum(s.cancelled_appointments for s in stats),
            "msg": error,
        },
    )


@app.get("/admin/users")
def admin_users(
    request: Request,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
    msg: Optional[str] = None,
):
    users = session.exec(select(User).order_by(User.role, User.name)).all()
    return templates.TemplateResponse(
        request,
        "admin_users.html",
        {
            "user": user,
            "users": users,
            "trainers": _active_trainers(session),
            "UserRole": UserRole,
            "TrainerType": TrainerType,
            "msg": msg,
        },
    )


@app.post("/admin/users/create")
def admin_create_user(
    name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    role: str = Form(...),
    phone: str = Form(""),
    trainer_type: Optional[str] = Form(None),
    assigned_trainer_id: Optional[int] = Form(None),
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
):
    try:
        role_enum = UserRole(role)
        type_enum = TrainerType(trainer_type) if trainer_type else None
    except ValueError:
        return _redirect("/admin/users", "Invalid role")
    try:
        create_user(
            session,
            name=name,
            email=email,
            password=password,
            role=role_enum,
            phone=phone,
            trainer_type=type_enum,
            assigned_trainer_id=assigned_trainer_id,
        )
    except BookingError as e:
        return _redirect("/admin/users", e.message)
    return _redirect("/admin/users", "User created")


@app.post("/admin/users/{target_user_id}/toggle")
def admin_toggle_user(
    target_user_id: int,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
):
    if target_user_id == user.id:
        return _redirect("/admin/users", "You cannot deactivate yourself")
    try:
        toggle_active(session, target_user_id)
    except BookingError as e:
        return _redirect("/admin/users", e.message)
    return _redirect("/admin/users", "Status updated")


@app.get("/admin/products")
def admin_products(
    request: Request,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
    msg: Optional[str] = None,
):
    products = session.exec(select(Product).order_by(Product.display_order, Product.name)).all()
    return templates.TemplateResponse(
        request,
        "admin_products.html",
        {"user": user, "products": products, "TrainerType": TrainerType, "msg": msg},
    )


@app.post("/admin/products/create")
def admin_create_product(
    name: str = Form(...),
    duration_minutes: int = Form(...),
    points: int = Form(...),
    price: float = Form(...),
    trainer_type: str = Form(TrainerType.standard.value),
    description: str = Form(""),
    display_order: int = Form(0),
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
):
    try:
        purchases.create_product(
            session,
            name=name,
            duration_minutes=duration_minutes,
            points=points,
            price=price,
            trainer_type=TrainerType(trainer_type),
            description=description,
            display_order=display_order,
        )
    except ValueError:
        return _redirect("/admin/products", "Invalid trainer type")
    except BookingError as e:
        return _redirect("/admin/products", e.message)
    return _redirect("/admin/products", "Product created")


@app.post("/admin/products/{product_id}/toggle")
def admin_toggle_product(
    product_id: int,
    user: User = Depends(require_roles([UserRole.admin])),
    session: Session = Depends(get_session),
):
    try:
        purchases.toggle_product(session, product_id)
    except BookingError as e:
        return _redirect("/admin/products", e.message)
    return _redirect("/admin/products", "Product updated")
