from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ptbook.time_utils import minute_to_hm


class UserRole(str, Enum):
    member = "member"
    trainer = "trainer"
    admin = "admin"


class TrainerType(str, Enum):
    standard = "standard"
    head = "head"


class AppointmentStatus(str, Enum):
    scheduled = "scheduled"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


class LogAction(str, Enum):
    booked = "booked"
    cancelled = "cancelled"
    completed = "completed"
    no_show = "no_show"


DURATION_BUCKETS = (30, 60)
STAFF_ROLES = frozenset({UserRole.trainer, UserRole.admin})


# Timestamps are naive local wall time, the same clock as `current_time`.
LocalDateTime = DateTime(timezone=False)


class User(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("email"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True)
    phone: str = ""
    password_hash: str
    role: UserRole = Field(index=True)
    trainer_type: Optional[TrainerType] = None
    assigned_trainer_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    memo: Optional[str] = None
    # Pre-batch point balance; moved into a PointBatch on first read.
    legacy_points: int = 0
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=datetime.now, sa_type=LocalDateTime, index=True)

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class Product(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: str = ""
    duration_minutes: int = 60
    points: int
    price: float
    trainer_type: TrainerType = Field(default=TrainerType.standard, index=True)
    display_order: int = 0
    is_active: bool = Field(default=True, index=True)


class PointBatch(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    member_id: int = Field(foreign_key="user.id", index=True)
    product_id: Optional[int] = Field(default=None, foreign_key="product.id")
    duration_minutes: int = 60
    original_points: int
    remaining_points: int
    purchase_date: datetime = Field(sa_type=LocalDateTime, index=True)
    expiry_date: datetime = Field(sa_type=LocalDateTime, index=True)
    is_active: bool = Field(default=True, index=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_date <= now


class Appointment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    member_id: int = Field(foreign_key="user.id", index=True)
    member_name: str
    member_email: str
    trainer_id: int = Field(foreign_key="user.id", index=True)
    trainer_name: str
    date: str = Field(index=True)
    start_minute: int = Field(index=True)
    duration_minutes: int = 60
    status: AppointmentStatus = Field(default=AppointmentStatus.scheduled, index=True)
    product_id: Optional[int] = Field(default=None, foreign_key="product.id")
    used_point_batch_id: Optional[int] = Field(default=None, foreign_key="pointbatch.id")
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now, sa_type=LocalDateTime, index=True)
    updated_at: datetime = Field(default_factory=datetime.now, sa_type=LocalDateTime)

    @property
    def time(self) -> str:
        return minute_to_hm(self.start_minute)

    @property
    def end_minute(self) -> int:
        return self.start_minute + self.duration_minutes


class SlotClaim(SQLModel, table=True):
    """One row per grid cell held by a live appointment."""

    __table_args__ = (UniqueConstraint("trainer_id", "date", "slot_minute"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    trainer_id: int = Field(foreign_key="user.id")
    date: str
    slot_minute: int
    appointment_id: int = Field(foreign_key="appointment.id", index=True)


class AppointmentLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    appointment_id: int = Field(foreign_key="appointment.id", index=True)
    action: LogAction = Field(index=True)
    action_by: int = Field(foreign_key="user.id", index=True)
    action_by_name: str
    action_by_role: UserRole
    timestamp: datetime = Field(default_factory=datetime.now, sa_type=LocalDateTime, index=True)
    appointment_date: str
    appointment_time: str
    trainer_id: int
    trainer_name: str
    member_id: int = Field(index=True)
    member_name: str
    member_email: str
    product_id: Optional[int] = None
    used_point_batch_id: Optional[int] = None
    notes: Optional[str] = None


class PurchaseLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    member_id: int = Field(foreign_key="user.id", index=True)
    member_name: str
    member_email: str
    product_id: int = Field(foreign_key="product.id", index=True)
    point_batch_id: Optional[int] = Field(default=None, foreign_key="pointbatch.id")
    points: int
    price: float
    payment_method: str = "card"
    payment_status: str = "completed"
    created_at: datetime = Field(default_factory=datetime.now, sa_type=LocalDateTime, index=True)
