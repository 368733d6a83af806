"""Monthly per-trainer settlement figures, recomputed on every view."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from sqlmodel import Session, select

from ptbook.models import Appointment, AppointmentStatus
from ptbook.time_utils import month_bounds

UNASSIGNED_PRODUCT = "unassigned"


@dataclass
class TrainerStats:
    trainer_id: int
    trainer_name: str
    total_appointments: int = 0
    fulfilled_appointments: int = 0
    cancelled_appointments: int = 0
    no_show_appointments: int = 0
    fulfilled_by_product: Dict[str, int] = field(default_factory=dict)
    cancelled_by_product: Dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.total_appointments == 0:
            return 0.0
        return self.fulfilled_appointments / self.total_appointments

    def as_dict(self) -> dict:
        return {
            "trainerId": self.trainer_id,
            "trainerName": self.trainer_name,
            "totalAppointments": self.total_appointments,
            "fulfilledAppointments": self.fulfilled_appointments,
            "cancelledAppointments": self.cancelled_appointments,
            "noShowAppointments": self.no_show_appointments,
            "fulfilledByProduct": self.fulfilled_by_product,
            "cancelledByProduct": self.cancelled_by_product,
            "successRate": self.success_rate,
        }


def _product_key(appointment: Appointment) -> str:
    if appointment.product_id is None:
        return UNASSIGNED_PRODUCT
    return str(appointment.product_id)


def aggregate_month(appointments: Iterable[Appointment], year: int, month: int) -> List[TrainerStats]:
    """Fold appointments dated inside ``year-month`` into per-trainer stats."""
    first, last = month_bounds(year, month)
    stats: Dict[int, TrainerStats] = {}
    fulfilled: Dict[int, Counter] = {}
    cancelled: Dict[int, Counter] = {}

    for appointment in appointments:
        if not (first <= appointment.date <= last):
            continue
        tid = appointment.trainer_id
        entry = stats.get(tid)
        if entry is None:
            entry = stats[tid] = TrainerStats(trainer_id=tid, trainer_name=appointment.trainer_name)
            fulfilled[tid] = Counter()
            cancelled[tid] = Counter()
        entry.total_appointments += 1
        if appointment.status == AppointmentStatus.completed:
            entry.fulfilled_appointments += 1
            fulfilled[tid][_product_key(appointment)] += 1
        elif appointment.status == AppointmentStatus.cancelled:
            entry.cancelled_appointments += 1
            cancelled[tid][_product_key(appointment)] += 1
        elif appointment.status == AppointmentStatus.no_show:
            entry.no_show_appointments += 1

    for tid, entry in stats.items():
        entry.fulfilled_by_product = dict(sorted(fulfilled[tid].items()))
        entry.cancelled_by_product = dict(sorted(cancelled[tid].items()))
    return sorted(stats.values(), key=lambda s: (s.trainer_name, s.trainer_id))


def settlement_for_month(session: Session, year: int, month: int) -> List[TrainerStats]:
    first, last = month_bounds(year, month)
    appointments = session.exec(
        select(Appointment).where(Appointment.date >= first, Appointment.date <= last)
    ).all()
    return aggregate_month(appointments, year, month)
