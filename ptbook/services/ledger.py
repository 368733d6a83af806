"""Point ledger: expiring, dated point batches per member.

Deduction walks batches oldest purchase first. Refunds go to the newest batch
that has not expired, or to a fresh batch when every batch has expired.
Batches are never deleted; expiry is a read-time comparison.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlmodel import Session, select

from ptbook.errors import InsufficientPoints, ValidationError
from ptbook.models import DURATION_BUCKETS, PointBatch, Product, TrainerType, User
from ptbook.settings import settings
from ptbook.time_utils import add_months

logger = logging.getLogger(__name__)


@dataclass
class PointSummary:
    total: int = 0
    by_duration: Dict[int, int] = field(default_factory=lambda: {d: 0 for d in DURATION_BUCKETS})
    expiring_total: int = 0
    expiring_by_duration: Dict[int, int] = field(
        default_factory=lambda: {d: 0 for d in DURATION_BUCKETS}
    )
    earliest_expiry: Optional[datetime] = None
    active_batches: int = 0


def expiry_for(purchase_date: datetime) -> datetime:
    return add_months(purchase_date, settings.point_validity_months)


def active_batches(batches: Sequence[PointBatch], now: datetime) -> List[PointBatch]:
    """Batches that still count: not expired and not drained."""
    return [
        b for b in batches if b.is_active and not b.is_expired(now) and b.remaining_points > 0
    ]


def deduct_points(
    batches: Sequence[PointBatch], now: datetime, amount: int = 1
) -> List[PointBatch]:
    """Take ``amount`` points from the oldest batches first.

    ``batches`` should already be narrowed to one duration bucket. Returns the
    batches that were drawn from, in draw order. Nothing is touched when the
    bucket cannot cover the amount.
    """
    if amount <= 0:
        raise ValidationError("Deduction amount must be positive")
    candidates = sorted(active_batches(batches, now), key=lambda b: (b.purchase_date, b.id or 0))
    total = sum(b.remaining_points for b in candidates)
    if total < amount:
        raise InsufficientPoints("Not enough points for this session length")

    remaining = amount
    touched: List[PointBatch] = []
    for batch in candidates:
        if remaining <= 0:
            break
        take = min(batch.remaining_points, remaining)
        batch.remaining_points -= take
        remaining -= take
        touched.append(batch)
    return touched


def refund_point(
    batches: Sequence[PointBatch],
    member_id: int,
    now: datetime,
    amount: int = 1,
    duration_minutes: int = 60,
) -> Tuple[PointBatch, bool]:
    """Credit ``amount`` points back. Returns ``(batch, created)``.

    A new batch is only created when no batch is still valid; ``duration_minutes``
    labels that new batch.
    """
    valid = [b for b in batches if b.is_active and not b.is_expired(now)]
    if not valid:
        batch = PointBatch(
            member_id=member_id,
            product_id=None,
            duration_minutes=duration_minutes,
            original_points=amount,
            remaining_points=amount,
            purchase_date=now,
            expiry_date=expiry_for(now),
        )
        return batch, True

    newest = max(valid, key=lambda b: (b.purchase_date, b.id or 0))
    newest.remaining_points += amount
    if newest.remaining_points > newest.original_points:
        newest.original_points = newest.remaining_points
    return newest, False


def cleanup_expired(batches: Sequence[PointBatch], now: datetime) -> Tuple[List[PointBatch], int]:
    """Drop expired batches from view and recompute the displayed total."""
    valid = [b for b in batches if not b.is_expired(now)]
    return valid, sum(b.remaining_points for b in valid)


def legacy_batch(member_id: int, points: int, now: datetime) -> PointBatch:
    """Wrap a bare point balance into a single batch expiring like a purchase."""
    return PointBatch(
        member_id=member_id,
        product_id=None,
        duration_minutes=60,
        original_points=points,
        remaining_points=points,
        purchase_date=now,
        expiry_date=expiry_for(now),
    )


def summarize_points(batches: Sequence[PointBatch], now: datetime) -> PointSummary:
    summary = PointSummary()
    warn_before = now + timedelta(days=settings.expiring_warning_days)
    for batch in active_batches(batches, now):
        bucket = batch.duration_minutes if batch.duration_minutes in DURATION_BUCKETS else 60
        summary.by_duration[bucket] += batch.remaining_points
        summary.total += batch.remaining_points
        summary.active_batches += 1
        if batch.expiry_date <= warn_before:
            summary.expiring_by_duration[bucket] += batch.remaining_points
            summary.expiring_total += batch.remaining_points
            if summary.earliest_expiry is None or batch.expiry_date < summary.earliest_expiry:
                summary.earliest_expiry = batch.expiry_date
    return summary


def member_trainer_type(session: Session, member: User) -> Optional[TrainerType]:
    if member.assigned_trainer_id is None:
        return None
    trainer = session.get(User, member.assigned_trainer_id)
    return trainer.trainer_type if trainer else None


def load_batches(
    session: Session,
    member_id: int,
    trainer_type: Optional[TrainerType] = None,
    duration_minutes: Optional[int] = None,
    for_update: bool = False,
) -> List[PointBatch]:
    """Fetch a member's batches, optionally narrowed to one trainer type and bucket.

    Batches without a product (refund or legacy credit) match every trainer type.
    """
    stmt = (
        select(PointBatch)
        .outerjoin(Product, Product.id == PointBatch.product_id)
        .where(PointBatch.member_id == member_id, PointBatch.is_active == True)  # noqa: E712
    )
    if trainer_type is not None:
        stmt = stmt.where(or_(PointBatch.product_id.is_(None), Product.trainer_type == trainer_type))
    if duration_minutes is not None:
        stmt = stmt.where(PointBatch.duration_minutes == duration_minutes)
    if for_update:
        stmt = stmt.with_for_update(of=PointBatch)
    stmt = stmt.order_by(PointBatch.expiry_date.asc(), PointBatch.id.asc())
    return list(session.exec(stmt).all())


def pick_duration(batches: Sequence[PointBatch], now: datetime) -> int:
    """Bucket of the batch that would be spent first when the caller did not choose."""
    candidates = active_batches(batches, now)
    if not candidates:
        raise InsufficientPoints("You need at least one point to book a session")
    first = min(candidates, key=lambda b: (b.purchase_date, b.id or 0))
    return first.duration_minutes


def migrate_legacy_points(session: Session, member: User, now: datetime) -> Optional[PointBatch]:
    """Move a bare ``legacy_points`` balance into a batch when the member has none."""
    if member.legacy_points <= 0:
        return None
    has_batches = session.exec(
        select(PointBatch.id).where(PointBatch.member_id == member.id).limit(1)
    ).first()
    if has_batches is not None:
        return None
    batch = legacy_batch(member.id, member.legacy_points, now)
    member.legacy_points = 0
    session.add(batch)
    session.add(member)
    session.commit()
    session.refresh(batch)
    logger.info(
        "Moved %s legacy points of member %s into batch %s",
        batch.original_points,
        member.id,
        batch.id,
    )
    return batch
