from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from ptbook.errors import AccessDenied, NotFound, ValidationError
from ptbook.models import (
    DURATION_BUCKETS,
    PointBatch,
    Product,
    PurchaseLog,
    TrainerType,
    User,
    UserRole,
)
from ptbook.services.ledger import expiry_for, member_trainer_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseStats:
    total_purchases: int
    total_revenue: float
    unique_customers: int
    avg_purchase_value: float


def list_products(session: Session, viewer: User) -> List[Product]:
    stmt = select(Product).where(Product.is_active == True)  # noqa: E712
    if viewer.role == UserRole.member:
        trainer_type = member_trainer_type(session, viewer)
        if trainer_type is not None:
            stmt = stmt.where(Product.trainer_type == trainer_type)
    stmt = stmt.order_by(Product.display_order, Product.name)
    return list(session.exec(stmt).all())


def purchase_product(session: Session, member: User, product_id: int, now: datetime) -> PointBatch:
    """Record a (simulated) card payment and issue the matching point batch."""
    if member.role != UserRole.member:
        raise AccessDenied("Only members can purchase points")
    product = session.get(Product, product_id)
    if not product or not product.is_active:
        raise NotFound("Product not found")
    trainer_type = member_trainer_type(session, member)
    if trainer_type is not None and product.trainer_type != trainer_type:
        raise AccessDenied("This product is not available for your trainer")

    batch = PointBatch(
        member_id=member.id,
        product_id=product.id,
        duration_minutes=product.duration_minutes,
        original_points=product.points,
        remaining_points=product.points,
        purchase_date=now,
        expiry_date=expiry_for(now),
    )
    session.add(batch)
    session.flush()
    session.add(
        PurchaseLog(
            member_id=member.id,
            member_name=member.name,
            member_email=member.email,
            product_id=product.id,
            point_batch_id=batch.id,
            points=product.points,
            price=product.price,
            created_at=now,
        )
    )
    session.commit()
    session.refresh(batch)
    logger.info(
        "Member %s purchased product %s: %s points (%s min)",
        member.id,
        product.id,
        product.points,
        product.duration_minutes,
    )
    return batch


def purchase_history(
    session: Session,
    viewer: User,
    member_id: Optional[int] = None,
    product_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> tuple:
    """Purchase rows plus summary stats over completed payments."""
    conditions = []
    if viewer.role != UserRole.admin:
        if member_id is not None and member_id != viewer.id:
            raise AccessDenied("Access denied")
        conditions.append(PurchaseLog.member_id == viewer.id)
    elif member_id is not None:
        conditions.append(PurchaseLog.member_id == member_id)
    if product_id is not None:
        conditions.append(PurchaseLog.product_id == product_id)
    if start is not None:
        conditions.append(PurchaseLog.created_at >= start)
    if end is not None:
        conditions.append(PurchaseLog.created_at <= end)

    rows = session.exec(
        select(PurchaseLog).where(*conditions).order_by(PurchaseLog.created_at.desc())
    ).all()

    count, revenue, customers, average = session.exec(
        select(
            func.count(PurchaseLog.id),
            func.coalesce(func.sum(PurchaseLog.price), 0),
            func.count(func.distinct(PurchaseLog.member_id)),
            func.coalesce(func.avg(PurchaseLog.price), 0),
        ).where(PurchaseLog.payment_status == "completed", *conditions)
    ).one()
    stats = PurchaseStats(
        total_purchases=int(count),
        total_revenue=float(revenue),
        unique_customers=int(customers),
        avg_purchase_value=float(average),
    )
    return list(rows), stats


def create_product(
    session: Session,
    name: str,
    duration_minutes: int,
    points: int,
    price: float,
    trainer_type: TrainerType,
    description: str = "",
    display_order: int = 0,
) -> Product:
    if not name.strip():
        raise ValidationError("Product name is required")
    if duration_minutes not in DURATION_BUCKETS:
        raise ValidationError("Session length must be 30 or 60 minutes")
    if points <= 0 or price < 0:
        raise ValidationError("Points must be positive and price cannot be negative")
    product = Product(
        name=name.strip(),
        description=description.strip(),
        duration_minutes=duration_minutes,
        points=points,
        price=price,
        trainer_type=trainer_type,
        display_order=display_order,
    )
    session.add(product)
    session.commit()
    session.refresh(product)
    return product


def toggle_product(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if not product:
        raise NotFound("Product not found")
    product.is_active = not product.is_active
    session.add(product)
    session.commit()
    session.refresh(product)
    return product
