from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from ptbook.auth import hash_password
from ptbook.db import get_session
from ptbook.main import app
from ptbook.models import PointBatch, Product, TrainerType, User, UserRole
from ptbook.time_utils import current_time

NOW = datetime(2024, 6, 7, 12, 0)
PASSWORD = "correct-horse"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


def make_user(session, name, email, role, **extra):
    user = User(name=name, email=email, password_hash=hash_password(PASSWORD), role=role, **extra)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def make_batch(session, member, points, purchase_date, duration_minutes=60, product=None, expiry=None):
    batch = PointBatch(
        member_id=member.id,
        product_id=product.id if product else None,
        duration_minutes=duration_minutes,
        original_points=points,
        remaining_points=points,
        purchase_date=purchase_date,
        expiry_date=expiry or purchase_date + timedelta(days=180),
    )
    session.add(batch)
    session.commit()
    session.refresh(batch)
    return batch


@pytest.fixture
def people(session):
    """Admin, two trainers and two members assigned to the first trainer."""
    admin = make_user(session, "Admin", "admin@example.com", UserRole.admin)
    trainer_x = make_user(
        session, "Trainer X", "x@example.com", UserRole.trainer, trainer_type=TrainerType.standard
    )
    trainer_y = make_user(
        session, "Trainer Y", "y@example.com", UserRole.trainer, trainer_type=TrainerType.head
    )
    member = make_user(
        session, "Mina", "mina@example.com", UserRole.member, assigned_trainer_id=trainer_x.id
    )
    other = make_user(
        session, "Otto", "otto@example.com", UserRole.member, assigned_trainer_id=trainer_x.id
    )
    return {
        "admin": admin,
        "trainer_x": trainer_x,
        "trainer_y": trainer_y,
        "member": member,
        "other": other,
    }


@pytest.fixture
def products(session):
    standard = Product(name="10 x 60 min", points=10, price=500.0, duration_minutes=60)
    short = Product(name="10 x 30 min", points=10, price=300.0, duration_minutes=30)
    head = Product(
        name="Head coach 60 min", points=5, price=450.0, trainer_type=TrainerType.head
    )
    for p in (standard, short, head):
        session.add(p)
    session.commit()
    for p in (standard, short, head):
        session.refresh(p)
    return {"standard": standard, "short": short, "head": head}


@pytest.fixture
def clock():
    """Mutable request clock used by the app under test."""
    return {"now": NOW}


@pytest.fixture
def client(engine, clock):
    def _session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _session_override
    app.dependency_overrides[current_time] = lambda: clock["now"]
    yield TestClient(app)
    app.dependency_overrides.clear()


def login(client, email):
    response = client.post(
        "/login", data={"email": email, "password": PASSWORD}, follow_redirects=False
    )
    assert response.status_code == 302
    return client
