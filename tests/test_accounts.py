from datetime import datetime, timedelta

import pytest

from conftest import NOW, PASSWORD, login, make_batch
from ptbook.auth import authenticate_user, change_password, signup_member, update_user, verify_password
from ptbook.errors import AccessDenied, ValidationError
from ptbook.models import UserRole
from ptbook.services import bookings, purchases


def test_signup_creates_member(session, people):
    member = signup_member(
        session, " Nora ", "Nora@Example.com", "010-1234", "long-password", people["trainer_x"].id
    )
    assert member.role == UserRole.member
    assert member.email == "nora@example.com"
    assert member.assigned_trainer_id == people["trainer_x"].id
    assert authenticate_user(session, "NORA@example.com", "long-password").id == member.id


def test_signup_rejects_duplicate_email(session, people):
    with pytest.raises(ValidationError, match="already exists"):
        signup_member(session, "Mina 2", "MINA@example.com", "010", "long-password", people["trainer_x"].id)


@pytest.mark.parametrize("password", ["", "short", "12345678"])
def test_signup_password_must_exceed_eight(session, people, password):
    with pytest.raises(ValidationError):
        signup_member(session, "Nora", "nora@example.com", "010", password, people["trainer_x"].id)


def test_signup_password_of_nine_is_enough(session, people):
    signup_member(session, "Nora", "nora@example.com", "010", "123456789", people["trainer_x"].id)


def test_signup_requires_active_trainer(session, people):
    with pytest.raises(ValidationError, match="Invalid trainer"):
        signup_member(session, "Nora", "nora@example.com", "010", "long-password", people["member"].id)

    trainer = people["trainer_y"]
    trainer.is_active = False
    session.add(trainer)
    session.commit()
    with pytest.raises(ValidationError, match="Invalid trainer"):
        signup_member(session, "Nora", "nora@example.com", "010", "long-password", trainer.id)


def test_change_password_checks_current(session, people):
    member = people["member"]
    with pytest.raises(ValidationError, match="incorrect"):
        change_password(session, member, "wrong-password", "another-password")
    with pytest.raises(ValidationError):
        change_password(session, member, PASSWORD, "short")
    change_password(session, member, PASSWORD, "another-password")
    assert verify_password("another-password", member.password_hash)


def test_purchase_of_other_trainer_type_is_denied(session, people, products):
    with pytest.raises(AccessDenied):
        purchases.purchase_product(session, people["member"], products["head"].id, NOW)


def test_admin_point_batches(client, session, people, products):
    member = people["member"]
    live = make_batch(session, member, 3, NOW - timedelta(days=5), product=products["standard"])
    make_batch(session, member, 2, NOW - timedelta(days=200), expiry=NOW - timedelta(days=1))

    login(client, "admin@example.com")
    body = client.get("/api/admin/user-point-batches", params={"user_id": member.id}).json()
    assert body["userId"] == member.id
    assert [b["id"] for b in body["pointBatches"]] == [live.id]
    assert client.get(
        "/api/admin/user-point-batches", params={"user_id": people["trainer_x"].id}
    ).status_code == 404


def test_member_cannot_see_point_batches(client, people):
    login(client, "mina@example.com")
    response = client.get("/api/admin/user-point-batches", params={"user_id": people["member"].id})
    assert response.status_code == 403


def test_log_visibility_for_non_admins(session, people, products):
    make_batch(session, people["member"], 1, NOW - timedelta(days=5), product=products["standard"])
    appointment = bookings.create_booking(
        session, people["member"], people["member"].id, people["trainer_x"].id, "2024-06-10", "09:00", NOW
    ).appointment
    bookings.complete_booking(session, people["trainer_x"], appointment.id, datetime(2024, 6, 10, 10, 0))

    assert len(bookings.list_logs(session, people["member"])) == 2
    assert len(bookings.list_logs(session, people["admin"])) == 2
    assert [e.action_by for e in bookings.list_logs(session, people["trainer_x"])] == [
        people["trainer_x"].id
    ]
    assert bookings.list_logs(session, people["other"]) == []
    assert bookings.list_logs(session, people["trainer_y"]) == []


def test_admin_lists_active_users(client, session, people):
    other = people["other"]
    other.is_active = False
    session.add(other)
    session.commit()

    login(client, "admin@example.com")
    emails = {u["email"] for u in client.get("/api/users").json()["users"]}
    assert "mina@example.com" in emails
    assert "otto@example.com" not in emails
    everyone = client.get("/api/users", params={"include_inactive": True}).json()["users"]
    assert "otto@example.com" in {u["email"] for u in everyone}


def test_admin_updates_memo_and_trainer(client, people):
    login(client, "admin@example.com")
    response = client.put(
        "/api/users",
        data={"user_id": people["member"].id, "memo": "Knee injury", "phone": "010-9999"},
    )
    assert response.status_code == 200
    assert response.json()["user"]["memo"] == "Knee injury"
    assert response.json()["user"]["phone"] == "010-9999"

    bad = client.put(
        "/api/users",
        data={"user_id": people["member"].id, "assigned_trainer_id": people["other"].id},
    )
    assert bad.status_code == 400
    assert bad.json()["code"] == "validation_error"


def test_update_user_keeps_unset_fields(session, people):
    member = people["member"]
    updated = update_user(session, people["admin"], member.id, assigned_trainer_id=people["trainer_y"].id)
    assert updated.assigned_trainer_id == people["trainer_y"].id
    assert updated.name == "Mina"
    with pytest.raises(ValidationError):
        update_user(session, people["admin"], people["admin"].id, is_active=False)


def test_only_admins_manage_users(client, people):
    login(client, "x@example.com")
    assert client.get("/api/users").status_code == 403
    assert client.put("/api/users", data={"user_id": people["member"].id, "memo": "x"}).status_code == 403


def test_delete_account_refuses_user_id(client, session, people):
    login(client, "mina@example.com")
    for field in ("user_id", "id"):
        response = client.post("/api/users/delete-account", data={field: people["other"].id})
        assert response.status_code == 403
    session.refresh(people["other"])
    session.refresh(people["member"])
    assert people["other"].is_active
    assert people["member"].is_active


def test_delete_account_deactivates_self(client, session, people):
    login(client, "mina@example.com")
    response = client.post("/api/users/delete-account")
    assert response.json()["success"] is True
    assert client.get("/api/auth/me").status_code == 401
    session.refresh(people["member"])
    assert not people["member"].is_active
    assert authenticate_user(session, "mina@example.com", PASSWORD) is None
