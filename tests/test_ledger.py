from datetime import datetime, timedelta

import pytest

from conftest import make_batch
from ptbook.errors import InsufficientPoints, ValidationError
from ptbook.models import PointBatch
from ptbook.services import ledger

NOW = datetime(2024, 6, 7, 12, 0)


def batch(batch_id, points, purchased, duration=60, expiry=None, original=None):
    return PointBatch(
        id=batch_id,
        member_id=1,
        duration_minutes=duration,
        original_points=original if original is not None else points,
        remaining_points=points,
        purchase_date=purchased,
        expiry_date=expiry or purchased + timedelta(days=180),
    )


@pytest.fixture
def three_batches():
    return [
        batch(3, 4, NOW - timedelta(days=10)),
        batch(1, 2, NOW - timedelta(days=30)),
        batch(2, 3, NOW - timedelta(days=20)),
    ]


def test_deduct_within_oldest_batch(three_batches):
    touched = ledger.deduct_points(three_batches, NOW, amount=2)
    by_id = {b.id: b.remaining_points for b in three_batches}
    assert [b.id for b in touched] == [1]
    assert by_id == {1: 0, 2: 3, 3: 4}


def test_deduct_spills_into_next_batch(three_batches):
    touched = ledger.deduct_points(three_batches, NOW, amount=3)
    by_id = {b.id: b.remaining_points for b in three_batches}
    assert [b.id for b in touched] == [1, 2]
    assert by_id == {1: 0, 2: 2, 3: 4}


def test_deduct_more_than_total_changes_nothing(three_batches):
    with pytest.raises(InsufficientPoints):
        ledger.deduct_points(three_batches, NOW, amount=10)
    assert {b.id: b.remaining_points for b in three_batches} == {1: 2, 2: 3, 3: 4}


def test_deduct_skips_expired_batches():
    expired = batch(1, 5, NOW - timedelta(days=200), expiry=NOW - timedelta(days=1))
    fresh = batch(2, 1, NOW - timedelta(days=5))
    ledger.deduct_points([expired, fresh], NOW)
    assert expired.remaining_points == 5
    assert fresh.remaining_points == 0


def test_deduct_rejects_non_positive_amount(three_batches):
    with pytest.raises(ValidationError):
        ledger.deduct_points(three_batches, NOW, amount=0)


def test_refund_into_all_expired_creates_batch():
    expired = batch(1, 0, NOW - timedelta(days=200), expiry=NOW - timedelta(days=1))
    refunded, created = ledger.refund_point([expired], member_id=1, now=NOW, amount=2)
    assert created
    assert refunded.remaining_points == 2
    assert refunded.original_points == 2
    assert refunded.product_id is None
    assert refunded.expiry_date == datetime(2024, 12, 7, 12, 0)
    assert expired.remaining_points == 0


def test_refund_into_empty_set_creates_batch():
    refunded, created = ledger.refund_point([], member_id=7, now=NOW, duration_minutes=30)
    assert created
    assert refunded.member_id == 7
    assert refunded.duration_minutes == 30


def test_refund_adds_to_newest_valid_batch():
    older = batch(1, 1, NOW - timedelta(days=30), original=5)
    newer = batch(2, 0, NOW - timedelta(days=3), original=5)
    refunded, created = ledger.refund_point([older, newer], member_id=1, now=NOW)
    assert not created
    assert refunded is newer
    assert newer.remaining_points == 1
    assert older.remaining_points == 1


def test_refund_into_full_batch_raises_original():
    full = batch(1, 5, NOW - timedelta(days=3))
    ledger.refund_point([full], member_id=1, now=NOW)
    assert full.remaining_points == 6
    assert full.original_points == 6


def test_expiry_clamps_month_end():
    assert ledger.expiry_for(datetime(2024, 8, 31, 10, 0)) == datetime(2025, 2, 28, 10, 0)


def test_summary_buckets_and_expiring():
    batches = [
        batch(1, 2, NOW - timedelta(days=170)),
        batch(2, 3, NOW - timedelta(days=10), duration=30),
        batch(3, 4, NOW - timedelta(days=200), expiry=NOW - timedelta(days=1)),
    ]
    summary = ledger.summarize_points(batches, NOW)
    assert summary.total == 5
    assert summary.by_duration == {30: 3, 60: 2}
    assert summary.expiring_total == 2
    assert summary.expiring_by_duration == {30: 0, 60: 2}
    assert summary.earliest_expiry == batches[0].expiry_date
    assert summary.active_batches == 2


def test_cleanup_expired_recomputes_total():
    batches = [
        batch(1, 2, NOW - timedelta(days=10)),
        batch(2, 4, NOW - timedelta(days=200), expiry=NOW),
    ]
    valid, total = ledger.cleanup_expired(batches, NOW)
    assert [b.id for b in valid] == [1]
    assert total == 2


def test_pick_duration_follows_oldest_batch():
    batches = [batch(1, 1, NOW - timedelta(days=3)), batch(2, 1, NOW - timedelta(days=9), duration=30)]
    assert ledger.pick_duration(batches, NOW) == 30


def test_pick_duration_without_points():
    with pytest.raises(InsufficientPoints):
        ledger.pick_duration([batch(1, 0, NOW - timedelta(days=3))], NOW)


def test_load_batches_filters_trainer_type(session, people, products):
    member = people["member"]
    standard = make_batch(session, member, 3, NOW - timedelta(days=5), product=products["standard"])
    make_batch(session, member, 3, NOW - timedelta(days=4), product=products["head"])
    refund = make_batch(session, member, 1, NOW - timedelta(days=3))

    loaded = ledger.load_batches(session, member.id, trainer_type=people["trainer_x"].trainer_type)
    assert {b.id for b in loaded} == {standard.id, refund.id}


def test_legacy_points_become_one_batch(session, people):
    member = people["member"]
    member.legacy_points = 4
    session.add(member)
    session.commit()

    batch = ledger.migrate_legacy_points(session, member, NOW)
    assert batch.remaining_points == 4
    assert batch.original_points == 4
    assert batch.expiry_date == datetime(2024, 12, 7, 12, 0)
    assert member.legacy_points == 0
    assert ledger.migrate_legacy_points(session, member, NOW) is None


def test_legacy_points_ignored_when_batches_exist(session, people):
    member = people["member"]
    make_batch(session, member, 1, NOW - timedelta(days=1))
    member.legacy_points = 4
    session.add(member)
    session.commit()
    assert ledger.migrate_legacy_points(session, member, NOW) is None
    assert member.legacy_points == 4


def test_timestamps_stay_naive(session, people):
    stored = make_batch(session, people["member"], 1, NOW - timedelta(days=1))
    session.expire_all()
    loaded = session.get(PointBatch, stored.id)
    assert loaded.expiry_date.tzinfo is None
    assert loaded.purchase_date == NOW - timedelta(days=1)
    assert PointBatch.__table__.c.expiry_date.type.timezone is False
