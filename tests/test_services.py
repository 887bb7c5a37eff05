from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from ktra import models, services
from ktra.results import Status
from ktra.schemas import OrderUpdate, ParticipantSubmit, ParticipantUpdate
from ktra.settings import settings


def _submission(**overrides):
    data = dict(
        participant_index=1,
        name="홍길동",
        gender="m",
        birth_date="19851231",
        phone="010-2222-3333",
        tshirt_size="xl",
        emergency_contact="010 4444 5555",
        emergency_relation="배우자",
    )
    data.update(overrides)
    return ParticipantSubmit(**data)


# ---------- cancellation ----------

def test_cancel_halves_amount_once(session):
    order = models.Order(buyer_id="a@x.com", buyer_email="a@x.com", total_amount=10000, total_participants=1)
    session.add(order)
    session.commit()

    report = services.cancel_orders(session, [order.id])
    assert report.cancelled == [{"id": order.id, "originalAmount": 10000, "newAmount": 5000}]
    session.refresh(order)
    assert order.is_cancelled
    assert order.cancelled_at is not None
    assert order.total_amount == 5000

    again = services.cancel_orders(session, [order.id])
    assert again.cancelled == []
    assert again.skipped == [order.id]
    session.refresh(order)
    assert order.total_amount == 5000


def test_cancel_floors_odd_amounts(session):
    order = models.Order(buyer_id="a@x.com", buyer_email="a@x.com", total_amount=25001, total_participants=1)
    session.add(order)
    session.commit()
    services.cancel_orders(session, [order.id])
    session.refresh(order)
    assert order.total_amount == 12500


def test_cancel_batch_reports_missing_ids(seeded):
    report = services.cancel_orders(seeded, [1, 999, 2, 1])
    assert [r["id"] for r in report.cancelled] == [1, 2]
    assert report.missing == [999]
    assert report.as_dict()["cancelled"] == 2


def test_cancel_batch_continues_past_a_failing_order(seeded, monkeypatch):
    real_cancel = services.cancel_order

    def flaky_cancel(session, order_id):
        if order_id == 2:
            raise SQLAlchemyError("disk I/O error")
        return real_cancel(session, order_id)

    monkeypatch.setattr(services, "cancel_order", flaky_cancel)
    report = services.cancel_orders(seeded, [1, 2, 3])

    assert report.failed == [2]
    assert [r["id"] for r in report.cancelled] == [1, 3]
    assert report.as_dict()["failed"] == [2]
    seeded.expire_all()
    assert seeded.get(models.Order, 1).is_cancelled
    assert seeded.get(models.Order, 1).total_amount == 25000
    assert not seeded.get(models.Order, 2).is_cancelled
    assert seeded.get(models.Order, 2).total_amount == 60000
    assert seeded.get(models.Order, 3).total_amount == 12500


# ---------- participant slot resync ----------

def test_growing_an_order_appends_empty_slots(seeded):
    services.update_order(seeded, 2, OrderUpdate(total_participants=5))
    order = seeded.get(models.Order, 2)
    assert order.total_participants == 5
    assert [p.participant_index for p in order.participants] == [0, 1, 2, 3, 4]
    assert [p.is_primary for p in order.participants].count(True) == 1
    assert all(not p.is_completed and p.name is None for p in order.participants[3:])
    assert order.participants[4].course == "10K"


def test_shrinking_an_order_drops_highest_slots(seeded):
    services.update_order(seeded, 2, OrderUpdate(total_participants=1))
    seeded.expire_all()
    order = seeded.get(models.Order, 2)
    assert [p.participant_index for p in order.participants] == [0]
    assert order.participants[0].is_primary


def test_participant_count_must_stay_positive(seeded):
    with pytest.raises(ValueError):
        services.update_order(seeded, 2, OrderUpdate(total_participants=0))


def test_update_order_normalizes_fields(seeded):
    order = services.update_order(seeded, 4, OrderUpdate(buyer_phone="01099998888", buyer_id=" C2@X.com "))
    assert order.buyer_phone == "010-9999-8888"
    assert order.buyer_id == "c2@x.com"


def test_update_unknown_order(session):
    with pytest.raises(LookupError):
        services.update_order(session, 42, OrderUpdate(buyer_name="x"))


# ---------- self-service form ----------

def test_submit_completes_slot(seeded):
    order = seeded.get(models.Order, 2)
    result = services.submit_participant(seeded, order, _submission())
    assert result.status is Status.OK
    slot = order.participants[1]
    assert slot.is_completed
    assert slot.gender == "M"
    assert slot.tshirt_size == "XL"
    assert slot.phone == "01022223333"
    assert slot.emergency_contact == "01044445555"


def test_submit_requires_every_field(seeded):
    order = seeded.get(models.Order, 2)
    result = services.submit_participant(seeded, order, _submission(emergency_relation=" ", name=""))
    assert result.status is Status.INVALID
    assert "name" in result.reason and "emergency_relation" in result.reason
    assert not order.participants[1].is_completed


def test_submit_rejects_short_birth_date_by_default(seeded, monkeypatch):
    order = seeded.get(models.Order, 2)
    assert services.submit_participant(seeded, order, _submission(birth_date="851231")).status is Status.INVALID

    monkeypatch.setattr(settings, "KTRA_REQUIRE_FULL_BIRTH_DATE", False)
    assert services.submit_participant(seeded, order, _submission(birth_date="851231")).ok


def test_submit_unknown_slot(seeded):
    order = seeded.get(models.Order, 2)
    result = services.submit_participant(seeded, order, _submission(participant_index=7))
    assert result.status is Status.INVALID


def test_admin_can_reset_completion(seeded):
    primary = seeded.get(models.Order, 1).participants[0]
    assert primary.is_completed
    p = services.update_participant(seeded, primary.id, ParticipantUpdate(is_completed=False, tshirt_size="S"))
    assert not p.is_completed
    assert p.tshirt_size == "S"
    assert p.emergency_contact == "01098765432"


# ---------- login & sessions ----------

def test_multi_buyer_can_log_in(seeded):
    result = services.login_buyer(seeded, "B@x.com", "010-3333-4444")
    assert result.ok
    assert result.value["buyer_id"] == "b@x.com"
    assert services.resolve_buyer_session(seeded, result.value["token"]).buyer_id == "b@x.com"


@pytest.mark.parametrize(
    "email, phone",
    [
        ("", "01033334444"),
        ("b@x.com", "0103333"),
        ("b@x.com", "010-9999-9999"),
        ("c@x.com", "010-7777-8888"),
    ],
)
def test_login_rejections(seeded, email, phone):
    assert services.login_buyer(seeded, email, phone).status is Status.INVALID


def test_expired_session_is_ignored(seeded):
    s = services.create_buyer_session(seeded, "b@x.com", "01033334444")
    s.expires_at = datetime.utcnow() - timedelta(minutes=1)
    seeded.commit()
    assert services.resolve_buyer_session(seeded, s.id) is None
    assert services.purge_expired_sessions(seeded) == 1


def test_buyer_cannot_open_foreign_order(seeded):
    with pytest.raises(PermissionError):
        services.get_order_for_buyer(seeded, 4, "b@x.com")
    with pytest.raises(LookupError):
        services.get_order_for_buyer(seeded, 99, "b@x.com")


def test_primary_slot_defaults_come_from_order(seeded):
    rows = services.participants_for_buyer(seeded.get(models.Order, 4))
    assert rows[0]["phone"] == "01077778888"
    assert rows[0]["gender"] == "M"


def test_buyer_overview_counts(seeded):
    overview = services.buyer_overview(seeded, "a@x.com")
    assert [o["id"] for o in overview["orders"]] == [1, 3]
    assert overview["buyerTotalParticipants"] == 2
    assert overview["completedCount"] == 1
    assert overview["totalCount"] == 2
    assert not overview["isAllCompleted"]


# ---------- admin listings ----------

def test_list_orders_carries_buyer_totals(seeded):
    page = services.list_orders(seeded, limit=2)
    assert page["total"] == 4
    assert page["totalPages"] == 2
    assert [o["id"] for o in page["orders"]] == [4, 3]
    order3 = page["orders"][1]
    assert order3["participant_count"] == 1
    assert order3["buyer_total_participants"] == 2
    assert order3["buyer_completed_count"] == 1


def test_list_multi_buyers(seeded):
    page = services.list_multi_buyers(seeded)
    assert [b["buyer_id"] for b in page["buyers"]] == ["b@x.com", "a@x.com"]
    assert page["stats"]["total_buyers"] == 2


def test_admin_order_detail_includes_related_orders(seeded):
    detail = services.admin_order_detail(seeded, 3)
    assert [o["id"] for o in detail["relatedOrders"]] == [1, 3]
    assert len(detail["participants"]) == 2
    assert detail["buyerTotalParticipants"] == 2


def test_overview_reports_all_completed(seeded):
    order = seeded.get(models.Order, 3)
    assert services.submit_participant(seeded, order, _submission(participant_index=0)).ok

    overview = services.buyer_overview(seeded, "a@x.com")
    assert overview["completedCount"] == overview["totalCount"] == 2
    assert overview["isAllCompleted"]
    assert services.get_buyer(seeded, "a@x.com").is_all_completed
