from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Integer, cast, select, delete, update, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .buyers import (
    aggregate_buyers,
    buyer_key,
    buyer_orders,
    count_buyers,
    get_buyer,
    multi_buyer_stats,
)
from .logger import get_logger
from .parser import normalize_phone, phone_digits
from .results import Result
from .schemas import OrderUpdate, ParticipantSubmit, ParticipantUpdate
from .settings import settings

_logger = get_logger(__name__)

# ---------------------------
# Serialization
# ---------------------------

def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None

def order_to_dict(o: models.Order) -> dict:
    return {
        "id": o.id,
        "buyer_id": o.buyer_id,
        "buyer_email": o.buyer_email,
        "buyer_name": o.buyer_name,
        "buyer_phone": o.buyer_phone,
        "buyer_gender": o.buyer_gender,
        "total_participants": o.total_participants,
        "product_name": o.product_name,
        "course": o.course,
        "option_raw": o.option_raw,
        "recipient_name": o.recipient_name,
        "recipient_phone": o.recipient_phone,
        "zipcode": o.zipcode,
        "address": o.address,
        "address_detail": o.address_detail,
        "total_amount": o.total_amount,
        "is_cancelled": o.is_cancelled,
        "cancelled_at": _iso(o.cancelled_at),
        "created_at": _iso(o.created_at),
    }

def participant_to_dict(p: models.Participant) -> dict:
    return {
        "id": p.id,
        "order_id": p.order_id,
        "participant_index": p.participant_index,
        "name": p.name,
        "gender": p.gender,
        "birth_date": p.birth_date,
        "phone": p.phone,
        "course": p.course,
        "tshirt_size": p.tshirt_size,
        "emergency_contact": p.emergency_contact,
        "emergency_relation": p.emergency_relation,
        "is_primary": p.is_primary,
        "is_completed": p.is_completed,
        "updated_at": _iso(p.updated_at),
    }

# ---------------------------
# Buyer sessions / login
# ---------------------------

def find_orders_for_login(session: Session, buyer_id: str, digits: str) -> list[models.Order]:
    like = f"%{digits}%"
    return session.execute(
        select(models.Order).where(
            func.lower(models.Order.buyer_id) == buyer_key(buyer_id),
            or_(
                func.replace(func.coalesce(models.Order.buyer_phone, ""), "-", "").like(like),
                func.replace(func.coalesce(models.Order.recipient_phone, ""), "-", "").like(like),
            ),
        ).order_by(models.Order.id.asc())
    ).scalars().all()

def create_buyer_session(session: Session, buyer_id: str, phone: str) -> models.BuyerSession:
    s = models.BuyerSession(
        id=uuid.uuid4().hex,
        buyer_id=buyer_key(buyer_id),
        phone=phone,
        expires_at=datetime.utcnow() + timedelta(hours=settings.KTRA_BUYER_SESSION_HOURS),
    )
    session.add(s)
    session.commit()
    return s

def resolve_buyer_session(session: Session, token: Optional[str]) -> Optional[models.BuyerSession]:
    if not token:
        return None
    s = session.get(models.BuyerSession, token)
    if not s or s.expires_at <= datetime.utcnow():
        return None
    return s

def end_buyer_session(session: Session, token: Optional[str]) -> None:
    if not token:
        return
    session.execute(delete(models.BuyerSession).where(models.BuyerSession.id == token))
    session.commit()

def purge_expired_sessions(session: Session) -> int:
    result = session.execute(delete(models.BuyerSession).where(models.BuyerSession.expires_at <= datetime.utcnow()))
    session.commit()
    return result.rowcount or 0

def login_buyer(session: Session, email: str, phone: str) -> Result:
    """Check email + phone against the orders and open a session.

    Only buyers holding two or more entries in total can log in; single-entry
    orders are registered straight from the shop data.
    """
    if not (email or "").strip() or not (phone or "").strip():
        return Result.invalid("email and phone are required")
    digits = phone_digits(phone)
    if len(digits) < 10:
        return Result.invalid("phone number must have at least 10 digits")

    orders = find_orders_for_login(session, email, digits)
    if not orders:
        return Result.invalid("no order matches this email and phone")
    buyer = get_buyer(session, email)
    if buyer is None or not buyer.is_multi:
        return Result.invalid("no multi-entry purchase for this buyer")

    purge_expired_sessions(session)
    s = create_buyer_session(session, email, digits)
    _logger.info(f"Buyer {s.buyer_id} logged in ({len(orders)} matching orders)")
    return Result.success({"token": s.id, "buyer_id": s.buyer_id, "order_count": len(orders)})

# ---------------------------
# Buyer self-service
# ---------------------------

def buyer_overview(session: Session, buyer_id: str) -> dict:
    orders = buyer_orders(session, buyer_id)
    all_participants = []
    order_rows = []
    for o in orders:
        parts = [participant_to_dict(p) for p in o.participants]
        for p in parts:
            all_participants.append({**p, "order_course": o.course, "order_buyer_name": o.buyer_name})
        order_rows.append({**order_to_dict(o), "participants": parts})

    agg = get_buyer(session, buyer_id)
    completed = agg.completed_participants if agg else 0
    total = len(all_participants)
    return {
        "buyer_id": buyer_key(buyer_id),
        "orders": order_rows,
        "buyerTotalParticipants": agg.total_participants if agg else 0,
        "allParticipants": all_participants,
        "completedCount": completed,
        "totalCount": total,
        "isAllCompleted": bool(agg and agg.is_all_completed),
    }

def get_order_for_buyer(session: Session, order_id: int, buyer_id: str) -> models.Order:
    order = session.get(models.Order, order_id)
    if not order:
        raise LookupError("Order not found")
    if buyer_key(order.buyer_id) != buyer_key(buyer_id):
        raise PermissionError("Order belongs to another buyer")
    return order

def participants_for_buyer(order: models.Order) -> list[dict]:
    """Participant rows for the form; the buyer's own slot falls back to order contact data."""
    rows = []
    for p in order.participants:
        row = participant_to_dict(p)
        if p.is_primary:
            row["phone"] = p.phone or (phone_digits(order.buyer_phone) or None)
            row["gender"] = p.gender or order.buyer_gender
        rows.append(row)
    return rows

_SUBMIT_FIELDS = ("name", "gender", "birth_date", "phone", "tshirt_size", "emergency_contact", "emergency_relation")

def _birth_date_pattern() -> str:
    return r"\d{8}" if settings.KTRA_REQUIRE_FULL_BIRTH_DATE else r"\d{6}|\d{8}"

def submit_participant(session: Session, order: models.Order, payload: ParticipantSubmit) -> Result:
    values = {name: (getattr(payload, name) or "").strip() for name in _SUBMIT_FIELDS}
    missing = [name for name, v in values.items() if not v]
    if missing:
        return Result.invalid("missing fields: " + ", ".join(missing))

    gender = values["gender"].upper()
    if gender not in ("M", "F"):
        return Result.invalid("gender must be M or F")
    if not re.fullmatch(_birth_date_pattern(), values["birth_date"]):
        return Result.invalid("birth date must be YYYYMMDD")
    phone = phone_digits(values["phone"])
    emergency = phone_digits(values["emergency_contact"])
    if len(phone) < 10 or len(emergency) < 10:
        return Result.invalid("phone numbers must have at least 10 digits")
    if order.is_cancelled:
        return Result.invalid("order is cancelled")

    slot = next((p for p in order.participants if p.participant_index == payload.participant_index), None)
    if slot is None:
        return Result.invalid("no such participant slot")

    slot.name = values["name"]
    slot.gender = gender
    slot.birth_date = values["birth_date"]
    slot.phone = phone
    slot.tshirt_size = values["tshirt_size"].upper()
    slot.emergency_contact = emergency
    slot.emergency_relation = values["emergency_relation"]
    slot.is_completed = True
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        _logger.exception(f"Saving participant {order.id}/{payload.participant_index} failed")
        return Result.failed(str(e))
    return Result.success(participant_to_dict(slot))

# ---------------------------
# Admin: listings
# ---------------------------

def _page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0

def _order_search(search: str):
    like = f"%{search}%"
    return or_(
        models.Order.buyer_name.like(like),
        models.Order.buyer_id.like(like),
        models.Order.buyer_phone.like(like),
    )

def _slot_counts(session: Session, order_ids: list[int]) -> dict[int, tuple[int, int]]:
    if not order_ids:
        return {}
    rows = session.execute(
        select(
            models.Participant.order_id,
            func.count(models.Participant.id),
            func.coalesce(func.sum(cast(models.Participant.is_completed, Integer)), 0),
        )
        .where(models.Participant.order_id.in_(order_ids))
        .group_by(models.Participant.order_id)
    ).all()
    return {oid: (int(total), int(done)) for oid, total, done in rows}

def list_orders(session: Session, search: str = "", page: int = 1, limit: Optional[int] = None) -> dict:
    limit = limit or settings.KTRA_PAGE_SIZE
    page = max(page, 1)
    q = select(models.Order)
    count_q = select(func.count(models.Order.id))
    if search:
        q = q.where(_order_search(search))
        count_q = count_q.where(_order_search(search))
    total = session.execute(count_q).scalar_one()
    orders = session.execute(
        q.order_by(models.Order.id.desc()).limit(limit).offset((page - 1) * limit)
    ).scalars().all()

    counts = _slot_counts(session, [o.id for o in orders])
    buyers = {b.buyer_id: b for b in aggregate_buyers(session, keys={buyer_key(o.buyer_id) for o in orders})}
    rows = []
    for o in orders:
        slots, done = counts.get(o.id, (0, 0))
        agg = buyers.get(buyer_key(o.buyer_id))
        rows.append({
            **order_to_dict(o),
            "participant_count": slots,
            "completed_count": done,
            "buyer_total_participants": agg.total_participants if agg else o.total_participants,
            "buyer_completed_count": agg.completed_participants if agg else done,
        })
    return {
        "mode": "all",
        "orders": rows,
        "total": total,
        "page": page,
        "totalPages": _page_count(total, limit),
        "stats": multi_buyer_stats(session),
    }

def list_multi_buyers(session: Session, search: str = "", page: int = 1, limit: Optional[int] = None) -> dict:
    limit = limit or settings.KTRA_PAGE_SIZE
    page = max(page, 1)
    total = count_buyers(session, multi_only=True, search=search)
    buyers = aggregate_buyers(session, multi_only=True, search=search, limit=limit, offset=(page - 1) * limit)
    return {
        "mode": "multi",
        "buyers": [b.as_dict() for b in buyers],
        "total": total,
        "page": page,
        "totalPages": _page_count(total, limit),
        "stats": multi_buyer_stats(session),
    }

def admin_order_detail(session: Session, order_id: int) -> dict:
    order = session.get(models.Order, order_id)
    if not order:
        raise LookupError("Order not found")
    related = buyer_orders(session, order.buyer_id)
    participants = [
        {**participant_to_dict(p), "order_course": o.course}
        for o in related
        for p in o.participants
    ]
    agg = get_buyer(session, order.buyer_id)
    return {
        "order": order_to_dict(order),
        "participants": participants,
        "relatedOrders": [order_to_dict(o) for o in related],
        "buyerTotalParticipants": agg.total_participants if agg else order.total_participants,
    }

# ---------------------------
# Admin: edits
# ---------------------------

def sync_participant_slots(session: Session, order: models.Order) -> tuple[int, int]:
    """Make the participant rows match order.total_participants.

    Extra slots are removed from the highest index down; missing slots are
    appended empty after the current highest index. Returns (added, removed).
    """
    slots = sorted(order.participants, key=lambda p: p.participant_index)
    target = order.total_participants
    added = removed = 0

    while len(slots) > target:
        victim = slots.pop()
        order.participants.remove(victim)
        removed += 1

    next_index = slots[-1].participant_index + 1 if slots else 0
    while len(slots) < target:
        is_primary = not slots
        p = models.Participant(
            participant_index=next_index,
            name=order.buyer_name if is_primary else None,
            gender=order.buyer_gender if is_primary else None,
            course=order.course or "",
            is_primary=is_primary,
            is_completed=False,
        )
        order.participants.append(p)
        slots.append(p)
        next_index += 1
        added += 1

    session.flush()
    return added, removed

def update_order(session: Session, order_id: int, payload: OrderUpdate) -> models.Order:
    order = session.get(models.Order, order_id)
    if not order:
        raise LookupError("Order not found")
    changes = payload.model_dump(exclude_unset=True)

    if "total_participants" in changes:
        total = changes["total_participants"]
        if total is None or total < 1:
            raise ValueError("total_participants must be at least 1")
    if "buyer_id" in changes:
        if not buyer_key(changes["buyer_id"]):
            raise ValueError("buyer_id cannot be empty")
        changes["buyer_id"] = buyer_key(changes["buyer_id"])
    for key in ("buyer_phone", "recipient_phone"):
        if changes.get(key):
            changes[key] = normalize_phone(changes[key])

    for key, value in changes.items():
        setattr(order, key, value)
    if "total_participants" in changes:
        added, removed = sync_participant_slots(session, order)
        if added or removed:
            _logger.info(f"Order {order.id}: participant slots +{added} -{removed}")
    session.commit()
    return order

def update_participant(session: Session, participant_id: int, payload: ParticipantUpdate) -> models.Participant:
    p = session.get(models.Participant, participant_id)
    if not p:
        raise LookupError("Participant not found")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("is_completed") is None:
        changes.pop("is_completed", None)
    for key in ("phone", "emergency_contact"):
        if changes.get(key):
            changes[key] = phone_digits(changes[key])
    for key, value in changes.items():
        setattr(p, key, value)
    session.commit()
    return p

# ---------------------------
# Admin: cancellation
# ---------------------------

@dataclass
class CancelReport:
    cancelled: list[dict] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)  # already cancelled
    missing: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "cancelled": len(self.cancelled),
            "results": self.cancelled,
            "skipped": self.skipped,
            "missing": self.missing,
            "failed": self.failed,
        }

def cancel_order(session: Session, order_id: int) -> Optional[dict]:
    """Cancel one order and halve its amount in a single conditional UPDATE.

    Returns None when the order was already cancelled. Raises LookupError
    for an unknown id.
    """
    amount = session.execute(
        select(models.Order.total_amount).where(models.Order.id == order_id)
    ).scalar_one_or_none()
    if amount is None:
        raise LookupError("Order not found")
    result = session.execute(
        update(models.Order)
        .where(models.Order.id == order_id, models.Order.is_cancelled.is_(False))
        .values(
            is_cancelled=True,
            cancelled_at=datetime.utcnow(),
            total_amount=models.Order.total_amount // 2,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if not result.rowcount:
        return None
    return {"id": order_id, "originalAmount": amount, "newAmount": amount // 2}

def cancel_orders(session: Session, order_ids: list[int]) -> CancelReport:
    """Cancel each order on its own; one failure does not undo the others."""
    report = CancelReport()
    for order_id in dict.fromkeys(order_ids):
        try:
            outcome = cancel_order(session, order_id)
        except LookupError:
            report.missing.append(order_id)
            continue
        except SQLAlchemyError:
            session.rollback()
            _logger.exception(f"Cancelling order {order_id} failed")
            report.failed.append(order_id)
            continue
        if outcome is None:
            report.skipped.append(order_id)
        else:
            report.cancelled.append(outcome)
    _logger.info(
        f"Cancel batch: {len(report.cancelled)} cancelled, {len(report.skipped)} already cancelled, "
        f"{len(report.missing)} missing, {len(report.failed)} failed"
    )
    return report
