"""Buyer identity aggregates.

A buyer is every order sharing the same ``buyer_id`` compared lower-cased.
All aggregates come from :func:`_aggregate_query`, so the single-buyer view,
the listings and the dashboard numbers can never disagree for one buyer.
Nothing is cached; each call recomputes from orders and participants.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.orm import Session

from . import models

MULTI_THRESHOLD = 2

def buyer_key(value: Optional[str]) -> str:
    return (value or "").strip().lower()

@dataclass
class BuyerAggregate:
    buyer_id: str
    buyer_name: str
    buyer_phone: str
    buyer_gender: str
    order_count: int
    total_participants: int
    completed_participants: int
    total_amount: int

    @property
    def is_multi(self) -> bool:
        return self.total_participants >= MULTI_THRESHOLD

    @property
    def is_all_completed(self) -> bool:
        return self.total_participants > 0 and self.completed_participants >= self.total_participants

    def as_dict(self) -> dict:
        return {
            "buyer_id": self.buyer_id,
            "buyer_name": self.buyer_name,
            "buyer_phone": self.buyer_phone,
            "buyer_gender": self.buyer_gender,
            "order_count": self.order_count,
            "total_participants": self.total_participants,
            "completed_count": self.completed_participants,
            "total_amount": self.total_amount,
            "is_multi": self.is_multi,
        }

def _key_column():
    return func.lower(models.Order.buyer_id)

def _aggregate_query() -> Select:
    completed = (
        select(
            models.Participant.order_id.label("order_id"),
            func.count(models.Participant.id).label("completed"),
        )
        .where(models.Participant.is_completed.is_(True))
        .group_by(models.Participant.order_id)
        .subquery()
    )
    key = _key_column()
    return (
        select(
            key.label("buyer_id"),
            func.max(models.Order.buyer_name).label("buyer_name"),
            func.max(models.Order.buyer_phone).label("buyer_phone"),
            func.max(models.Order.buyer_gender).label("buyer_gender"),
            func.count(models.Order.id).label("order_count"),
            func.coalesce(func.sum(models.Order.total_participants), 0).label("total_participants"),
            func.coalesce(func.sum(completed.c.completed), 0).label("completed_participants"),
            func.coalesce(func.sum(models.Order.total_amount), 0).label("total_amount"),
        )
        .outerjoin(completed, completed.c.order_id == models.Order.id)
        .where(models.Order.buyer_id.is_not(None))
        .group_by(key)
    )

def _filtered(stmt: Select, multi_only: bool, search: str, keys: Optional[Iterable[str]]) -> Select:
    if multi_only:
        stmt = stmt.having(func.sum(models.Order.total_participants) >= MULTI_THRESHOLD)
    if search:
        like = f"%{search}%"
        matching = select(_key_column()).where(
            or_(
                models.Order.buyer_name.like(like),
                models.Order.buyer_id.like(like),
                models.Order.buyer_phone.like(like),
            )
        )
        stmt = stmt.where(_key_column().in_(matching))
    if keys is not None:
        stmt = stmt.where(_key_column().in_([buyer_key(k) for k in keys]))
    return stmt

def _to_aggregate(row) -> BuyerAggregate:
    return BuyerAggregate(
        buyer_id=row.buyer_id,
        buyer_name=row.buyer_name or "",
        buyer_phone=row.buyer_phone or "",
        buyer_gender=row.buyer_gender or "",
        order_count=int(row.order_count),
        total_participants=int(row.total_participants),
        completed_participants=int(row.completed_participants),
        total_amount=int(row.total_amount),
    )

def aggregate_buyers(
    session: Session,
    multi_only: bool = False,
    search: str = "",
    keys: Optional[Iterable[str]] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> list[BuyerAggregate]:
    stmt = _filtered(_aggregate_query(), multi_only, search, keys)
    stmt = stmt.order_by(func.sum(models.Order.total_participants).desc(), _key_column())
    if limit is not None:
        stmt = stmt.limit(limit).offset(offset)
    return [_to_aggregate(r) for r in session.execute(stmt).all()]

def count_buyers(session: Session, multi_only: bool = False, search: str = "") -> int:
    inner = _filtered(_aggregate_query(), multi_only, search, None).subquery()
    return session.execute(select(func.count()).select_from(inner)).scalar_one()

def get_buyer(session: Session, buyer_id: str) -> Optional[BuyerAggregate]:
    found = aggregate_buyers(session, keys=[buyer_id])
    return found[0] if found else None

def buyer_orders(session: Session, buyer_id: str) -> list[models.Order]:
    return session.execute(
        select(models.Order).where(_key_column() == buyer_key(buyer_id)).order_by(models.Order.id.asc())
    ).scalars().all()

def is_multi_buyer(session: Session, buyer_id: str) -> bool:
    agg = get_buyer(session, buyer_id)
    return bool(agg and agg.is_multi)

def multi_buyer_stats(session: Session) -> dict[str, int]:
    inner = _filtered(_aggregate_query(), True, "", None).subquery()
    row = session.execute(
        select(
            func.count().label("buyers"),
            func.coalesce(func.sum(inner.c.total_participants), 0).label("participants"),
            func.coalesce(func.sum(inner.c.completed_participants), 0).label("completed"),
        ).select_from(inner)
    ).one()
    return {
        "total_buyers": int(row.buyers),
        "total_participants": int(row.participants),
        "completed_participants": int(row.completed),
    }

def dashboard_stats(session: Session) -> dict[str, int]:
    total_orders = session.execute(select(func.count(models.Order.id))).scalar_one()
    total_participants = session.execute(select(func.count(models.Participant.id))).scalar_one()
    completed = session.execute(
        select(func.count(models.Participant.id)).where(models.Participant.is_completed.is_(True))
    ).scalar_one()
    multi = multi_buyer_stats(session)
    return {
        "totalOrders": total_orders,
        "totalParticipants": total_participants,
        "completedParticipants": completed,
        "multiBuyers": multi["total_buyers"],
        "multiTotalParticipants": multi["total_participants"],
        "multiCompletedParticipants": multi["completed_participants"],
    }

def backfill_buyer_ids(session: Session) -> int:
    """Fill missing buyer ids from the buyer email (lower-cased). Returns rows touched."""
    result = session.execute(
        update(models.Order)
        .where(or_(models.Order.buyer_id.is_(None), models.Order.buyer_id == ""))
        .values(buyer_id=func.lower(func.trim(models.Order.buyer_email)))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount or 0

def backfill_buyer_genders(session: Session, lookup: dict[str, str]) -> tuple[int, int]:
    """Apply a member list's {email: gender} map to existing orders.

    Emails are matched lower-cased and trimmed. Orders without a match keep
    their current gender. Returns (updated, unmatched) order counts.
    """
    email_key = func.lower(func.trim(models.Order.buyer_email))
    updated = 0
    for gender in ("M", "F"):
        emails = [email for email, g in lookup.items() if g == gender]
        if not emails:
            continue
        result = session.execute(
            update(models.Order)
            .where(email_key.in_(emails))
            .values(buyer_gender=gender)
            .execution_options(synchronize_session=False)
        )
        updated += result.rowcount or 0
    session.commit()
    total = session.execute(select(func.count(models.Order.id))).scalar_one()
    return updated, total - updated
