"""Turn the shop's order export into orders and participant slots."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .buyers import buyer_key
from .feed import RawPurchaseRow
from .grouping import GroupingReport, OrderGroup, Orphan, group_rows
from .logger import get_logger
from .parser import ParsedOption, classify_course, normalize_phone, parse_option
from .results import Status

_logger = get_logger(__name__)

@dataclass
class IngestResult:
    status: Status
    orders: int = 0
    participants: int = 0
    completed: int = 0
    orphans: list[Orphan] = field(default_factory=list)
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status is Status.OK

def initial_completion(is_primary: bool, parsed: ParsedOption) -> bool:
    # only the buyer's own slot is trusted; other slots always need the form
    return is_primary and bool(parsed.emergency_contact or parsed.shirt_size)

def build_order(group: OrderGroup, gender_lookup: Optional[dict[str, str]] = None) -> models.Order:
    """Build an unsaved Order with one Participant per purchased slot."""
    row = group.primary
    email_key = buyer_key(row.buyer_email)
    buyer_gender = (gender_lookup or {}).get(email_key)
    contact_phone = normalize_phone(row.recipient_phone or row.buyer_phone)

    order = models.Order(
        buyer_id=email_key,
        buyer_email=row.buyer_email,
        buyer_name=row.buyer_name,
        buyer_phone=contact_phone,
        buyer_gender=buyer_gender,
        total_participants=group.total_participants,
        product_name=row.product_name,
        course=classify_course(row.product_name),
        option_raw=row.option_text,
        recipient_name=row.recipient_name,
        recipient_phone=contact_phone,
        zipcode=row.zipcode,
        address=row.address,
        address_detail=row.address_detail,
        total_amount=math.floor(row.final_amount) if row.has_amount else 0,
        is_cancelled=False,
    )

    index = 0
    for line in group.lines:
        parsed = parse_option(line.row.option_text)
        for _ in range(line.quantity):
            is_primary = index == 0
            gender = parsed.gender or (buyer_gender if is_primary else None)
            order.participants.append(
                models.Participant(
                    participant_index=index,
                    name=row.buyer_name if is_primary else None,
                    gender=gender,
                    birth_date=parsed.birth_date,
                    phone=parsed.phone,
                    course=line.course,
                    tshirt_size=parsed.shirt_size,
                    emergency_contact=parsed.emergency_contact,
                    emergency_relation=parsed.emergency_relation,
                    option_raw=line.row.option_text,
                    is_primary=is_primary,
                    is_completed=initial_completion(is_primary, parsed),
                )
            )
            index += 1
    return order

def clear_dataset(session: Session) -> None:
    session.execute(delete(models.BuyerSession))
    session.execute(delete(models.Participant))
    session.execute(delete(models.Order))

def ingest_groups(
    session: Session,
    report: GroupingReport,
    gender_lookup: Optional[dict[str, str]] = None,
    replace: bool = True,
) -> IngestResult:
    """Persist every group in one transaction; on error nothing is written."""
    orders = participants = completed = 0
    try:
        if replace:
            clear_dataset(session)
        for group in report.groups:
            order = build_order(group, gender_lookup)
            session.add(order)
            orders += 1
            participants += len(order.participants)
            completed += sum(1 for p in order.participants if p.is_completed)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        _logger.exception("Ingestion aborted, database left unchanged")
        return IngestResult(status=Status.FAILED, orphans=report.orphans, reason=str(e))

    _logger.info(
        f"Ingested {orders} orders / {participants} participants "
        f"({completed} complete, {len(report.orphans)} orphan rows)"
    )
    return IngestResult(
        status=Status.OK,
        orders=orders,
        participants=participants,
        completed=completed,
        orphans=report.orphans,
    )

def ingest_rows(
    session: Session,
    rows: Iterable[RawPurchaseRow],
    gender_lookup: Optional[dict[str, str]] = None,
    replace: bool = True,
) -> IngestResult:
    return ingest_groups(session, group_rows(rows), gender_lookup, replace=replace)
