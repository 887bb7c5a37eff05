from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .feed import RawPurchaseRow
from .logger import get_logger
from .parser import classify_course

_logger = get_logger(__name__)

@dataclass
class GroupLine:
    row: RawPurchaseRow
    course: str
    quantity: int

@dataclass
class OrderGroup:
    primary: RawPurchaseRow
    lines: list[GroupLine] = field(default_factory=list)
    total_participants: int = 0

    def add(self, row: RawPurchaseRow, course: str) -> None:
        self.lines.append(GroupLine(row=row, course=course, quantity=row.quantity))
        self.total_participants += row.quantity

@dataclass
class Orphan:
    line: int
    reason: str

@dataclass
class GroupingReport:
    groups: list[OrderGroup] = field(default_factory=list)
    orphans: list[Orphan] = field(default_factory=list)

    @property
    def total_participants(self) -> int:
        return sum(g.total_participants for g in self.groups)

def starts_new_order(row: RawPurchaseRow) -> bool:
    """The shop writes the final amount only on the first row of an order."""
    return row.has_amount and bool(row.buyer_email)

def group_rows(
    rows: Iterable[RawPurchaseRow],
    starts_order: Callable[[RawPurchaseRow], bool] = starts_new_order,
) -> GroupingReport:
    report = GroupingReport()
    pending: Optional[OrderGroup] = None

    for row in rows:
        if starts_order(row):
            if pending is not None:
                report.groups.append(pending)
            pending = OrderGroup(primary=row)
            pending.add(row, classify_course(row.product_name))
        elif pending is not None and not row.has_amount:
            course = classify_course(row.product_name) or pending.lines[0].course
            pending.add(row, course)
        else:
            reason = "amount without buyer email" if row.has_amount else "continuation row before any order"
            report.orphans.append(Orphan(line=row.line, reason=reason))
            _logger.warning(f"Skipping line {row.line}: {reason}")

    if pending is not None:
        report.groups.append(pending)
    return report
