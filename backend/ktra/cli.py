#!/usr/bin/env python3
"""Command line tools for the registration database.

Usage examples:
  ktra ingest 상품주문건.xlsx --members 주문고객명단.xls
  ktra --db sqlite:///./data/ktra.db ingest orders.csv --no-backup
  ktra backfill-buyer-ids
  ktra backfill-genders 주문고객명단.xls
  ktra verify

Notes:
- ``ingest`` replaces the whole dataset in one transaction (``--append`` keeps
  existing orders). An existing sqlite file is copied aside first.
- Exit status is 1 when ingestion fails; the database is left as it was.
"""

from __future__ import annotations

import argparse
import shutil
import sys
import time
from pathlib import Path

from sqlalchemy import func, select
from sqlalchemy.engine import make_url

from . import db, models
from .buyers import backfill_buyer_genders, backfill_buyer_ids, dashboard_stats
from .feed import read_gender_lookup, read_purchase_rows
from .grouping import group_rows
from .ingest import ingest_groups
from .logger import get_logger
from .settings import settings

_logger = get_logger("ktra.cli")

def backup_sqlite(db_url: str) -> Path | None:
    url = make_url(db_url)
    if not url.drivername.startswith("sqlite") or not url.database or url.database == ":memory:":
        return None
    path = Path(url.database)
    if not path.exists():
        return None
    target = path.with_name(f"{path.stem}_backup_{int(time.time())}{path.suffix}")
    shutil.copyfile(path, target)
    _logger.info(f"Backed up {path} to {target}")
    return target

def cmd_ingest(args: argparse.Namespace) -> int:
    db_url = args.db or settings.KTRA_DB_URL
    rows = read_purchase_rows(args.orders)
    lookup = read_gender_lookup(args.members)
    report = group_rows(rows)
    _logger.info(f"Grouped {len(rows)} rows into {len(report.groups)} orders ({report.total_participants} participants)")

    if not args.no_backup:
        backup_sqlite(db_url)
    db.init_db(db_url)
    with db.new_session() as session:
        result = ingest_groups(session, report, lookup, replace=not args.append)

    for orphan in result.orphans:
        print(f"  line {orphan.line}: {orphan.reason}")
    if not result.ok:
        print(f"Ingestion failed: {result.reason}", file=sys.stderr)
        return 1
    print(f"Orders: {result.orders}")
    print(f"Participants: {result.participants} ({result.completed} already complete)")
    print(f"Orphan rows: {len(result.orphans)}")
    return 0

def cmd_backfill(args: argparse.Namespace) -> int:
    db.init_db(args.db or settings.KTRA_DB_URL)
    with db.new_session() as session:
        touched = backfill_buyer_ids(session)
    print(f"Filled buyer_id on {touched} orders")
    return 0

def cmd_backfill_genders(args: argparse.Namespace) -> int:
    if not Path(args.members).exists():
        print(f"Member list not found: {args.members}", file=sys.stderr)
        return 1
    lookup = read_gender_lookup(args.members)
    db.init_db(args.db or settings.KTRA_DB_URL)
    with db.new_session() as session:
        updated, unmatched = backfill_buyer_genders(session, lookup)
    print(f"Buyer gender updated on {updated} orders")
    print(f"No member match: {unmatched} orders")
    return 0

def cmd_verify(args: argparse.Namespace) -> int:
    db.init_db(args.db or settings.KTRA_DB_URL)
    with db.new_session() as session:
        stats = dashboard_stats(session)
        slots = (
            select(models.Participant.order_id, func.count(models.Participant.id).label("n"))
            .group_by(models.Participant.order_id)
            .subquery()
        )
        mismatched = session.execute(
            select(models.Order.id, models.Order.total_participants, func.coalesce(slots.c.n, 0))
            .outerjoin(slots, slots.c.order_id == models.Order.id)
            .where(models.Order.total_participants != func.coalesce(slots.c.n, 0))
        ).all()
        primaries = (
            select(models.Participant.order_id, func.count(models.Participant.id).label("n"))
            .where(models.Participant.is_primary.is_(True))
            .group_by(models.Participant.order_id)
            .subquery()
        )
        bad_primary = session.execute(
            select(models.Order.id)
            .outerjoin(primaries, primaries.c.order_id == models.Order.id)
            .where(func.coalesce(primaries.c.n, 0) != 1)
        ).scalars().all()
        courses = session.execute(
            select(models.Order.course, func.count(models.Order.id)).group_by(models.Order.course)
        ).all()

    print(f"Orders: {stats['totalOrders']}")
    print(f"Participants: {stats['totalParticipants']} ({stats['completedParticipants']} complete)")
    print(f"Multi buyers: {stats['multiBuyers']} ({stats['multiTotalParticipants']} participants)")
    for course, n in courses:
        print(f"  {course or '(none)'}: {n}")
    for order_id, expected, actual in mismatched:
        print(f"  order {order_id}: {actual} participants, expected {expected}")
    for order_id in bad_primary:
        print(f"  order {order_id}: primary participant count is not 1")
    ok = not mismatched and not bad_primary
    print("Integrity: OK" if ok else "Integrity: FAILED")
    return 0 if ok else 1

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="ktra", description="KTRA registration data tools")
    ap.add_argument("--db", default=None, help="SQLAlchemy database URL (default: KTRA_DB_URL)")
    sub = ap.add_subparsers(dest="command", required=True)

    ing = sub.add_parser("ingest", help="Load the shop's order export")
    ing.add_argument("orders", help="Order export (.xlsx, .xls or .csv)")
    ing.add_argument("--members", default=None, help="Member list with 이메일/성별 columns")
    ing.add_argument("--no-backup", action="store_true", help="Do not copy the sqlite file first")
    ing.add_argument("--append", action="store_true", help="Keep existing orders instead of replacing them")
    ing.set_defaults(func=cmd_ingest)

    bf = sub.add_parser("backfill-buyer-ids", help="Fill missing buyer ids from buyer emails")
    bf.set_defaults(func=cmd_backfill)

    bg = sub.add_parser("backfill-genders", help="Apply a member list's genders to existing orders")
    bg.add_argument("members", help="Member list with 이메일/성별 columns")
    bg.set_defaults(func=cmd_backfill_genders)

    vf = sub.add_parser("verify", help="Print statistics and check participant slots")
    vf.set_defaults(func=cmd_verify)
    return ap

def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)

if __name__ == "__main__":
    raise SystemExit(main())
