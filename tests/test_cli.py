from pathlib import Path

import pandas as pd
import pytest
from sqlalchemy import select

from ktra import db, models
from ktra.cli import backup_sqlite, main
from ktra.feed import COLUMNS


@pytest.fixture(autouse=True)
def _fresh_engine():
    db.dispose_db()
    yield
    db.dispose_db()


def _write_orders(path: Path) -> Path:
    rows = [
        {COLUMNS["buyer_email"]: "a@x.com", COLUMNS["buyer_name"]: "김철수", COLUMNS["product_name"]: "하프",
         COLUMNS["quantity"]: "2", COLUMNS["final_amount"]: "100000", COLUMNS["recipient_phone"]: "01012345678"},
        {COLUMNS["product_name"]: "10K", COLUMNS["quantity"]: "1"},
        {COLUMNS["final_amount"]: "5000"},
    ]
    pd.DataFrame(rows, columns=list(COLUMNS.values())).to_csv(path, index=False)
    return path


def test_ingest_then_verify(tmp_path, capsys):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    orders = _write_orders(tmp_path / "orders.csv")

    assert main(["--db", url, "ingest", str(orders), "--no-backup"]) == 0
    out = capsys.readouterr().out
    assert "Orders: 1" in out
    assert "Participants: 3" in out
    assert "Orphan rows: 1" in out

    db.dispose_db()
    assert main(["--db", url, "verify"]) == 0
    assert "Integrity: OK" in capsys.readouterr().out


def test_backfill_command(tmp_path, capsys):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    assert main(["--db", url, "backfill-buyer-ids"]) == 0
    assert "Filled buyer_id on 0 orders" in capsys.readouterr().out


def test_backup_copies_sqlite_file(tmp_path):
    path = tmp_path / "ktra.db"
    path.write_bytes(b"sqlite")
    target = backup_sqlite(f"sqlite:///{path}")
    assert target is not None
    assert target.name.startswith("ktra_backup_")
    assert target.read_bytes() == b"sqlite"


def test_backup_skips_missing_or_memory_db(tmp_path):
    assert backup_sqlite(f"sqlite:///{tmp_path / 'absent.db'}") is None
    assert backup_sqlite("sqlite:///:memory:") is None


def test_backfill_genders_keeps_submitted_answers(tmp_path, capsys):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    assert main(["--db", url, "ingest", str(_write_orders(tmp_path / "orders.csv")), "--no-backup"]) == 0
    with db.new_session() as session:
        slot = session.execute(select(models.Participant).where(models.Participant.participant_index == 1)).scalar_one()
        slot.name = "홍길동"
        slot.is_completed = True
        session.commit()
    db.dispose_db()
    capsys.readouterr()

    members = tmp_path / "members.csv"
    pd.DataFrame([{"이메일": "A@X.com", "성별": "F"}, {"이메일": "other@x.com", "성별": "M"}]).to_csv(members, index=False)
    assert main(["--db", url, "backfill-genders", str(members)]) == 0
    out = capsys.readouterr().out
    assert "Buyer gender updated on 1 orders" in out
    assert "No member match: 0 orders" in out

    with db.new_session() as session:
        order = session.execute(select(models.Order)).scalar_one()
        assert order.buyer_gender == "F"
        assert order.participants[1].name == "홍길동"
        assert order.participants[1].is_completed


def test_backfill_genders_needs_member_file(tmp_path):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    assert main(["--db", url, "backfill-genders", str(tmp_path / "absent.xls")]) == 1
