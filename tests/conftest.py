"""Pytest configuration and shared fixtures."""

import pytest
from fastapi.testclient import TestClient

from ktra import db
from ktra.feed import RawPurchaseRow
from ktra.ingest import ingest_rows
from ktra.settings import settings

FULL_OPTION = (
    "연락처 (Phone): 010-1234-5678 / 비상연락처 Emergency contact: 010-9876-5432 / "
    "비상연락처 관계 Relationship: 부 / 생년월일 (Birth): 19900101 / "
    "티셔츠 사이즈 (T-shirts size): L / 성별 (Gender): M"
)


def make_row(line: int = 2, **fields) -> RawPurchaseRow:
    return RawPurchaseRow(line=line, **fields)


def sample_rows() -> list[RawPurchaseRow]:
    """Four orders: a@x.com (1 + 1 entries), b@x.com (2 + 1 on two rows), c@x.com (1)."""
    return [
        make_row(
            2,
            buyer_email="a@x.com",
            buyer_name="김철수",
            recipient_phone="010-1111-2222",
            product_name="2026 성남 하프코스",
            option_text=FULL_OPTION,
            quantity=1,
            final_amount=50000,
        ),
        make_row(
            3,
            buyer_email="b@x.com",
            buyer_name="이영희",
            recipient_phone="01033334444",
            product_name="10K 일반",
            quantity=2,
            final_amount=60000,
        ),
        make_row(
            4,
            product_name="5K 일반",
            option_text="연락처: 010-3333-4444 / 티셔츠 사이즈: M",
            quantity=1,
        ),
        make_row(
            5,
            buyer_email="A@X.com",
            buyer_name="김철수",
            recipient_phone="010-5555-6666",
            product_name="5K 일반",
            quantity=1,
            final_amount=25000,
        ),
        make_row(
            6,
            buyer_email="c@x.com",
            buyer_name="박민수",
            recipient_phone="010-7777-8888",
            product_name="10K 일반",
            quantity=1,
            final_amount=30000,
        ),
    ]


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def session(db_url):
    db.dispose_db()
    db.init_db(db_url)
    s = db.new_session()
    yield s
    s.close()
    db.dispose_db()


@pytest.fixture
def seeded(session):
    result = ingest_rows(session, sample_rows(), gender_lookup={"c@x.com": "M"})
    assert result.ok
    return session


@pytest.fixture
def client(session):
    from ktra.main import app
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_client(client):
    r = client.post(
        "/api/admin/auth/login",
        json={"id": settings.KTRA_ADMIN_ID, "password": settings.KTRA_ADMIN_PASSWORD},
    )
    assert r.status_code == 200
    return client
