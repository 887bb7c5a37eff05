from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd

from .logger import get_logger

_logger = get_logger(__name__)

# column headers of the shop's order export
COLUMNS = {
    "buyer_email": "주문자 이메일",
    "buyer_name": "주문자 이름",
    "buyer_phone": "주문자 전화번호",
    "product_name": "상품명",
    "option_text": "옵션명",
    "quantity": "구매수량",
    "final_amount": "최종주문금액",
    "recipient_name": "수령자명",
    "recipient_phone": "수령자 전화번호",
    "zipcode": "배송지 우편번호",
    "address": "주소",
    "address_detail": "상세주소",
}

MEMBER_EMAIL_COLUMN = "이메일"
MEMBER_GENDER_COLUMN = "성별"

@dataclass
class RawPurchaseRow:
    line: int
    buyer_email: str = ""
    buyer_name: str = ""
    buyer_phone: str = ""
    product_name: str = ""
    option_text: str = ""
    quantity: int = 1
    final_amount: Optional[float] = None
    recipient_name: str = ""
    recipient_phone: str = ""
    zipcode: str = ""
    address: str = ""
    address_detail: str = ""

    @property
    def has_amount(self) -> bool:
        # zero and non-finite amounts are treated like a blank cell
        return bool(self.final_amount) and math.isfinite(self.final_amount)

    @classmethod
    def from_record(cls, record: dict, line: int) -> "RawPurchaseRow":
        def text(key: str) -> str:
            return _clean(record.get(COLUMNS[key]))

        return cls(
            line=line,
            buyer_email=text("buyer_email"),
            buyer_name=text("buyer_name"),
            buyer_phone=text("buyer_phone"),
            product_name=text("product_name"),
            option_text=text("option_text"),
            quantity=_to_quantity(record.get(COLUMNS["quantity"])),
            final_amount=_to_number(record.get(COLUMNS["final_amount"])),
            recipient_name=text("recipient_name"),
            recipient_phone=text("recipient_phone"),
            zipcode=_to_zipcode(record.get(COLUMNS["zipcode"])),
            address=text("address"),
            address_detail=text("address_detail"),
        )

def _clean(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()

def _to_number(value) -> Optional[float]:
    s = _clean(value).replace(",", "")
    if not s:
        return None
    try:
        n = float(s)
    except ValueError:
        return None
    # "nan" / "inf" spellings are junk like any other text
    return n if math.isfinite(n) else None

def _to_quantity(value) -> int:
    n = _to_number(value)
    if n is None or n < 1:
        return 1
    return int(n)

def _to_zipcode(value) -> str:
    n = _to_number(value)
    if n is None:
        return _clean(value)
    return str(math.floor(n)).zfill(5)

def _read_table(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
    elif suffix in (".xlsx", ".xls"):
        df = pd.read_excel(path, dtype=str)
    else:
        raise ValueError(f"Unsupported spreadsheet type: {path.name}")
    return df.fillna("")

def rows_from_records(records: Iterable[dict], first_line: int = 2) -> list[RawPurchaseRow]:
    """Convert header-keyed records; line numbers count the header as line 1."""
    return [RawPurchaseRow.from_record(r, line) for line, r in enumerate(records, start=first_line)]

def read_purchase_rows(path: str | Path) -> list[RawPurchaseRow]:
    path = Path(path)
    df = _read_table(path)
    missing = [c for c in (COLUMNS["buyer_email"], COLUMNS["final_amount"]) if c not in df.columns]
    if missing:
        raise ValueError(f"{path.name}: missing columns {', '.join(missing)}")
    rows = rows_from_records(df.to_dict(orient="records"))
    _logger.info(f"Read {len(rows)} purchase rows from {path.name}")
    return rows

def gender_lookup_from_records(records: Iterable[dict]) -> dict[str, str]:
    lookup: dict[str, str] = {}
    for member in records:
        email = _clean(member.get(MEMBER_EMAIL_COLUMN)).lower()
        gender = _clean(member.get(MEMBER_GENDER_COLUMN)).upper()
        if email and gender in ("M", "F"):
            lookup[email] = gender
    return lookup

def read_gender_lookup(path: str | Path | None) -> dict[str, str]:
    """Member list -> {lower-cased email: "M" | "F"}. A missing file yields {}."""
    if path is None:
        return {}
    path = Path(path)
    if not path.exists():
        _logger.warning(f"Member list {path} not found, buyer gender will be left empty")
        return {}
    lookup = gender_lookup_from_records(_read_table(path).to_dict(orient="records"))
    _logger.info(f"Loaded {len(lookup)} member genders from {path.name}")
    return lookup
