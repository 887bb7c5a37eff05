from __future__ import annotations

import csv
from datetime import date
from io import BytesIO, StringIO
from urllib.parse import quote

import pandas as pd
from fastapi import APIRouter, Depends, HTTPException
from starlette.responses import Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_session
from . import models
from .auth import admin_required
from .buyers import aggregate_buyers, buyer_key

router = APIRouter()

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
SHEET_NAME = "주문목록"

# (header, column width)
COLUMNS = [
    ("주문ID", 8),
    ("구매자명", 12),
    ("이메일", 30),
    ("연락처", 15),
    ("구매자성별", 10),
    ("코스", 8),
    ("주문참가자수", 12),
    ("구매자총참가자", 14),
    ("결제금액", 12),
    ("취소여부", 8),
    ("수령인", 12),
    ("수령인연락처", 15),
    ("우편번호", 8),
    ("주소", 40),
    ("상세주소", 20),
    ("참가자순번", 10),
    ("참가자명", 12),
    ("참가자성별", 10),
    ("생년월일", 12),
    ("참가자연락처", 15),
    ("참가자코스", 10),
    ("티셔츠사이즈", 12),
    ("비상연락처", 15),
    ("비상연락처관계", 12),
    ("대표구매자여부", 12),
    ("입력완료여부", 12),
]
HEADERS = [h for h, _ in COLUMNS]

def _yn(flag) -> str:
    return "Y" if flag else "N"

def export_rows(session: Session, multi_only: bool = False) -> list[list]:
    """One row per participant; an order without participants still gets one row."""
    buyers = {b.buyer_id: b for b in aggregate_buyers(session, multi_only=multi_only)}
    pairs = session.execute(
        select(models.Order, models.Participant)
        .outerjoin(models.Participant, models.Participant.order_id == models.Order.id)
        .order_by(models.Order.id.asc(), models.Participant.participant_index.asc())
    ).all()

    rows = []
    for o, p in pairs:
        agg = buyers.get(buyer_key(o.buyer_id))
        if multi_only and agg is None:
            continue
        rows.append([
            o.id,
            o.buyer_name,
            o.buyer_email,
            o.buyer_phone or "",
            o.buyer_gender or "",
            o.course or "",
            o.total_participants,
            agg.total_participants if agg else o.total_participants,
            o.total_amount,
            _yn(o.is_cancelled),
            o.recipient_name or "",
            o.recipient_phone or "",
            o.zipcode or "",
            o.address or "",
            o.address_detail or "",
            p.participant_index if p else "",
            (p.name or "") if p else "",
            (p.gender or "") if p else "",
            (p.birth_date or "") if p else "",
            (p.phone or "") if p else "",
            (p.course or "") if p else "",
            (p.tshirt_size or "") if p else "",
            (p.emergency_contact or "") if p else "",
            (p.emergency_relation or "") if p else "",
            _yn(p.is_primary) if p else "",
            _yn(p.is_completed) if p else "",
        ])
    return rows

def render_csv(rows: list[list]) -> str:
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(HEADERS)
    w.writerows(rows)
    return buf.getvalue()

def render_xlsx(rows: list[list]) -> bytes:
    df = pd.DataFrame(rows, columns=HEADERS)
    buf = BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=SHEET_NAME, index=False)
        sheet = writer.sheets[SHEET_NAME]
        for cells, (_, width) in zip(sheet.iter_cols(min_row=1, max_row=1), COLUMNS):
            sheet.column_dimensions[cells[0].column_letter].width = width
    return buf.getvalue()

def export_filename(multi_only: bool, ext: str, today: date | None = None) -> str:
    prefix = "복수구매자_주문목록" if multi_only else "전체_주문목록"
    return f"{prefix}_{(today or date.today()).isoformat()}.{ext}"

def _download(content, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
    )

@router.get("/api/admin/orders/export", dependencies=[Depends(admin_required)])
def export_orders(
    filter: str = "all",
    format: str = "xlsx",
    session: Session = Depends(get_session),
):
    if filter not in ("all", "multi"):
        raise HTTPException(status_code=400, detail="filter must be all or multi")
    multi_only = filter == "multi"
    rows = export_rows(session, multi_only=multi_only)
    if format == "csv":
        return _download(render_csv(rows), "text/csv; charset=utf-8", export_filename(multi_only, "csv"))
    if format == "xlsx":
        return _download(render_xlsx(rows), XLSX_MEDIA_TYPE, export_filename(multi_only, "xlsx"))
    raise HTTPException(status_code=400, detail="format must be xlsx or csv")
