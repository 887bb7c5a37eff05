from fastapi import FastAPI, Request, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .settings import settings
from .db import init_db, get_session
from . import services
from .auth import (
    AuthCookieMiddleware,
    admin_required,
    buyer_required,
    check_admin_credentials,
    clear_admin_cookie,
    clear_buyer_cookie,
    get_buyer_token,
    set_admin_cookie,
    set_buyer_cookie,
)
from .buyers import dashboard_stats
from .export import router as export_router
from .logger import get_logger
from .results import Result, Status
from .schemas import (
    AdminLogin,
    BuyerLogin,
    CancelRequest,
    OrderUpdate,
    ParticipantSubmit,
    ParticipantUpdate,
)

_logger = get_logger(__name__)

GENERIC_FAILURE = "Operation failed, please try again."

app = FastAPI(title="KTRA Registration")
app.add_middleware(AuthCookieMiddleware)
# registered before /api/admin/orders/{order_id} so "export" is not taken for an id
app.include_router(export_router)

@app.on_event("startup")
def _startup() -> None:
    init_db()

@app.exception_handler(SQLAlchemyError)
async def _database_error(request: Request, exc: SQLAlchemyError):
    _logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse({"detail": GENERIC_FAILURE}, status_code=500)

def _raise_for(result: Result) -> None:
    if result.status is Status.INVALID:
        raise HTTPException(status_code=400, detail=result.reason)
    if result.status is Status.FAILED:
        raise HTTPException(status_code=500, detail=GENERIC_FAILURE)

# ---------------------------
# Buyer auth
# ---------------------------

@app.post("/api/auth/login")
def buyer_login(payload: BuyerLogin, request: Request, session=Depends(get_session)):
    result = services.login_buyer(session, payload.email, payload.phone)
    if result.status is Status.INVALID:
        raise HTTPException(status_code=401, detail=result.reason)
    _raise_for(result)
    set_buyer_cookie(request, result.value["token"])
    return {"success": True, "buyer_id": result.value["buyer_id"], "orderCount": result.value["order_count"]}

@app.post("/api/auth/logout")
def buyer_logout(request: Request, session=Depends(get_session)):
    services.end_buyer_session(session, get_buyer_token(request))
    clear_buyer_cookie(request)
    return {"success": True}

# ---------------------------
# Buyer self-service
# ---------------------------

@app.get("/api/orders")
def buyer_orders(buyer=Depends(buyer_required), session=Depends(get_session)):
    return services.buyer_overview(session, buyer.buyer_id)

def _buyer_order(session, order_id: int, buyer_id: str):
    try:
        return services.get_order_for_buyer(session, order_id, buyer_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))

@app.get("/api/participants/{order_id}")
def buyer_participants(order_id: int, buyer=Depends(buyer_required), session=Depends(get_session)):
    order = _buyer_order(session, order_id, buyer.buyer_id)
    return {"order": services.order_to_dict(order), "participants": services.participants_for_buyer(order)}

@app.put("/api/participants/{order_id}")
def buyer_submit_participant(
    order_id: int,
    payload: ParticipantSubmit,
    buyer=Depends(buyer_required),
    session=Depends(get_session),
):
    order = _buyer_order(session, order_id, buyer.buyer_id)
    result = services.submit_participant(session, order, payload)
    _raise_for(result)
    return {"success": True, "participant": result.value}

# ---------------------------
# Admin auth
# ---------------------------

@app.post("/api/admin/auth/login")
def admin_login(payload: AdminLogin, request: Request):
    if not check_admin_credentials(payload.id, payload.password):
        raise HTTPException(status_code=401, detail="Invalid id or password.")
    set_admin_cookie(request)
    return {"success": True}

@app.post("/api/admin/auth/logout")
def admin_logout(request: Request):
    clear_admin_cookie(request)
    return {"success": True}

# ---------------------------
# Admin console
# ---------------------------

@app.get("/api/admin/stats", dependencies=[Depends(admin_required)])
def admin_stats(session=Depends(get_session)):
    return dashboard_stats(session)

@app.get("/api/admin/orders", dependencies=[Depends(admin_required)])
def admin_orders(
    search: str = "",
    filter: str = Query(default="all"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=settings.KTRA_PAGE_SIZE, ge=1, le=500),
    session=Depends(get_session),
):
    search = search.strip()
    if filter == "multi":
        return services.list_multi_buyers(session, search=search, page=page, limit=limit)
    return services.list_orders(session, search=search, page=page, limit=limit)

@app.post("/api/admin/orders/cancel", dependencies=[Depends(admin_required)])
def admin_cancel_orders(payload: CancelRequest, session=Depends(get_session)):
    if not payload.order_ids:
        raise HTTPException(status_code=400, detail="Select at least one order to cancel.")
    report = services.cancel_orders(session, payload.order_ids)
    return {"success": not report.failed, **report.as_dict()}

@app.get("/api/admin/orders/{order_id}", dependencies=[Depends(admin_required)])
def admin_order_detail(order_id: int, session=Depends(get_session)):
    try:
        return services.admin_order_detail(session, order_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))

@app.put("/api/admin/orders/{order_id}", dependencies=[Depends(admin_required)])
def admin_update_order(order_id: int, payload: OrderUpdate, session=Depends(get_session)):
    try:
        order = services.update_order(session, order_id, payload)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "order": services.order_to_dict(order)}

@app.put("/api/admin/participants/{participant_id}", dependencies=[Depends(admin_required)])
def admin_update_participant(participant_id: int, payload: ParticipantUpdate, session=Depends(get_session)):
    try:
        p = services.update_participant(session, participant_id, payload)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "participant": services.participant_to_dict(p)}
