from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Request, HTTPException, Depends
from itsdangerous import URLSafeSerializer, URLSafeTimedSerializer, BadSignature
from sqlalchemy.orm import Session

from . import models
from .db import get_session
from .services import resolve_buyer_session
from .settings import settings

BUYER_COOKIE = "ktra_session"
ADMIN_COOKIE = "ktra_admin"

def _buyer_serializer() -> URLSafeSerializer:
    return URLSafeSerializer(settings.KTRA_SECRET_KEY, salt="ktra-buyer-session")

def _admin_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.KTRA_SECRET_KEY, salt="ktra-admin")

def check_admin_credentials(admin_id: str, password: str) -> bool:
    id_ok = hmac.compare_digest(admin_id.encode("utf-8"), settings.KTRA_ADMIN_ID.encode("utf-8"))
    pw_ok = hmac.compare_digest(password.encode("utf-8"), settings.KTRA_ADMIN_PASSWORD.encode("utf-8"))
    return id_ok and pw_ok

def _queue_cookie(request: Request, name: str, value: str, max_age: int) -> None:
    pending = getattr(request.state, "_set_cookies", None) or {}
    pending[name] = (value, max_age)
    request.state._set_cookies = pending

def _queue_clear(request: Request, name: str) -> None:
    pending = getattr(request.state, "_clear_cookies", None) or set()
    pending.add(name)
    request.state._clear_cookies = pending

def set_buyer_cookie(request: Request, token: str) -> None:
    _queue_cookie(request, BUYER_COOKIE, _buyer_serializer().dumps(token), settings.KTRA_BUYER_SESSION_HOURS * 3600)

def clear_buyer_cookie(request: Request) -> None:
    _queue_clear(request, BUYER_COOKIE)

def set_admin_cookie(request: Request) -> None:
    _queue_cookie(request, ADMIN_COOKIE, _admin_serializer().dumps({"r": "admin"}), settings.KTRA_ADMIN_SESSION_HOURS * 3600)

def clear_admin_cookie(request: Request) -> None:
    _queue_clear(request, ADMIN_COOKIE)

def get_buyer_token(request: Request) -> Optional[str]:
    raw = request.cookies.get(BUYER_COOKIE)
    if not raw:
        return None
    try:
        return str(_buyer_serializer().loads(raw))
    except BadSignature:
        return None

def buyer_required(request: Request, session: Session = Depends(get_session)) -> models.BuyerSession:
    if not request.cookies.get(BUYER_COOKIE):
        raise HTTPException(status_code=401, detail="Login required")
    s = resolve_buyer_session(session, get_buyer_token(request))
    if not s:
        raise HTTPException(status_code=401, detail="Session expired, please log in again")
    return s

def is_admin(request: Request) -> bool:
    raw = request.cookies.get(ADMIN_COOKIE)
    if not raw:
        return False
    try:
        # SignatureExpired is a BadSignature
        data = _admin_serializer().loads(raw, max_age=settings.KTRA_ADMIN_SESSION_HOURS * 3600)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("r") == "admin"

def admin_required(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="Admin login required")

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

class AuthCookieMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        for name, (value, max_age) in (getattr(request.state, "_set_cookies", None) or {}).items():
            response.set_cookie(
                name,
                value,
                httponly=True,
                samesite="lax",
                secure=settings.KTRA_SECURE_COOKIES,
                max_age=max_age,
                path="/",
            )
        for name in getattr(request.state, "_clear_cookies", None) or set():
            response.delete_cookie(name, path="/")
        return response
