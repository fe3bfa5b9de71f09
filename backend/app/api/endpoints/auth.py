from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel, Field

from app.core.security import (
    _is_admin_email,
    get_client_ip,
    get_current_admin,
    issue_session_token,
    login_attempt_keys,
    login_attempts,
    verify_admin_credentials,
)
from app.core.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter()


class LoginRequest(BaseModel):
    email: str
    password: str
    two_fa: str = Field(alias="twoFA")

    class Config:
        populate_by_name = True


@router.post("/auth/login")
async def login(body: LoginRequest, request: Request, response: Response) -> dict:
    client_ip = get_client_ip(request)
    # Failures count against both the peer address and the attempted email.
    keys = login_attempt_keys(request, body.email)
    retry_after = max(login_attempts.locked_for(key) for key in keys)
    if retry_after > 0:
        raise HTTPException(
            status_code=429,
            detail="Too many failed attempts",
            headers={"Retry-After": str(retry_after)},
        )

    if not verify_admin_credentials(body.email, body.password, body.two_fa):
        failures = max(login_attempts.record_failure(key) for key in keys)
        logger.warning("auth.login.failed ip=%s failures=%s", client_ip, failures)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    for key in keys:
        login_attempts.reset(key)
    token, expires_at = issue_session_token(body.email)
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path="/",
    )
    logger.info("auth.login.ok ip=%s", client_ip)
    return {
        "success": True,
        "access_token": token,
        "token_type": "bearer",
        "expires_at": expires_at.isoformat(),
    }


@router.get("/auth/check")
async def check(request: Request) -> dict:
    try:
        admin = get_current_admin(request)
    except HTTPException:
        return {"authenticated": False}
    return {"authenticated": _is_admin_email(admin.email)}


@router.post("/auth/logout")
async def logout(response: Response) -> dict:
    response.delete_cookie(key=settings.session_cookie_name, path="/")
    return {"ok": True}
