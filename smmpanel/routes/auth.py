"""
用户认证路由：注册、登录、登出、当前用户、修改密码、个人资料。
"""

import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from smmpanel.models.schemas import Actor
from smmpanel.routes.responses import result_response
from smmpanel.services.auth import get_current_actor
from smmpanel.services.ledger_service import AccountLedger

router = APIRouter(prefix="/v1/auth")


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    confirm_password: str


class LoginRequest(BaseModel):
    email: str
    password: str
    remember_me: bool = False


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str


class ProfileRequest(BaseModel):
    name: str | None = None
    preferences: dict | None = None


def _with_cookie(response: JSONResponse, token: str | None, expires_at: float | None) -> JSONResponse:
    if token:
        response.set_cookie(
            "token", token, httponly=True, samesite="lax",
            max_age=max(0, int((expires_at or 0) - time.time())),
        )
    return response


@router.post("/register")
async def register(body: RegisterRequest):
    result = AccountLedger().register(body.name, body.email, body.password, body.confirm_password)
    response = result_response(result)
    return _with_cookie(response, result.data.get("token"), result.data.get("expires_at"))


@router.post("/login")
async def login(body: LoginRequest):
    """
    用户登录。

    成功返回 {code: 1, user, token, expires_at}，同时写入 token cookie；
    锁定时返回 {code: -1, error: "account_locked", retry_after}。
    """
    result = AccountLedger().login(body.email, body.password, body.remember_me)
    response = result_response(result)
    return _with_cookie(response, result.data.get("token"), result.data.get("expires_at"))


@router.post("/logout")
async def logout(actor: Actor = Depends(get_current_actor)):
    response = result_response(AccountLedger().logout(actor))
    response.delete_cookie("token")
    return response


@router.get("/me")
async def me(actor: Actor = Depends(get_current_actor)):
    return result_response(AccountLedger().get_current_user(actor))


@router.post("/change-password")
async def change_password(body: ChangePasswordRequest, actor: Actor = Depends(get_current_actor)):
    return result_response(AccountLedger().change_password(
        actor, body.current_password, body.new_password, body.confirm_password
    ))


@router.put("/profile")
async def update_profile(body: ProfileRequest, actor: Actor = Depends(get_current_actor)):
    return result_response(AccountLedger().update_profile(actor, body.name, body.preferences))


@router.get("/activity")
async def activity(request: Request, actor: Actor = Depends(get_current_actor)):
    try:
        limit = int(request.query_params.get("limit", 50))
    except ValueError:
        limit = 50
    return result_response(AccountLedger().get_activity(actor, max(1, min(limit, 500))))
