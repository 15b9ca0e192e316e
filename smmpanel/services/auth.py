"""
认证模块：密码 bcrypt 哈希、JWT 令牌、服务端会话、登录限流、FastAPI 依赖项。

令牌是携带 sid 的 JWT，服务端在 sessions 集合中保存对应会话记录，
登出或过期时删除记录即可使令牌失效。
"""

import logging
import os
import secrets
import time

import bcrypt
from dotenv import load_dotenv
from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt

from smmpanel.models.schemas import ADMIN_USER_ID, ROLE_ADMIN, Actor, Session
from smmpanel.services.repository import LedgerRepository

load_dotenv()

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
REMEMBER_ME_DAYS = int(os.getenv("REMEMBER_ME_DAYS", "7"))

MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_SECONDS = 15 * 60
ATTEMPT_RESET_SECONDS = 60 * 60


def hash_password(password: str) -> str:
    """使用 bcrypt 对密码进行哈希（每个用户独立盐值）。"""
    return bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """验证密码是否与 bcrypt 哈希匹配，哈希格式错误视为不匹配。"""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def admin_credentials() -> tuple[str, str]:
    """固定管理员账号（不存储为用户记录）。"""
    email = os.getenv("ADMIN_EMAIL", "admin@smmpanel.local").strip().lower()
    password = os.getenv("ADMIN_PASSWORD", "")
    return email, password


def create_token(user_id: str, role: str, session_id: str, expires_at: float) -> str:
    payload = {"sub": user_id, "role": role, "sid": session_id, "exp": int(expires_at)}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并验证 JWT 令牌。

    Raises:
        ValueError: 令牌无效、已过期或缺少 sub/sid。
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"令牌无效: {e}")
    if "sub" not in payload or "sid" not in payload:
        raise ValueError("令牌缺少用户信息")
    return payload


# ── 会话 ──────────────────────────────────────────────────


def issue_session(
    repo: LedgerRepository,
    user_id: str,
    email: str,
    role: str,
    remember_me: bool = False,
) -> Session:
    """创建会话记录并签发令牌。"""
    now = time.time()
    lifetime = REMEMBER_ME_DAYS * 86400 if remember_me else JWT_EXPIRE_HOURS * 3600
    session_id = secrets.token_hex(16)
    expires_at = now + lifetime
    session = Session(
        token=create_token(user_id, role, session_id, expires_at),
        session_id=session_id,
        user_id=user_id,
        email=email,
        role=role,
        issued_at=now,
        expires_at=expires_at,
        last_activity=now,
    )
    repo.save_session(session)
    return session


def validate_session(repo: LedgerRepository, token: str | None) -> Actor | None:
    """
    校验令牌及其服务端会话，成功时刷新 last_activity。

    会话已过期则删除并返回 None，没有宽限期。
    """
    if not token:
        return None
    try:
        payload = verify_token(token)
    except ValueError:
        return None

    session = repo.get_session(payload["sid"])
    if session is None or session.user_id != payload["sub"]:
        return None

    now = time.time()
    if now >= session.expires_at:
        repo.delete_session(session.session_id)
        logger.info("会话已过期并移除: user_id=%s", session.user_id)
        return None

    session.last_activity = now
    repo.save_session(session)

    name = ""
    if session.role != ROLE_ADMIN:
        user = repo.get_user(session.user_id)
        if user is None:
            repo.delete_session(session.session_id)
            return None
        name = user.name
    else:
        name = "Administrator"

    return Actor(
        user_id=session.user_id,
        email=session.email,
        role=session.role,
        name=name,
        session_id=session.session_id,
    )


# ── 登录限流 ──────────────────────────────────────────────


def check_login_allowed(repo: LedgerRepository, email: str) -> int:
    """
    检查邮箱是否处于锁定期。

    Returns:
        0 表示允许登录，否则为剩余锁定秒数。
    """
    record = repo.get_login_attempts(email)
    locked_until = record.get("locked_until") or 0
    now = time.time()
    if locked_until and now < locked_until:
        return int(locked_until - now) + 1
    return 0


def record_failed_login(repo: LedgerRepository, email: str) -> dict:
    """记录一次失败登录，第 5 次失败设置 15 分钟锁定。"""
    now = time.time()

    def _apply(record: dict) -> dict:
        if now - (record.get("last_attempt") or 0) > ATTEMPT_RESET_SECONDS:
            record["count"] = 0
        if record.get("locked_until") and now >= record["locked_until"]:
            # 锁定已过期，重新计数
            record["count"] = 0
            record["locked_until"] = 0

        record["count"] = (record.get("count") or 0) + 1
        record["last_attempt"] = now
        if record["count"] >= MAX_LOGIN_ATTEMPTS:
            record["locked_until"] = now + LOCKOUT_SECONDS
        return dict(record)

    record = repo.update_login_attempts(email, _apply)
    if record["count"] >= MAX_LOGIN_ATTEMPTS:
        logger.warning("登录失败次数过多，账号已锁定: email=%s", email)
    return record


def reset_login_attempts(repo: LedgerRepository, email: str) -> None:
    repo.save_login_attempts(email, {"count": 0, "last_attempt": 0, "locked_until": 0})


# ── FastAPI 依赖项 ────────────────────────────────────────


def extract_token(request: Request) -> str | None:
    """从 Authorization header (Bearer) 或 cookie 中提取令牌。"""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get("token")


def get_current_actor(request: Request) -> Actor:
    """
    FastAPI 依赖项：解析当前请求的操作者。

    Raises:
        HTTPException(401): 令牌缺失、无效或会话已失效。
    """
    token = extract_token(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": -1, "msg": "Not authenticated", "error": "not_authenticated"},
        )
    actor = validate_session(LedgerRepository(), token)
    if actor is None:
        raise HTTPException(
            status_code=401,
            detail={"code": -1, "msg": "Session expired or invalid", "error": "not_authenticated"},
        )
    return actor


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """
    FastAPI 依赖项：要求管理员身份。

    Raises:
        HTTPException(403): 非管理员。
    """
    if not actor.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": -1, "msg": "Admin access required", "error": "forbidden"},
        )
    return actor


def admin_actor() -> Actor:
    """内部任务（后台对账等）使用的管理员身份。"""
    email, _ = admin_credentials()
    return Actor(user_id=ADMIN_USER_ID, email=email, role=ROLE_ADMIN, name="Administrator")
