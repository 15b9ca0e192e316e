"""认证模块单元测试：密码哈希、JWT、会话、登录限流、认证接口。"""

import os
import sqlite3
import tempfile
import threading
import time
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

# 在导入 smmpanel 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="auth_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-smmpanel"
os.environ["ADMIN_EMAIL"] = "admin@test.local"
os.environ["ADMIN_PASSWORD"] = "admin-pass-123"

import smmpanel.database as _db_mod
from smmpanel.database import init_db
from smmpanel.main import app
from smmpanel.services import auth
from smmpanel.services.ledger_service import AccountLedger
from smmpanel.services.repository import LedgerRepository


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("DROP TABLE IF EXISTS kv_store;")
    conn.close()
    init_db()
    yield


@pytest.fixture
def client():
    return TestClient(app)


def _register(email="alice@example.com", password="secret123"):
    return AccountLedger().register("Alice", email, password, password)


# ── 密码哈希测试 ──


class TestPasswordHashing:
    """密码哈希和验证测试。"""

    def test_hash_and_verify(self):
        """哈希后的密码可以正确验证。"""
        hashed = auth.hash_password("mypassword")
        assert auth.verify_password("mypassword", hashed)

    def test_wrong_password_fails(self):
        hashed = auth.hash_password("mypassword")
        assert not auth.verify_password("wrongpassword", hashed)

    def test_salted(self):
        """同一密码两次哈希结果不同。"""
        assert auth.hash_password("same") != auth.hash_password("same")

    def test_malformed_hash_is_mismatch(self):
        assert auth.verify_password("x", "not-a-bcrypt-hash") is False


# ── JWT 测试 ──


class TestJWT:
    """JWT 令牌测试。"""

    def test_create_and_verify(self):
        token = auth.create_token("USR-1", "user", "sid-1", time.time() + 60)
        payload = auth.verify_token(token)
        assert payload["sub"] == "USR-1"
        assert payload["sid"] == "sid-1"
        assert payload["role"] == "user"

    def test_expired_token(self):
        token = auth.create_token("USR-1", "user", "sid-1", time.time() - 60)
        with pytest.raises(ValueError):
            auth.verify_token(token)

    def test_tampered_token(self):
        token = auth.create_token("USR-1", "user", "sid-1", time.time() + 60)
        with pytest.raises(ValueError):
            auth.verify_token(token + "x")


# ── 会话测试 ──


class TestSessions:
    """服务端会话测试。"""

    def test_register_issues_valid_session(self):
        result = _register()
        assert result.success
        actor = auth.validate_session(LedgerRepository(), result.data["token"])
        assert actor is not None
        assert actor.email == "alice@example.com"
        assert actor.is_admin is False

    def test_missing_or_garbage_token(self):
        repo = LedgerRepository()
        assert auth.validate_session(repo, None) is None
        assert auth.validate_session(repo, "garbage") is None

    def test_logout_invalidates_token(self):
        ledger = AccountLedger()
        token = _register().data["token"]
        actor = ledger.validate_session(token)
        assert ledger.logout(actor).success
        assert ledger.validate_session(token) is None

    def test_expired_session_removed(self):
        """会话过期后立即失效并被删除，没有宽限期。"""
        repo = LedgerRepository()
        token = _register().data["token"]
        sid = auth.verify_token(token)["sid"]

        future = time.time() + auth.JWT_EXPIRE_HOURS * 3600 + 1
        with patch("smmpanel.services.auth.time.time", return_value=future):
            assert auth.validate_session(repo, token) is None
        assert repo.get_session(sid) is None

    def test_remember_me_extends_lifetime(self):
        repo = LedgerRepository()
        short = auth.issue_session(repo, "USR-1", "a@b.co", "user", remember_me=False)
        long = auth.issue_session(repo, "USR-1", "a@b.co", "user", remember_me=True)
        assert long.expires_at - short.expires_at > 24 * 3600

    def test_session_for_deleted_user_rejected(self):
        repo = LedgerRepository()
        session = auth.issue_session(repo, "USR-GONE", "gone@b.co", "user")
        assert auth.validate_session(repo, session.token) is None

    def test_admin_session(self):
        result = AccountLedger().login("admin@test.local", "admin-pass-123")
        assert result.success
        actor = auth.validate_session(LedgerRepository(), result.data["token"])
        assert actor.is_admin
        assert actor.user_id == "ADMIN"


# ── 登录限流测试 ──


class TestLoginThrottle:
    """登录失败锁定测试。"""

    def test_lockout_after_five_failures(self):
        """连续 5 次失败后，第 6、7 次即使密码正确也返回 account_locked。"""
        ledger = AccountLedger()
        _register()

        for _ in range(5):
            result = ledger.login("alice@example.com", "wrong-password")
            assert result.code == "invalid_credentials"

        sixth = ledger.login("alice@example.com", "secret123")
        seventh = ledger.login("alice@example.com", "wrong-password")
        assert sixth.code == "account_locked"
        assert seventh.code == "account_locked"
        assert sixth.data["retry_after"] > 0

    def test_lock_expires(self):
        ledger = AccountLedger()
        _register()
        for _ in range(5):
            ledger.login("alice@example.com", "wrong-password")

        future = time.time() + auth.LOCKOUT_SECONDS + 1
        with patch("smmpanel.services.auth.time.time", return_value=future):
            assert ledger.login("alice@example.com", "secret123").success

    def test_success_resets_counter(self):
        ledger = AccountLedger()
        _register()
        for _ in range(4):
            ledger.login("alice@example.com", "wrong-password")
        assert ledger.login("alice@example.com", "secret123").success
        assert LedgerRepository().get_login_attempts("alice@example.com")["count"] == 0

    def test_unknown_email_also_counted(self):
        repo = LedgerRepository()
        AccountLedger().login("nobody@example.com", "whatever")
        assert repo.get_login_attempts("nobody@example.com")["count"] == 1

    def test_admin_wrong_password_throttled(self):
        ledger = AccountLedger()
        for _ in range(5):
            ledger.login("admin@test.local", "nope")
        assert ledger.login("admin@test.local", "admin-pass-123").code == "account_locked"

    def test_stale_attempts_reset(self):
        """距上次失败超过 1 小时，计数从头开始。"""
        repo = LedgerRepository()
        repo.save_login_attempts("x@y.co", {
            "count": 4, "last_attempt": time.time() - auth.ATTEMPT_RESET_SECONDS - 10, "locked_until": 0,
        })
        record = auth.record_failed_login(repo, "x@y.co")
        assert record["count"] == 1
        assert record["locked_until"] == 0

    def test_concurrent_failures_all_counted(self):
        """同一邮箱并发失败登录，计数不丢失。"""
        repo = LedgerRepository()
        threads = [
            threading.Thread(target=auth.record_failed_login, args=(repo, "race@y.co"))
            for _ in range(12)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        record = repo.get_login_attempts("race@y.co")
        assert record["count"] == 12
        assert record["locked_until"] > time.time()


# ── 认证接口测试 ──


class TestAuthRoutes:
    """认证接口测试。"""

    def test_register_and_me(self, client):
        resp = client.post("/v1/auth/register", json={
            "name": "Alice", "email": "alice@example.com",
            "password": "secret123", "confirm_password": "secret123",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["code"] == 1
        assert "password_hash" not in data["user"]

        me = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.json()["user"]["email"] == "alice@example.com"

    def test_register_duplicate(self, client):
        _register()
        resp = client.post("/v1/auth/register", json={
            "name": "Alice", "email": "ALICE@example.com",
            "password": "secret123", "confirm_password": "secret123",
        })
        assert resp.json()["error"] == "duplicate_email"

    def test_login_sets_cookie(self, client):
        _register()
        resp = client.post("/v1/auth/login", json={"email": "alice@example.com", "password": "secret123"})
        assert resp.json()["code"] == 1
        assert "token" in resp.cookies
        assert client.get("/v1/auth/me").json()["code"] == 1

    def test_login_wrong_password(self, client):
        _register()
        resp = client.post("/v1/auth/login", json={"email": "alice@example.com", "password": "bad"})
        data = resp.json()
        assert data["code"] == -1
        assert data["error"] == "invalid_credentials"

    def test_me_without_token(self, client):
        resp = client.get("/v1/auth/me")
        assert resp.status_code == 401

    def test_logout(self, client):
        token = _register().data["token"]
        headers = {"Authorization": f"Bearer {token}"}
        assert client.post("/v1/auth/logout", headers=headers).json()["code"] == 1
        assert client.get("/v1/auth/me", headers=headers).status_code == 401

    def test_change_password(self, client):
        token = _register().data["token"]
        headers = {"Authorization": f"Bearer {token}"}
        resp = client.post("/v1/auth/change-password", headers=headers, json={
            "current_password": "secret123",
            "new_password": "newsecret1",
            "confirm_password": "newsecret1",
        })
        assert resp.json()["code"] == 1
        assert AccountLedger().login("alice@example.com", "newsecret1").success
