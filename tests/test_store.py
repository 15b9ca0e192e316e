"""账本存储与仓储测试。"""

import os
import sqlite3
import tempfile
import threading
import time
from decimal import Decimal
from unittest.mock import patch

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="store_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-smmpanel"

import pytest

import smmpanel.database as _db_mod
from smmpanel.database import get_db, init_db
from smmpanel.models.schemas import Order, Session, User
from smmpanel.services.repository import MAX_ACTIVITY_LOGS, LedgerRepository
from smmpanel.services.store import LedgerStore, StoreError


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


def _raw_value(key: str) -> str:
    db = get_db()
    try:
        row = db.execute("SELECT store_value FROM kv_store WHERE store_key = ?", (key,)).fetchone()
        return row["store_value"]
    finally:
        db.close()


class TestLedgerStore:
    """键值存储读写测试。"""

    def test_round_trip_plain(self):
        store = LedgerStore()
        store.set("orders", [{"id": "ORD1", "charge": "31.50"}])
        assert store.get("orders") == [{"id": "ORD1", "charge": "31.50"}]

    def test_round_trip_encrypted(self):
        """加密写入后数据库中看不到明文，读取时能还原。"""
        store = LedgerStore()
        store.set("users", [{"email": "alice@example.com"}], encrypted=True)
        assert "alice@example.com" not in _raw_value("users")
        assert store.get("users", [], encrypted=True) == [{"email": "alice@example.com"}]

    def test_missing_key_returns_default(self):
        assert LedgerStore().get("nothing", default=[]) == []

    def test_corrupt_value_returns_default(self):
        store = LedgerStore()
        store._write_raw("orders", "{not json", False)
        assert store.get("orders", default=[]) == []

    def test_missing_envelope_returns_default(self):
        store = LedgerStore()
        store._write_raw("orders", '{"foo": 1}', False)
        assert store.get("orders", default="fallback") == "fallback"

    def test_undecryptable_value_returns_default(self):
        """密文被篡改时退化为默认值。"""
        store = LedgerStore()
        store.set("sessions", {"a": 1}, encrypted=True)
        store._write_raw("sessions", _raw_value("sessions")[:-4] + "abcd", True)
        assert store.get("sessions", {}, encrypted=True) == {}

    def test_plain_read_of_encrypted_value_returns_default(self):
        store = LedgerStore()
        store.set("users", [1, 2], encrypted=True)
        assert store.get("users", default=None) is None

    def test_expired_value_removed(self):
        store = LedgerStore()
        store.set("temp", "v", expires_in=60)
        assert store.get("temp") == "v"

        with patch("smmpanel.services.store.time.time", return_value=time.time() + 120):
            assert store.get("temp", default="gone") == "gone"
        assert store.has("temp") is False

    def test_unserializable_value_raises(self):
        store = LedgerStore()
        with pytest.raises(StoreError):
            store.set("bad", {"amount": Decimal("1.00")})
        with pytest.raises(StoreError):
            store.set("bad", object())
        assert store.has("bad") is False

    def test_keys_and_clear(self):
        store = LedgerStore()
        store.set("b", 1)
        store.set("a", 2)
        assert store.keys() == ["a", "b"]
        store.clear()
        assert store.keys() == []

    def test_remove(self):
        store = LedgerStore()
        store.set("k", 1)
        store.remove("k")
        assert store.has("k") is False

    def test_update_returns_fn_result(self):
        store = LedgerStore()
        result = store.update("counter", lambda items: items.append(1) or len(items), default=[])
        assert result == 1
        assert store.get("counter") == [1]

    def test_update_default_not_shared(self):
        """default 的可变对象不会被修改。"""
        default = []
        store = LedgerStore()
        store.update("list", lambda items: items.append("x"), default=default)
        assert default == []

    def test_concurrent_updates_are_not_lost(self):
        """进程内并发 update 不丢失任何一次修改。"""
        store = LedgerStore()

        def _worker(n):
            store.update("items", lambda items: items.append(n), default=[])

        threads = [threading.Thread(target=_worker, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(store.get("items")) == list(range(20))

    def test_stale_snapshot_write_loses_update(self):
        """绕过 update、把旧快照直接写回会覆盖中间的修改。"""
        store = LedgerStore()
        store.set("orders", [])
        snapshot = store.get("orders")

        store.update("orders", lambda items: items.append("A"), default=[])
        store.set("orders", snapshot + ["B"])

        assert store.get("orders") == ["B"]


def _user(user_id="USR1", email="alice@example.com", balance="0") -> User:
    return User(id=user_id, name="Alice", email=email, password_hash="x", balance=Decimal(balance))


def _order(order_id="ORD1", user_id="USR1") -> Order:
    return Order(
        id=order_id, user_id=user_id, service=101, service_name="IG Likes",
        link="https://instagram.com/p/x", quantity=500,
        charge=Decimal("31.50"), price_per_k=Decimal("63.00"),
    )


class TestLedgerRepository:
    """仓储层测试。"""

    def test_add_and_find_user(self):
        repo = LedgerRepository()
        assert repo.add_user(_user()) is True
        assert repo.get_user("USR1").email == "alice@example.com"
        assert repo.find_user_by_email("  ALICE@example.com ").id == "USR1"

    def test_duplicate_email_rejected(self):
        repo = LedgerRepository()
        repo.add_user(_user())
        assert repo.add_user(_user(user_id="USR2", email="Alice@Example.com")) is False
        assert len(repo.list_users()) == 1

    def test_user_balance_persisted_as_decimal(self):
        repo = LedgerRepository()
        repo.add_user(_user(balance="12.30"))
        user = repo.get_user("USR1")
        assert user.balance == Decimal("12.30")
        assert isinstance(user.balance, Decimal)

    def test_update_user(self):
        repo = LedgerRepository()
        repo.add_user(_user())

        def _credit(u):
            u.balance += Decimal("5")
            return u.balance

        found, result = repo.update_user("USR1", _credit)
        assert found is True
        assert result == Decimal("5")
        assert repo.get_user("USR1").balance == Decimal("5")

    def test_update_missing_user(self):
        assert LedgerRepository().update_user("NOPE", lambda u: None) == (False, None)

    def test_orders_newest_first(self):
        repo = LedgerRepository()
        repo.append_order(_order("ORD1"))
        repo.append_order(_order("ORD2"))
        assert [o.id for o in repo.list_orders()] == ["ORD2", "ORD1"]

    def test_update_order(self):
        repo = LedgerRepository()
        repo.append_order(_order())

        def _complete(o):
            o.status = "Completed"

        found, _ = repo.update_order("ORD1", _complete)
        assert found is True
        assert repo.get_order("ORD1").status == "Completed"

    def test_list_user_orders(self):
        repo = LedgerRepository()
        repo.append_order(_order("ORD1", "USR1"))
        repo.append_order(_order("ORD2", "USR2"))
        assert [o.id for o in repo.list_user_orders("USR2")] == ["ORD2"]

    def test_sessions(self):
        repo = LedgerRepository()
        now = time.time()
        repo.save_session(Session("tok", "S1", "USR1", "a@b.c", "user", now, now + 10, now))
        repo.save_session(Session("tok", "S2", "USR1", "a@b.c", "user", now, now - 10, now))
        assert repo.get_session("S1").user_id == "USR1"
        assert repo.purge_expired_sessions(now) == 1
        assert repo.get_session("S2") is None
        assert repo.delete_session("S1") is True
        assert repo.delete_session("S1") is False

    def test_activity_log_capped(self):
        repo = LedgerRepository()
        for i in range(MAX_ACTIVITY_LOGS + 5):
            repo.append_activity({"id": i})
        logs = repo.list_activity()
        assert len(logs) == MAX_ACTIVITY_LOGS
        assert logs[0]["id"] == MAX_ACTIVITY_LOGS + 4

    def test_login_attempts_default(self):
        assert LedgerRepository().get_login_attempts("x@y.z") == {
            "count": 0, "last_attempt": 0, "locked_until": 0,
        }

    def test_settings_merge(self):
        repo = LedgerRepository()
        repo.save_settings({"fx_rate": "56"})
        merged = repo.save_settings({"profit_multiplier": "3"})
        assert merged == {"fx_rate": "56", "profit_multiplier": "3"}

    def test_update_payment_by_id(self):
        repo = LedgerRepository()
        repo.append_payment({"id": "PAY1", "status": "pending"})
        found, _ = repo.update_payment("PAY1", lambda p: p.update(status="paid"))
        assert found is True
        assert repo.list_payments()[0]["status"] == "paid"
        assert repo.update_payment("PAY2", lambda p: None) == (False, None)
