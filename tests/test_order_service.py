"""下单服务单元测试：单笔、批量、分批投放、扣款补偿。"""

import os
import sqlite3
import tempfile
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

# 在导入 smmpanel 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="order_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-smmpanel"
os.environ["ADMIN_EMAIL"] = "admin@test.local"
os.environ["ADMIN_PASSWORD"] = "admin-pass-123"

import smmpanel.database as _db_mod
from smmpanel.database import init_db
from smmpanel.models.schemas import OperationResult, Actor
from smmpanel.services.auth import admin_actor
from smmpanel.services.catalog import CatalogService
from smmpanel.services.ledger_service import AccountLedger
from smmpanel.services.order_service import (
    OrderService,
    calculate_schedule,
    is_valid_url,
    parse_mass_input,
)
from smmpanel.services.repository import LedgerRepository
from smmpanel.services.supplier_client import SupplierClientError


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


RAW_SERVICES = [
    {"service": 101, "name": "Instagram Likes", "category": "Instagram",
     "rate": "0.45", "min": "100", "max": "10000", "refill": True},
]


@pytest.fixture
def ledger():
    return AccountLedger()


@pytest.fixture
def service(ledger):
    client = MagicMock()
    client.services.return_value = RAW_SERVICES
    return OrderService(ledger=ledger, catalog=CatalogService(client=client))


@pytest.fixture
def alice(ledger):
    """余额 1000 的普通用户。"""
    user = ledger.register("Alice", "alice@example.com", "secret123", "secret123").data["user"]
    ledger.credit_user(user["id"], "1000")
    return Actor(user_id=user["id"], email=user["email"], name="Alice")


# ── 单笔下单 ──


class TestPlaceOrder:
    """单笔下单测试。"""

    def test_successful_order(self, service, ledger, alice):
        """零售价 63.00/千，下单 500 扣 31.50，余额 968.50。"""
        result = service.place_order(alice, 101, "https://instagram.com/p/abc", 500)
        assert result.success
        order = result.data["order"]
        assert order["charge"] == "31.50"
        assert order["price_per_k"] == "63.00"
        assert order["status"] == "Pending"
        assert order["sync_status"] == "pending"
        assert ledger.get_balance(alice) == Decimal("968.50")
        user = LedgerRepository().get_user(alice.user_id)
        assert user.total_spent == Decimal("31.50")
        assert user.total_orders == 1

    def test_below_minimum_rejected(self, service, ledger, alice):
        """数量低于平台最低 250，拒绝且余额不变。"""
        result = service.place_order(alice, 101, "https://instagram.com/p/abc", 100)
        assert result.code == "validation_error"
        assert "250" in result.error
        assert ledger.get_balance(alice) == Decimal("1000")
        assert LedgerRepository().list_orders() == []
        user = LedgerRepository().get_user(alice.user_id)
        assert user.total_spent == Decimal("0")
        assert user.total_orders == 0

    def test_above_maximum_rejected(self, service, alice):
        assert service.place_order(alice, 101, "https://x.com/p", 10001).code == "validation_error"

    @pytest.mark.parametrize("link", ["", "instagram.com/p/abc", "ftp://x.com/a", None])
    def test_invalid_link(self, service, alice, link):
        assert service.place_order(alice, 101, link, 500).code == "validation_error"

    @pytest.mark.parametrize("quantity", ["abc", "5.5", None, True])
    def test_invalid_quantity(self, service, alice, quantity):
        assert service.place_order(alice, 101, "https://x.com/p", quantity).code == "validation_error"

    def test_unknown_service(self, service, alice):
        result = service.place_order(alice, 999, "https://x.com/p", 500)
        assert result.code == "validation_error"
        assert result.error == "Service not found"

    def test_catalog_unavailable(self, ledger, alice):
        client = MagicMock()
        client.services.side_effect = SupplierClientError("down")
        svc = OrderService(ledger=ledger, catalog=CatalogService(client=client))
        assert svc.place_order(alice, 101, "https://x.com/p", 500).code == "supplier_error"

    def test_insufficient_balance(self, service, ledger, alice):
        ledger.admin_set_balance(admin_actor(), alice.user_id, "10")
        result = service.place_order(alice, 101, "https://x.com/p", 500)
        assert result.code == "insufficient_balance"
        assert result.data == {"balance": "10.00", "required": "31.50"}
        assert ledger.get_balance(alice) == Decimal("10")

    def test_not_authenticated(self, service):
        assert service.place_order(None, 101, "https://x.com/p", 500).code == "not_authenticated"

    def test_admin_orders_without_balance(self, service):
        result = service.place_order(admin_actor(), 101, "https://x.com/p", 1000)
        assert result.success
        assert result.data["order"]["charge"] == "63.00"


# ── 扣款与建单的原子性 ──


class TestAtomicity:
    """建单失败时的扣款补偿测试。"""

    def test_create_failure_returns_charge(self, service, ledger, alice):
        with patch.object(
            ledger, "create_order",
            return_value=OperationResult.fail("store_error", "Failed to save order"),
        ):
            result = service.place_order(alice, 101, "https://x.com/p", 500)
        assert result.code == "store_error"
        assert ledger.get_balance(alice) == Decimal("1000")
        user = LedgerRepository().get_user(alice.user_id)
        assert user.total_spent == Decimal("0")
        assert user.total_orders == 0

    def test_store_write_failure_returns_charge(self, service, ledger, alice):
        """订单写入抛出数据库异常时退回扣款，不留下订单。"""
        with patch.object(
            LedgerRepository, "append_order", side_effect=sqlite3.OperationalError("disk I/O error"),
        ):
            result = service.place_order(alice, 101, "https://x.com/p", 500)
        assert result.code == "store_error"
        assert ledger.get_balance(alice) == Decimal("1000")
        assert LedgerRepository().list_orders() == []
        assert LedgerRepository().get_user(alice.user_id).total_orders == 0

    def test_failed_compensation_is_reported(self, service, ledger, alice):
        """建单失败且退款也失败时返回 ledger_inconsistency。"""
        with patch.object(
            ledger, "create_order",
            return_value=OperationResult.fail("store_error", "Failed to save order"),
        ), patch.object(
            ledger, "add_funds",
            return_value=OperationResult.fail("store_error", "write failed"),
        ):
            result = service.place_order(alice, 101, "https://x.com/p", 500)
        assert result.code == "ledger_inconsistency"
        assert result.data["charge"] == "31.50"


# ── 批量下单 ──


class TestMassOrder:
    """批量下单测试。"""

    def test_partial_success(self, service, ledger, alice):
        """3 行中 1 行链接无效：成功 2 笔，解析错误 1 条。"""
        text = "https://instagram.com/p/a|500\nnot-a-url\nhttps://instagram.com/p/b|300\n"
        result = service.place_mass_order(alice, 101, text)
        assert result.success
        data = result.data
        assert data["summary"] == {"total": 3, "success": 2, "failed": 1}
        assert data["errors"] == [{"line": 2, "error": "Invalid URL", "value": "not-a-url"}]
        assert [r["charge"] for r in data["results"]] == ["31.50", "18.99"]
        assert ledger.get_balance(alice) == Decimal("949.51")

        orders = LedgerRepository().list_orders()
        assert len(orders) == 2
        assert all(o.is_mass_order for o in orders)

    def test_quantity_clamped_with_warning(self, service, alice):
        result = service.place_mass_order(alice, 101, "https://x.com/a|10\nhttps://x.com/b|99999")
        warnings = result.data["warnings"]
        assert len(warnings) == 2
        assert "minimum 250" in warnings[0]["warning"]
        assert "maximum 10000" in warnings[1]["warning"]

    def test_lines_run_independently(self, service, ledger, alice):
        """余额只够第一行时，第二行失败不影响第一行。"""
        ledger.admin_set_balance(admin_actor(), alice.user_id, "40")
        result = service.place_mass_order(alice, 101, "https://x.com/a|500\nhttps://x.com/b|500")
        rows = result.data["results"]
        assert rows[0]["success"] is True
        assert rows[1]["code"] == "insufficient_balance"
        assert ledger.get_balance(alice) == Decimal("8.50")

    def test_empty_input(self, service, alice):
        assert service.place_mass_order(alice, 101, "  \n ").code == "validation_error"

    def test_default_quantity(self, service, alice):
        result = service.place_mass_order(alice, 101, "https://x.com/a", default_quantity=400)
        order_id = result.data["results"][0]["order_id"]
        assert LedgerRepository().get_order(order_id).quantity == 400


class TestParseMassInput:
    """批量文本解析测试。"""

    def test_formats(self):
        parsed = parse_mass_input("https://a.com/1\nhttps://a.com/2|700\n\nhttps://a.com/3|abc", 1000)
        assert [(o["link"], o["quantity"]) for o in parsed["orders"]] == [
            ("https://a.com/1", 1000),
            ("https://a.com/2", 700),
            ("https://a.com/3", 1000),
        ]
        assert parsed["errors"] == []

    def test_line_numbers_skip_blank_lines(self):
        parsed = parse_mass_input("\nbad\nhttps://a.com/1")
        assert parsed["errors"][0]["line"] == 1
        assert parsed["orders"][0]["line"] == 2

    def test_is_valid_url(self):
        assert is_valid_url("https://tiktok.com/@user")
        assert is_valid_url("http://x.co")
        assert not is_valid_url("javascript:alert(1)")
        assert not is_valid_url("https://")


# ── 分批投放 ──


class TestDripFeed:
    """分批投放计划测试。"""

    def test_schedule_distributes_remainder(self):
        start = datetime(2024, 1, 1, 12, 0, 0)
        plan = calculate_schedule(1000, 3, 30, "minutes", start=start)
        assert [run["quantity"] for run in plan["schedule"]] == [334, 333, 333]
        assert sum(run["quantity"] for run in plan["schedule"]) == 1000
        assert plan["schedule"][1]["scheduled_at"] == "2024-01-01T12:30:00"
        assert plan["total_duration"] == 60
        assert plan["estimated_completion"] == "2024-01-01T13:00:00"

    def test_hours_and_days(self):
        assert calculate_schedule(100, 2, 2, "hours")["interval_minutes"] == 120
        assert calculate_schedule(100, 2, 1, "days")["interval_minutes"] == 1440

    @pytest.mark.parametrize("args", [
        (100, 0, 10, "minutes"),
        (100, 2, 0, "minutes"),
        (5, 10, 10, "minutes"),
        (100, 2, 10, "weeks"),
    ])
    def test_invalid_schedule(self, args):
        with pytest.raises(ValueError):
            calculate_schedule(*args)

    def test_drip_order(self, service, alice):
        """分批订单按总数量一次扣款，计划只作为订单元数据保存。"""
        result = service.place_order(
            alice, 101, "https://x.com/p", 1000,
            drip={"runs": 4, "interval": 1, "interval_unit": "hours"},
        )
        order = result.data["order"]
        assert order["charge"] == "63.00"
        assert order["is_drip_feed"] is True
        assert len(order["drip_feed"]["schedule"]) == 4

        status = service.get_drip_feed_status(alice, order["id"])
        assert status.data["total_runs"] == 4
        assert status.data["completed_runs"] == 0
        assert status.data["progress"] == 0
        assert status.data["next_run"]["run"] == 1

    def test_invalid_drip_rejected(self, service, ledger, alice):
        result = service.place_order(
            alice, 101, "https://x.com/p", 500, drip={"runs": 2, "interval": 5, "interval_unit": "weeks"},
        )
        assert result.code == "validation_error"
        assert ledger.get_balance(alice) == Decimal("1000")

    def test_drip_status_other_user(self, service, ledger, alice):
        order_id = service.place_order(
            alice, 101, "https://x.com/p", 500, drip={"runs": 2, "interval": 5},
        ).data["order"]["id"]
        bob = ledger.register("Bob", "bob@example.com", "secret123", "secret123").data["user"]
        bob_actor = Actor(user_id=bob["id"], email=bob["email"])
        assert service.get_drip_feed_status(bob_actor, order_id).code == "forbidden"

    def test_drip_status_plain_order(self, service, alice):
        order_id = service.place_order(alice, 101, "https://x.com/p", 500).data["order"]["id"]
        assert service.get_drip_feed_status(alice, order_id).code == "not_found"
