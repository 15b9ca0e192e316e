"""
账户账本：注册/登录/会话、余额增减、订单记录、管理员操作。

所有公共方法返回 OperationResult，校验失败、状态冲突和权限不足都以
返回值表达，不抛出异常。余额在任何操作序列后都保持非负：
扣款与余额检查在同一次锁内读-改-写中完成。

管理员是固定凭证，不存储为用户记录，余额无上限（balance=None）。
"""

import logging
import random
import re
import sqlite3
from datetime import datetime
from decimal import Decimal

from smmpanel.models.schemas import (
    ADMIN_USER_ID,
    ORDER_STATUSES,
    ROLE_ADMIN,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUS_REFUNDED,
    SYNC_PENDING,
    Actor,
    OperationResult,
    Order,
    User,
)
from smmpanel.services import auth
from smmpanel.services.pricing import CENT, PricingError, to_decimal
from smmpanel.services.repository import LedgerRepository
from smmpanel.services.store import StoreError

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6

TXN_DEPOSIT = "deposit"
TXN_ADMIN_CREDIT = "admin_credit"
TXN_ADMIN_DEBIT = "admin_debit"
TXN_REFUND = "refund"


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _money(value: Decimal | None) -> str | None:
    return None if value is None else str(value.quantize(CENT))


def generate_user_id() -> str:
    return f"USR-{int(datetime.now().timestamp() * 1000):x}{random.randint(0, 0xFFFFFF):06x}"


def generate_txn_id() -> str:
    return f"TXN-{random.randint(1000000, 9999999)}"


class AccountLedger:
    """账户账本服务。"""

    def __init__(self, repo: LedgerRepository | None = None):
        self.repo = repo or LedgerRepository()

    # ── 内部工具 ──────────────────────────────────────────

    def log_activity(self, action: str, user_id: str | None, email: str | None, data: dict | None = None) -> None:
        self.repo.append_activity({
            "action": action,
            "user_id": user_id,
            "user_email": email,
            "data": data or {},
            "timestamp": _now(),
        })

    @staticmethod
    def _forbidden() -> OperationResult:
        return OperationResult.fail("forbidden", "Admin access required")

    @staticmethod
    def _not_authenticated() -> OperationResult:
        return OperationResult.fail("not_authenticated", "Please log in first")

    @staticmethod
    def _parse_amount(value, allow_zero: bool = False) -> Decimal | None:
        """解析金额；非数字、负数（或不允许时为 0）返回 None。"""
        try:
            amount = to_decimal(value, "amount")
        except PricingError:
            return None
        if amount < 0 or (amount == 0 and not allow_zero):
            return None
        return amount.quantize(CENT)

    def _record_transaction(
        self,
        user_id: str,
        txn_type: str,
        amount: Decimal,
        reason: str | None = None,
        method: str | None = None,
        actor: Actor | None = None,
    ) -> dict:
        now = _now()
        txn = {
            "id": generate_txn_id(),
            "user_id": user_id,
            "type": txn_type,
            "amount": _money(amount),
            "method": method,
            "status": "completed",
            "reason": reason,
            "created_by": actor.user_id if actor else None,
            "created_at": now,
            "completed_at": now,
        }
        self.repo.append_transaction(txn)
        return txn

    def _admin_session_result(self, email: str, remember_me: bool) -> OperationResult:
        session = auth.issue_session(self.repo, ADMIN_USER_ID, email, ROLE_ADMIN, remember_me)
        self.log_activity("login", ADMIN_USER_ID, email, {"role": ROLE_ADMIN})
        return OperationResult.ok(
            user={
                "id": ADMIN_USER_ID,
                "name": "Administrator",
                "email": email,
                "role": ROLE_ADMIN,
                "balance": None,
            },
            token=session.token,
            expires_at=session.expires_at,
        )

    # ── 注册 / 登录 / 会话 ────────────────────────────────

    def register(self, name: str, email: str, password: str, confirm_password: str) -> OperationResult:
        """注册新用户并直接签发会话。"""
        name = (name or "").strip()
        email = (email or "").strip().lower()
        password = password or ""

        if not name or not email:
            return OperationResult.fail("validation_error", "Name and email are required")
        if not EMAIL_RE.match(email):
            return OperationResult.fail("validation_error", "Please enter a valid email address")
        if len(password) < MIN_PASSWORD_LENGTH:
            return OperationResult.fail(
                "validation_error",
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            )
        if password != confirm_password:
            return OperationResult.fail("validation_error", "Passwords do not match")

        admin_email, _ = auth.admin_credentials()
        if email == admin_email:
            return OperationResult.fail("duplicate_email", "An account with this email already exists")

        now = _now()
        user = User(
            id=generate_user_id(),
            name=name,
            email=email,
            password_hash=auth.hash_password(password),
            created_at=now,
            updated_at=now,
            last_login=now,
        )
        if not self.repo.add_user(user):
            return OperationResult.fail("duplicate_email", "An account with this email already exists")

        def _record_user(stats: dict) -> None:
            stats["activeUsers"] = stats.get("activeUsers", 0) + 1
            stats["lastUpdated"] = now

        self.repo.update_stats(_record_user)
        session = auth.issue_session(self.repo, user.id, user.email, user.role)
        self.log_activity("register", user.id, user.email)
        logger.info("新用户注册: user_id=%s", user.id)

        return OperationResult.ok(
            user=user.sanitized(), token=session.token, expires_at=session.expires_at
        )

    def login(self, email: str, password: str, remember_me: bool = False) -> OperationResult:
        """
        邮箱密码登录。

        - 先检查锁定状态：锁定期内无论密码是否正确都返回 account_locked
        - 密码错误记录失败次数，第 5 次失败锁定 15 分钟
        - 成功则重置计数并签发会话
        """
        email = (email or "").strip().lower()
        password = password or ""
        if not email or not password:
            return OperationResult.fail("validation_error", "Email and password are required")

        retry_after = auth.check_login_allowed(self.repo, email)
        if retry_after:
            return OperationResult.fail(
                "account_locked",
                f"Too many failed attempts. Try again in {max(1, retry_after // 60)} minutes",
                retry_after=retry_after,
            )

        admin_email, admin_password = auth.admin_credentials()
        if email == admin_email and admin_password:
            if password == admin_password:
                auth.reset_login_attempts(self.repo, email)
                return self._admin_session_result(email, remember_me)
            auth.record_failed_login(self.repo, email)
            return OperationResult.fail("invalid_credentials", "Invalid email or password")

        user = self.repo.find_user_by_email(email)
        if user is None or not auth.verify_password(password, user.password_hash):
            auth.record_failed_login(self.repo, email)
            return OperationResult.fail("invalid_credentials", "Invalid email or password")

        auth.reset_login_attempts(self.repo, email)
        now = _now()

        def _touch(u: User) -> None:
            u.last_login = now
            u.updated_at = now

        self.repo.update_user(user.id, _touch)
        session = auth.issue_session(self.repo, user.id, user.email, user.role, remember_me)
        self.log_activity("login", user.id, user.email, {"remember_me": remember_me})
        user.last_login = now

        return OperationResult.ok(
            user=user.sanitized(), token=session.token, expires_at=session.expires_at
        )

    def logout(self, actor: Actor | None) -> OperationResult:
        if actor is None:
            return self._not_authenticated()
        if actor.session_id:
            self.repo.delete_session(actor.session_id)
        self.log_activity("logout", actor.user_id, actor.email)
        return OperationResult.ok()

    def validate_session(self, token: str | None) -> Actor | None:
        return auth.validate_session(self.repo, token)

    def get_current_user(self, actor: Actor | None) -> OperationResult:
        if actor is None:
            return self._not_authenticated()
        if actor.is_admin:
            return OperationResult.ok(user={
                "id": actor.user_id,
                "name": actor.name or "Administrator",
                "email": actor.email,
                "role": ROLE_ADMIN,
                "balance": None,
            })
        user = self.repo.get_user(actor.user_id)
        if user is None:
            return OperationResult.fail("not_found", "User not found")
        return OperationResult.ok(user=user.sanitized())

    # ── 余额 ──────────────────────────────────────────────

    def get_balance(self, actor: Actor) -> Decimal | None:
        """当前余额（每次从存储重新读取）；None 表示无上限（管理员）。"""
        if actor.is_admin:
            return None
        user = self.repo.get_user(actor.user_id)
        return user.balance if user else Decimal("0")

    def credit_user(self, user_id: str, amount, reason: str | None = None) -> OperationResult:
        """给指定用户加余额（充值审核、退款、管理员调整共用）。"""
        value = self._parse_amount(amount)
        if value is None:
            return OperationResult.fail("validation_error", "Amount must be a positive number")
        if user_id == ADMIN_USER_ID:
            return OperationResult.ok(balance=None)

        def _apply(u: User) -> Decimal:
            u.balance = u.balance + value
            u.updated_at = _now()
            return u.balance

        found, balance = self.repo.update_user(user_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "User not found")
        logger.info("余额增加: user_id=%s, amount=%s, reason=%s", user_id, value, reason)
        return OperationResult.ok(balance=_money(balance))

    def add_funds(self, actor: Actor | None, amount, reason: str | None = None) -> OperationResult:
        if actor is None:
            return self._not_authenticated()
        if actor.is_admin:
            if self._parse_amount(amount) is None:
                return OperationResult.fail("validation_error", "Amount must be a positive number")
            return OperationResult.ok(balance=None)

        result = self.credit_user(actor.user_id, amount, reason)
        if result.success:
            self.log_activity(
                "add_funds", actor.user_id, actor.email,
                {"amount": _money(self._parse_amount(amount)), "reason": reason},
            )
        return result

    def deduct_funds(self, actor: Actor | None, amount) -> OperationResult:
        """
        扣款：余额不足时返回 insufficient_balance 且余额不变。

        total_spent / total_orders 只在 create_order 写入订单后累加。
        """
        if actor is None:
            return self._not_authenticated()
        value = self._parse_amount(amount, allow_zero=True)
        if value is None:
            return OperationResult.fail("validation_error", "Amount must be a non-negative number")
        if actor.is_admin:
            return OperationResult.ok(balance=None)

        def _apply(u: User) -> tuple[bool, Decimal]:
            if u.balance < value:
                return False, u.balance
            u.balance = u.balance - value
            u.updated_at = _now()
            return True, u.balance

        found, outcome = self.repo.update_user(actor.user_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "User not found")
        deducted, balance = outcome
        if not deducted:
            return OperationResult.fail(
                "insufficient_balance",
                "Insufficient balance",
                balance=_money(balance),
                required=_money(value),
            )

        self.log_activity("deduct_funds", actor.user_id, actor.email, {"amount": _money(value)})
        logger.info("余额扣除: user_id=%s, amount=%s", actor.user_id, value)
        return OperationResult.ok(balance=_money(balance))

    # ── 订单记录 ──────────────────────────────────────────

    def _generate_order_id(self) -> str:
        existing = {o.id for o in self.repo.list_orders()}
        for _ in range(20):
            candidate = f"ORD-{random.randint(100000, 999999)}"
            if candidate not in existing:
                return candidate
        raise StoreError("unable to allocate a unique order id")

    def create_order(self, actor: Actor | None, order_data: dict) -> OperationResult:
        """
        记录一笔新订单（最新在前），状态 Pending，等待供应商同步。

        order_data: service, service_name, link, quantity, charge, price_per_k，
        可选 is_mass_order, is_drip_feed, drip_feed。
        """
        if actor is None:
            return self._not_authenticated()

        now = _now()
        try:
            order = Order(
                id=self._generate_order_id(),
                user_id=actor.user_id,
                user_email=actor.email,
                service=int(order_data["service"]),
                service_name=order_data.get("service_name", ""),
                link=order_data["link"],
                quantity=int(order_data["quantity"]),
                charge=to_decimal(order_data["charge"], "charge"),
                price_per_k=to_decimal(order_data.get("price_per_k", 0), "price_per_k"),
                status=STATUS_PENDING,
                is_mass_order=bool(order_data.get("is_mass_order", False)),
                is_drip_feed=bool(order_data.get("is_drip_feed", False)),
                drip_feed=order_data.get("drip_feed"),
                sync_status=SYNC_PENDING,
                created_at=now,
                updated_at=now,
            )
        except (KeyError, TypeError, ValueError) as e:
            return OperationResult.fail("validation_error", f"Invalid order data: {e}")

        try:
            self.repo.append_order(order)
        except (StoreError, sqlite3.Error) as e:
            logger.error("订单写入失败: user_id=%s, error=%s", actor.user_id, e)
            return OperationResult.fail("store_error", "Failed to save order")

        if not actor.is_admin:
            def _count(u: User) -> None:
                u.total_spent = u.total_spent + order.charge
                u.total_orders += 1
                u.updated_at = now

            self.repo.update_user(actor.user_id, _count)

        def _record(stats: dict) -> None:
            stats["totalOrders"] = stats.get("totalOrders", 0) + 1
            stats["ordersDelivered"] = stats.get("ordersDelivered", 0) + order.quantity
            stats["lastUpdated"] = now

        self.repo.update_stats(_record)
        self.log_activity("create_order", actor.user_id, actor.email, {
            "order_id": order.id,
            "service": order.service,
            "quantity": order.quantity,
            "charge": _money(order.charge),
        })
        return OperationResult.ok(order=order.to_dict())

    def update_order_status(self, order_id: str, status: str, extra: dict | None = None) -> OperationResult:
        """
        按供应商反馈更新订单状态，接受 7 种状态中的任意一种。

        extra 可携带 remains / start_count。
        """
        if status not in ORDER_STATUSES:
            return OperationResult.fail("validation_error", f"Invalid status: {status}")
        extra = extra or {}

        def _apply(order: Order) -> dict:
            order.status = status
            order.updated_at = _now()
            for key in ("remains", "start_count"):
                if extra.get(key) is not None:
                    try:
                        setattr(order, key, int(extra[key]))
                    except (TypeError, ValueError):
                        logger.warning("忽略无效的 %s: order_id=%s, value=%r", key, order_id, extra[key])
            return order.to_dict()

        found, order = self.repo.update_order(order_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "Order not found")
        return OperationResult.ok(order=order)

    def get_user_orders(self, actor: Actor | None) -> OperationResult:
        if actor is None:
            return self._not_authenticated()
        if actor.is_admin:
            orders = self.repo.list_orders()
        else:
            orders = self.repo.list_user_orders(actor.user_id)
        return OperationResult.ok(orders=[o.to_dict() for o in orders])

    # ── 管理员操作 ────────────────────────────────────────

    def list_users(self, actor: Actor | None) -> OperationResult:
        if actor is None or not actor.is_admin:
            return self._forbidden()
        return OperationResult.ok(users=[u.sanitized() for u in self.repo.list_users()])

    def admin_adjust_balance(
        self,
        actor: Actor | None,
        user_id: str,
        amount,
        direction: str,
        reason: str | None = None,
    ) -> OperationResult:
        """
        管理员给用户加/减余额，写交易记录和活动日志。

        扣减不会使余额低于 0：余额不足时返回 insufficient_balance。
        """
        if actor is None or not actor.is_admin:
            return self._forbidden()
        value = self._parse_amount(amount)
        if value is None:
            return OperationResult.fail("validation_error", "Amount must be a positive number")
        if direction not in ("credit", "debit"):
            return OperationResult.fail("validation_error", "Direction must be credit or debit")

        def _apply(u: User) -> tuple[bool, Decimal]:
            if direction == "debit":
                if u.balance < value:
                    return False, u.balance
                u.balance = u.balance - value
            else:
                u.balance = u.balance + value
            u.updated_at = _now()
            return True, u.balance

        found, outcome = self.repo.update_user(user_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "User not found")
        applied, balance = outcome
        if not applied:
            return OperationResult.fail(
                "insufficient_balance", "Debit exceeds user balance", balance=_money(balance)
            )

        txn_type = TXN_ADMIN_CREDIT if direction == "credit" else TXN_ADMIN_DEBIT
        txn = self._record_transaction(user_id, txn_type, value, reason=reason, actor=actor)
        self.log_activity("admin_adjust_balance", actor.user_id, actor.email, {
            "user_id": user_id,
            "direction": direction,
            "amount": _money(value),
            "reason": reason,
        })
        logger.info("管理员调整余额: user_id=%s, %s %s", user_id, direction, value)
        return OperationResult.ok(balance=_money(balance), transaction=txn)

    def admin_set_balance(self, actor: Actor | None, user_id: str, balance, reason: str | None = None) -> OperationResult:
        """管理员把用户余额直接设为指定值（非负），差额记为交易。"""
        if actor is None or not actor.is_admin:
            return self._forbidden()
        target = self._parse_amount(balance, allow_zero=True)
        if target is None:
            return OperationResult.fail("validation_error", "Balance must be a non-negative number")

        def _apply(u: User) -> Decimal:
            previous = u.balance
            u.balance = target
            u.updated_at = _now()
            return previous

        found, previous = self.repo.update_user(user_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "User not found")

        delta = target - previous
        txn = None
        if delta != 0:
            txn_type = TXN_ADMIN_CREDIT if delta > 0 else TXN_ADMIN_DEBIT
            txn = self._record_transaction(
                user_id, txn_type, abs(delta), reason=reason or "balance set by admin", actor=actor
            )
        self.log_activity("admin_set_balance", actor.user_id, actor.email, {
            "user_id": user_id,
            "previous": _money(previous),
            "balance": _money(target),
        })
        return OperationResult.ok(balance=_money(target), transaction=txn)

    def refund_order(self, actor: Actor | None, order_id: str) -> OperationResult:
        """退款：把订单金额退回用户余额并把订单置为 Refunded。"""
        if actor is None or not actor.is_admin:
            return self._forbidden()

        def _apply(order: Order) -> tuple[bool, Order]:
            if order.status in (STATUS_REFUNDED, STATUS_COMPLETED):
                return False, order
            order.status = STATUS_REFUNDED
            order.updated_at = _now()
            return True, order

        found, outcome = self.repo.update_order(order_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "Order not found")
        changed, order = outcome
        if not changed:
            return OperationResult.fail(
                "validation_error", f"Order cannot be refunded in status {order.status}"
            )

        credit = OperationResult.ok(balance=None)
        if order.charge > 0:
            credit = self.credit_user(order.user_id, order.charge, reason=f"refund {order.id}")
        if not credit.success:
            logger.error(
                "退款入账失败，订单已标记为 Refunded: order_id=%s, error=%s",
                order.id, credit.error,
            )
            return OperationResult.fail(
                "ledger_inconsistency",
                "Order marked refunded but the credit failed",
                order_id=order.id,
            )

        txn = self._record_transaction(
            order.user_id, TXN_REFUND, order.charge, reason=f"refund {order.id}", actor=actor
        )
        self.log_activity("refund_order", actor.user_id, actor.email, {
            "order_id": order.id,
            "user_id": order.user_id,
            "amount": _money(order.charge),
        })
        logger.info("订单已退款: order_id=%s, amount=%s", order.id, order.charge)
        return OperationResult.ok(order=order.to_dict(), transaction=txn, balance=credit.data.get("balance"))

    def get_admin_stats(self, actor: Actor | None) -> OperationResult:
        if actor is None or not actor.is_admin:
            return self._forbidden()

        users = self.repo.list_users()
        orders = self.repo.list_orders()
        by_status = {status: 0 for status in ORDER_STATUSES}
        revenue = Decimal("0")
        for order in orders:
            by_status[order.status] = by_status.get(order.status, 0) + 1
            if order.status != STATUS_REFUNDED:
                revenue += order.charge

        pending_payments = [
            p for p in self.repo.list_payments()
            if p.get("status") in ("pending", "awaiting_verification")
        ]
        open_tickets = [
            t for t in self.repo.list_tickets() if t.get("status") in ("open", "inProgress")
        ]
        today = datetime.now().strftime("%Y-%m-%d")

        return OperationResult.ok(stats={
            "total_users": len(users),
            "total_orders": len(orders),
            "orders_today": sum(1 for o in orders if (o.created_at or "").startswith(today)),
            "orders_by_status": by_status,
            "total_revenue": _money(revenue),
            "total_user_balance": _money(sum((u.balance for u in users), Decimal("0"))),
            "pending_payments": len(pending_payments),
            "open_tickets": len(open_tickets),
            "sync_failed": sum(1 for o in orders if o.sync_status == "failed"),
            "counters": self.repo.get_stats(),
        })

    # ── 个人资料 ──────────────────────────────────────────

    def change_password(
        self, actor: Actor | None, current_password: str, new_password: str, confirm_password: str
    ) -> OperationResult:
        if actor is None:
            return self._not_authenticated()
        if actor.is_admin:
            return OperationResult.fail("validation_error", "Admin password is configured by environment")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            return OperationResult.fail(
                "validation_error",
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            )
        if new_password != confirm_password:
            return OperationResult.fail("validation_error", "Passwords do not match")

        user = self.repo.get_user(actor.user_id)
        if user is None:
            return OperationResult.fail("not_found", "User not found")
        if not auth.verify_password(current_password or "", user.password_hash):
            return OperationResult.fail("invalid_credentials", "Current password is incorrect")

        new_hash = auth.hash_password(new_password)

        def _apply(u: User) -> None:
            u.password_hash = new_hash
            u.updated_at = _now()

        self.repo.update_user(actor.user_id, _apply)
        self.log_activity("change_password", actor.user_id, actor.email)
        return OperationResult.ok()

    def update_profile(self, actor: Actor | None, name: str | None = None, preferences: dict | None = None) -> OperationResult:
        if actor is None:
            return self._not_authenticated()
        if actor.is_admin:
            return OperationResult.fail("validation_error", "Admin profile cannot be edited")
        if name is not None and not name.strip():
            return OperationResult.fail("validation_error", "Name cannot be empty")

        def _apply(u: User) -> dict:
            if name is not None:
                u.name = name.strip()
            if preferences:
                u.preferences.update(preferences)
            u.updated_at = _now()
            return u.sanitized()

        found, user = self.repo.update_user(actor.user_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "User not found")
        self.log_activity("update_profile", actor.user_id, actor.email)
        return OperationResult.ok(user=user)

    def get_activity(self, actor: Actor | None, limit: int = 50) -> OperationResult:
        """当前用户的活动日志；管理员看到全部。"""
        if actor is None:
            return self._not_authenticated()
        entries = self.repo.list_activity()
        if not actor.is_admin:
            entries = [e for e in entries if e.get("user_id") == actor.user_id]
        return OperationResult.ok(activity=entries[:limit])
