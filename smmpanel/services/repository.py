"""
账本仓储：在 LedgerStore 之上提供带类型的访问方法。

所有修改都经由 LedgerStore.update 完成"读整个集合 → 修改 → 写回"，
同一进程内每次修改都是原子的。跨进程（或把过期快照直接写回）仍可能丢失更新，
存储层不做版本号或跨进程锁。
"""

import logging
from typing import Any, Callable, Optional

from smmpanel.models.schemas import Order, Session, User
from smmpanel.services.store import LedgerStore

logger = logging.getLogger(__name__)

KEY_USERS = "users"
KEY_SESSIONS = "sessions"
KEY_ORDERS = "orders"
KEY_PAYMENTS = "pendingPayments"
KEY_TRANSACTIONS = "transactions"
KEY_ACTIVITY = "activityLogs"
KEY_LOGIN_ATTEMPTS = "loginAttempts"
KEY_STATS = "stats"
KEY_TICKETS = "tickets"
KEY_SETTINGS = "settings"

MAX_ACTIVITY_LOGS = 500


def _empty_attempts() -> dict:
    return {"count": 0, "last_attempt": 0, "locked_until": 0}


class LedgerRepository:
    """用户、订单、会话、日志等集合的仓储。"""

    def __init__(self, store: Optional[LedgerStore] = None):
        self.store = store or LedgerStore()

    # ── 通用列表操作 ──────────────────────────────────────

    def _prepend(self, key: str, item: dict, limit: Optional[int] = None) -> None:
        def _apply(items: list) -> None:
            items.insert(0, item)
            if limit is not None and len(items) > limit:
                del items[limit:]

        self.store.update(key, _apply, default=[])

    def _update_item(
        self, key: str, item_id: str, fn: Callable[[dict], Any]
    ) -> tuple[bool, Any]:
        """按 id 修改列表中的一项，返回 (是否找到, fn 返回值)。"""
        def _apply(items: list) -> tuple[bool, Any]:
            for item in items:
                if item.get("id") == item_id:
                    return True, fn(item)
            return False, None

        return self.store.update(key, _apply, default=[])

    # ── 用户 ──────────────────────────────────────────────

    def list_users(self) -> list[User]:
        raw = self.store.get(KEY_USERS, [], encrypted=True)
        return [User.from_dict(u) for u in raw]

    def get_user(self, user_id: str) -> Optional[User]:
        for user in self.list_users():
            if user.id == user_id:
                return user
        return None

    def find_user_by_email(self, email: str) -> Optional[User]:
        needle = (email or "").strip().lower()
        for user in self.list_users():
            if user.email.lower() == needle:
                return user
        return None

    def add_user(self, user: User) -> bool:
        """追加用户；邮箱（不区分大小写）已存在时返回 False 且不写入。"""
        def _apply(users: list) -> bool:
            needle = user.email.lower()
            if any(u.get("email", "").lower() == needle for u in users):
                return False
            users.append(user.to_dict())
            return True

        return self.store.update(KEY_USERS, _apply, default=[], encrypted=True)

    def update_user(
        self, user_id: str, fn: Callable[[User], Any]
    ) -> tuple[bool, Any]:
        """
        在锁内读取用户、交给 fn 修改并写回。

        Returns:
            (是否找到用户, fn 的返回值)
        """
        def _apply(users: list) -> tuple[bool, Any]:
            for index, raw in enumerate(users):
                if raw.get("id") == user_id:
                    user = User.from_dict(raw)
                    result = fn(user)
                    users[index] = user.to_dict()
                    return True, result
            return False, None

        return self.store.update(KEY_USERS, _apply, default=[], encrypted=True)

    # ── 订单 ──────────────────────────────────────────────

    def list_orders(self) -> list[Order]:
        return [Order.from_dict(o) for o in self.store.get(KEY_ORDERS, [])]

    def list_user_orders(self, user_id: str) -> list[Order]:
        return [o for o in self.list_orders() if o.user_id == user_id]

    def get_order(self, order_id: str) -> Optional[Order]:
        for order in self.list_orders():
            if order.id == order_id:
                return order
        return None

    def append_order(self, order: Order) -> None:
        """新订单插入列表头部（最新在前）。"""
        self._prepend(KEY_ORDERS, order.to_dict())

    def update_order(
        self, order_id: str, fn: Callable[[Order], Any]
    ) -> tuple[bool, Any]:
        def _apply(orders: list) -> tuple[bool, Any]:
            for index, raw in enumerate(orders):
                if raw.get("id") == order_id:
                    order = Order.from_dict(raw)
                    result = fn(order)
                    orders[index] = order.to_dict()
                    return True, result
            return False, None

        return self.store.update(KEY_ORDERS, _apply, default=[])

    # ── 会话 ──────────────────────────────────────────────

    def get_session(self, session_id: str) -> Optional[Session]:
        sessions = self.store.get(KEY_SESSIONS, {}, encrypted=True)
        raw = sessions.get(session_id)
        return Session.from_dict(raw) if raw else None

    def save_session(self, session: Session) -> None:
        def _apply(sessions: dict) -> None:
            sessions[session.session_id] = session.to_dict()

        self.store.update(KEY_SESSIONS, _apply, default={}, encrypted=True)

    def delete_session(self, session_id: str) -> bool:
        def _apply(sessions: dict) -> bool:
            return sessions.pop(session_id, None) is not None

        return self.store.update(KEY_SESSIONS, _apply, default={}, encrypted=True)

    def purge_expired_sessions(self, now: float) -> int:
        def _apply(sessions: dict) -> int:
            expired = [sid for sid, s in sessions.items() if s.get("expires_at", 0) <= now]
            for sid in expired:
                del sessions[sid]
            return len(expired)

        return self.store.update(KEY_SESSIONS, _apply, default={}, encrypted=True)

    # ── 活动日志 ──────────────────────────────────────────

    def append_activity(self, entry: dict) -> None:
        """追加活动日志，只保留最近 500 条。"""
        self._prepend(KEY_ACTIVITY, entry, limit=MAX_ACTIVITY_LOGS)

    def list_activity(self) -> list[dict]:
        return self.store.get(KEY_ACTIVITY, [])

    # ── 登录尝试 ──────────────────────────────────────────

    def get_login_attempts(self, email: str) -> dict:
        attempts = self.store.get(KEY_LOGIN_ATTEMPTS, {})
        return attempts.get(email) or _empty_attempts()

    def save_login_attempts(self, email: str, record: dict) -> None:
        def _apply(attempts: dict) -> None:
            attempts[email] = record

        self.store.update(KEY_LOGIN_ATTEMPTS, _apply, default={})

    def update_login_attempts(self, email: str, fn: Callable[[dict], Any]) -> Any:
        """在锁内读取某邮箱的失败记录、交给 fn 修改并写回，返回 fn 的返回值。"""
        def _apply(attempts: dict) -> Any:
            record = attempts.get(email) or _empty_attempts()
            result = fn(record)
            attempts[email] = record
            return result

        return self.store.update(KEY_LOGIN_ATTEMPTS, _apply, default={})

    # ── 统计 ──────────────────────────────────────────────

    def get_stats(self) -> dict:
        return self.store.get(KEY_STATS, {}) or {}

    def save_stats(self, stats: dict) -> None:
        self.store.set(KEY_STATS, stats)

    def update_stats(self, fn: Callable[[dict], Any]) -> Any:
        return self.store.update(KEY_STATS, fn, default={})

    # ── 充值申请 / 交易记录 ───────────────────────────────

    def list_payments(self) -> list[dict]:
        return self.store.get(KEY_PAYMENTS, [])

    def append_payment(self, payment: dict) -> None:
        self._prepend(KEY_PAYMENTS, payment)

    def update_payment(self, payment_id: str, fn: Callable[[dict], Any]) -> tuple[bool, Any]:
        return self._update_item(KEY_PAYMENTS, payment_id, fn)

    def list_transactions(self) -> list[dict]:
        return self.store.get(KEY_TRANSACTIONS, [])

    def append_transaction(self, txn: dict) -> None:
        self._prepend(KEY_TRANSACTIONS, txn)

    # ── 工单 ──────────────────────────────────────────────

    def list_tickets(self) -> list[dict]:
        return self.store.get(KEY_TICKETS, [])

    def append_ticket(self, ticket: dict) -> None:
        self._prepend(KEY_TICKETS, ticket)

    def update_ticket(self, ticket_id: str, fn: Callable[[dict], Any]) -> tuple[bool, Any]:
        return self._update_item(KEY_TICKETS, ticket_id, fn)

    # ── 运行时配置 ────────────────────────────────────────

    def get_settings(self) -> dict:
        return self.store.get(KEY_SETTINGS, {}) or {}

    def save_settings(self, values: dict) -> dict:
        def _apply(current: dict) -> dict:
            current.update(values)
            return dict(current)

        return self.store.update(KEY_SETTINGS, _apply, default={})
