"""
供应商同步（outbox）：把本地已扣款的订单转发给供应商，并回收状态。

订单创建时 sync_status=pending。同步在下单响应之外执行（路由后台任务 +
main.py 中每 60 秒一次的对账任务），失败按 [30, 60, 300, 900, 1800] 秒
间隔重试，累计 5 次失败后标记为 failed，等待管理员处理（手动重试或退款）。
同步失败永远不会回滚扣款和订单记录。
"""

import logging
import threading
from datetime import datetime, timedelta

from smmpanel.models.schemas import (
    ACTIVE_STATUSES,
    ORDER_STATUSES,
    STATUS_CANCELED,
    STATUS_COMPLETED,
    STATUS_REFUNDED,
    SYNC_FAILED,
    SYNC_PENDING,
    SYNC_SYNCED,
    Actor,
    OperationResult,
    Order,
)
from smmpanel.services.catalog import BadCatalogShapeError, CatalogService, get_catalog
from smmpanel.services.ledger_service import AccountLedger
from smmpanel.services.supplier_client import SupplierClient, SupplierClientError

logger = logging.getLogger(__name__)

MAX_SYNC_ATTEMPTS = 5
RETRY_INTERVALS = [30, 60, 300, 900, 1800]  # 秒
REFILL_WINDOW_DAYS = 30

_TIME_FMT = "%Y-%m-%d %H:%M:%S"

# 供应商状态（小写）→ 本地状态
_STATUS_ALIASES = {s.lower(): s for s in ORDER_STATUSES}
_STATUS_ALIASES["cancelled"] = STATUS_CANCELED
_STATUS_ALIASES["inprogress"] = "In progress"

# 进程内正在同步的订单，避免同一订单被重复转发
_in_flight: set[str] = set()
_in_flight_lock = threading.Lock()


def normalize_supplier_status(value) -> str | None:
    if not isinstance(value, str):
        return None
    return _STATUS_ALIASES.get(value.strip().lower())


def _now() -> str:
    return datetime.now().strftime(_TIME_FMT)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, _TIME_FMT)
    except (TypeError, ValueError):
        return None


class SupplierSyncService:
    """供应商同步服务。"""

    def __init__(
        self,
        ledger: AccountLedger | None = None,
        client: SupplierClient | None = None,
        catalog: CatalogService | None = None,
    ):
        self.ledger = ledger or AccountLedger()
        self.client = client or SupplierClient()
        self.catalog = catalog or get_catalog()

    @property
    def repo(self):
        return self.ledger.repo

    # ── 下单转发 ──────────────────────────────────────────

    def sync_order(self, order_id: str, force: bool = False) -> OperationResult:
        """
        把订单转发给供应商（幂等）。

        已有供应商订单号、已取消或已退款的订单直接跳过；
        sync_status=failed 的订单只有 force=True（管理员手动重试）时才会再次转发。
        """
        order = self.repo.get_order(order_id)
        if order is None:
            return OperationResult.fail("not_found", "Order not found")
        if self._should_skip(order, force):
            return OperationResult.ok(skipped=True, order=order.to_dict())

        with _in_flight_lock:
            if order_id in _in_flight:
                return OperationResult.ok(skipped=True, order=order.to_dict())
            _in_flight.add(order_id)

        try:
            # 持有占位后重新读取，另一线程可能刚完成转发
            order = self.repo.get_order(order_id)
            if order is None:
                return OperationResult.fail("not_found", "Order not found")
            if self._should_skip(order, force):
                return OperationResult.ok(skipped=True, order=order.to_dict())
            return self._forward(order, force)
        finally:
            with _in_flight_lock:
                _in_flight.discard(order_id)

    @staticmethod
    def _should_skip(order: Order, force: bool) -> bool:
        if order.supplier_order_id or order.status in (STATUS_CANCELED, STATUS_REFUNDED):
            return True
        return order.sync_status == SYNC_FAILED and not force

    def _forward(self, order: Order, force: bool) -> OperationResult:
        try:
            response = self.client.add(order.service, order.link, order.quantity)
        except SupplierClientError as e:
            return self._record_failure(order.id, str(e), force)

        supplier_order_id = str(response["order"])

        def _apply(o: Order) -> dict:
            o.supplier_order_id = supplier_order_id
            o.sync_status = SYNC_SYNCED
            o.sync_attempts += 1
            o.last_sync_error = None
            o.last_sync_at = _now()
            o.updated_at = o.last_sync_at
            return o.to_dict()

        _, updated = self.repo.update_order(order.id, _apply)
        logger.info("订单已转发供应商: order_id=%s, supplier_order_id=%s", order.id, supplier_order_id)
        return OperationResult.ok(skipped=False, order=updated)

    def _record_failure(self, order_id: str, error: str, force: bool) -> OperationResult:
        def _apply(o: Order) -> dict:
            if force and o.sync_status == SYNC_FAILED:
                o.sync_attempts = 0
            o.sync_attempts += 1
            o.last_sync_error = error
            o.last_sync_at = _now()
            o.sync_status = SYNC_FAILED if o.sync_attempts >= MAX_SYNC_ATTEMPTS else SYNC_PENDING
            return o.to_dict()

        _, updated = self.repo.update_order(order_id, _apply)
        if updated and updated["sync_status"] == SYNC_FAILED:
            logger.error(
                "订单转发供应商多次失败，需人工处理: order_id=%s, error=%s", order_id, error
            )
        else:
            logger.warning("订单转发供应商失败，稍后重试: order_id=%s, error=%s", order_id, error)
        return OperationResult.fail("supplier_error", error, order=updated)

    def pending_sync_orders(self, now: datetime | None = None) -> list[Order]:
        """到达重试时间、等待转发的订单（最早的在前）。"""
        now = now or datetime.now()
        due = []
        for order in reversed(self.repo.list_orders()):
            if order.sync_status != SYNC_PENDING or order.supplier_order_id:
                continue
            if order.status in (STATUS_CANCELED, STATUS_REFUNDED):
                continue
            if order.sync_attempts == 0:
                due.append(order)
                continue
            last = _parse_time(order.last_sync_at)
            index = min(order.sync_attempts - 1, len(RETRY_INTERVALS) - 1)
            if last is None or now >= last + timedelta(seconds=RETRY_INTERVALS[index]):
                due.append(order)
        return due

    def reconcile_pending(self, now: datetime | None = None) -> dict:
        """对账：逐个转发到期的待同步订单。"""
        synced = 0
        failed = 0
        for order in self.pending_sync_orders(now):
            result = self.sync_order(order.id)
            if result.success:
                if not result.data.get("skipped"):
                    synced += 1
            else:
                failed += 1
        if synced or failed:
            logger.info("供应商对账完成: synced=%d, failed=%d", synced, failed)
        return {"synced": synced, "failed": failed}

    # ── 状态回收 ──────────────────────────────────────────

    def refresh_statuses(self, actor: Actor | None) -> OperationResult:
        """
        向供应商查询当前用户（管理员为全部）进行中订单的状态。

        状态或剩余数量有变化时更新订单；单个订单查询失败只记录日志并跳过。
        """
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")

        orders = self.repo.list_orders()
        if not actor.is_admin:
            orders = [o for o in orders if o.user_id == actor.user_id]

        updated = 0
        for order in orders:
            if order.status not in ACTIVE_STATUSES or not order.supplier_order_id:
                continue
            try:
                result = self.client.status(order.supplier_order_id)
            except SupplierClientError as e:
                logger.warning("查询供应商订单状态失败: order_id=%s, error=%s", order.id, e)
                continue

            new_status = normalize_supplier_status(result.get("status"))
            if new_status is None:
                logger.warning(
                    "未知的供应商订单状态: order_id=%s, status=%r", order.id, result.get("status")
                )
                continue

            remains = result.get("remains")
            remains_changed = remains is not None and str(remains) != str(order.remains)
            if new_status != order.status or remains_changed:
                self.ledger.update_order_status(order.id, new_status, {
                    "remains": remains,
                    "start_count": result.get("start_count"),
                })
                updated += 1

        return OperationResult.ok(updated=updated)

    # ── 补单 / 取消 ───────────────────────────────────────

    def _refill_eligible(self, order: Order) -> tuple[bool, str]:
        if order.status != STATUS_COMPLETED:
            return False, "Only completed orders can be refilled"
        if order.refill_requested:
            return False, "Refill already requested"
        created = _parse_time(order.created_at)
        if created is None or datetime.now() > created + timedelta(days=REFILL_WINDOW_DAYS):
            return False, "Refill period has expired"
        try:
            service = self.catalog.get_service(order.service)
        except (BadCatalogShapeError, SupplierClientError) as e:
            logger.warning("检查补单资格时获取目录失败: %s", e)
            return False, "Service catalog is unavailable"
        if service is None or not service.refill:
            return False, "Service does not offer refills"
        return True, ""

    def request_refill(self, actor: Actor | None, order_id: str) -> OperationResult:
        """申请补单：标记 refill_status=Pending，尽力调用供应商 refill 接口。"""
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        order = self.repo.get_order(order_id)
        if order is None:
            return OperationResult.fail("not_found", "Order not found")
        if order.user_id != actor.user_id and not actor.is_admin:
            return OperationResult.fail("forbidden", "Access denied")

        eligible, reason = self._refill_eligible(order)
        if not eligible:
            return OperationResult.fail("validation_error", reason)

        def _mark(o: Order) -> None:
            o.refill_requested = True
            o.refill_requested_at = _now()
            o.refill_status = "Pending"

        self.repo.update_order(order_id, _mark)
        self.ledger.log_activity("refill_request", actor.user_id, actor.email, {"order_id": order_id})

        refill_status = "Pending"
        if order.supplier_order_id:
            try:
                self.client.refill(order.supplier_order_id)
                refill_status = "Processing"

                def _processing(o: Order) -> None:
                    o.refill_status = refill_status

                self.repo.update_order(order_id, _processing)
            except SupplierClientError as e:
                logger.warning("供应商补单请求失败: order_id=%s, error=%s", order_id, e)

        return OperationResult.ok(order_id=order_id, refill_status=refill_status)

    def process_refill(self, actor: Actor | None, order_id: str, success: bool = True) -> OperationResult:
        if actor is None or not actor.is_admin:
            return OperationResult.fail("forbidden", "Admin access required")

        def _apply(o: Order) -> dict:
            o.refill_status = "Completed" if success else "Failed"
            o.refill_processed_at = _now()
            return o.to_dict()

        found, order = self.repo.update_order(order_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "Order not found")
        self.ledger.log_activity(
            "refill_process", actor.user_id, actor.email, {"order_id": order_id, "success": success}
        )
        return OperationResult.ok(order=order)

    def cancel_at_supplier(self, actor: Actor | None, order_id: str) -> OperationResult:
        """
        管理员取消订单：尽力通知供应商，然后把本地状态置为 Canceled。

        取消不退款，需要退款时另行调用 refund_order。
        """
        if actor is None or not actor.is_admin:
            return OperationResult.fail("forbidden", "Admin access required")
        order = self.repo.get_order(order_id)
        if order is None:
            return OperationResult.fail("not_found", "Order not found")
        if order.status not in ACTIVE_STATUSES:
            return OperationResult.fail(
                "validation_error", f"Order cannot be canceled in status {order.status}"
            )

        supplier_notified = False
        if order.supplier_order_id:
            try:
                self.client.cancel(order.supplier_order_id)
                supplier_notified = True
            except SupplierClientError as e:
                logger.warning("供应商取消请求失败: order_id=%s, error=%s", order_id, e)

        result = self.ledger.update_order_status(order_id, STATUS_CANCELED)
        self.ledger.log_activity("cancel_order", actor.user_id, actor.email, {
            "order_id": order_id,
            "supplier_notified": supplier_notified,
        })
        return OperationResult.ok(order=result.data.get("order"), supplier_notified=supplier_notified)
