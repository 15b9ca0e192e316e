"""
下单流程：单笔下单、批量下单、分批投放（drip feed）计划。

单笔下单顺序：
1. 校验链接、服务、数量（失败不产生任何修改）
2. 按当前零售价重新计算金额
3. 余额预检（管理员免检）
4. 扣款
5. 写订单；失败则退回扣款，退回也失败时返回 ledger_inconsistency
6. 订单保持 sync_status=pending，由 SupplierSyncService 异步转发给供应商，
   转发失败不会回滚 4、5 两步
"""

import logging
from datetime import datetime, timedelta
from urllib.parse import urlparse

from smmpanel.models.schemas import Actor, OperationResult, Service
from smmpanel.services.catalog import BadCatalogShapeError, CatalogService, get_catalog
from smmpanel.services.ledger_service import AccountLedger
from smmpanel.services.pricing import CENT, charge_for_quantity
from smmpanel.services.supplier_client import SupplierClientError

logger = logging.getLogger(__name__)

# 间隔单位 → 分钟
INTERVAL_UNITS = {"minutes": 1, "hours": 60, "days": 1440}

DEFAULT_MASS_QUANTITY = 1000


def is_valid_url(link: str) -> bool:
    """仅接受 http/https 绝对地址。"""
    if not isinstance(link, str) or not link.strip():
        return False
    try:
        parsed = urlparse(link.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _parse_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def calculate_schedule(
    quantity: int,
    runs: int,
    interval: int,
    interval_unit: str,
    start: datetime | None = None,
) -> dict:
    """
    计算分批投放计划：每批数量相等，余数分配给最早的几批。

    Raises:
        ValueError: 参数无效。
    """
    if interval_unit not in INTERVAL_UNITS:
        raise ValueError(f"interval_unit must be one of {', '.join(INTERVAL_UNITS)}")
    if runs < 1 or interval < 1 or quantity < 1:
        raise ValueError("quantity, runs and interval must be positive")
    if runs > quantity:
        raise ValueError("runs cannot exceed quantity")

    per_run, remainder = divmod(quantity, runs)
    interval_minutes = interval * INTERVAL_UNITS[interval_unit]
    current = start or datetime.now()

    schedule = []
    for i in range(runs):
        schedule.append({
            "run": i + 1,
            "quantity": per_run + (1 if i < remainder else 0),
            "scheduled_at": current.isoformat(timespec="seconds"),
            "status": "pending",
        })
        current += timedelta(minutes=interval_minutes)

    last_run = current - timedelta(minutes=interval_minutes)
    return {
        "total_quantity": quantity,
        "runs": runs,
        "interval": interval,
        "interval_unit": interval_unit,
        "interval_minutes": interval_minutes,
        "per_run": per_run,
        "total_duration": (runs - 1) * interval_minutes,
        "estimated_completion": last_run.isoformat(timespec="seconds"),
        "schedule": schedule,
    }


def parse_mass_input(text: str, default_quantity: int = DEFAULT_MASS_QUANTITY) -> dict:
    """
    解析批量下单文本：每行一个 link 或 link|quantity。

    无效链接记为解析错误；数量无效或小于 1 时使用默认数量。

    Returns:
        dict: {"orders": [{link, quantity, line}], "errors": [{line, error, value}]}
    """
    orders = []
    errors = []
    lines = [line for line in (text or "").splitlines() if line.strip()]

    for index, line in enumerate(lines, start=1):
        parts = [p.strip() for p in line.strip().split("|")]
        link = parts[0]
        quantity = _parse_int(parts[1]) if len(parts) > 1 and parts[1] else default_quantity

        if not is_valid_url(link):
            errors.append({"line": index, "error": "Invalid URL", "value": link})
            continue

        if quantity is None or quantity < 1:
            quantity = default_quantity

        orders.append({"link": link, "quantity": quantity, "line": index})

    return {"orders": orders, "errors": errors}


def validate_mass_orders(lines: list[dict], service: Service) -> dict:
    """按服务上下限调整数量（附带警告），并计算每行金额。"""
    validated = []
    warnings = []
    for entry in lines:
        qty = entry["quantity"]
        if qty < service.min:
            warnings.append({
                "line": entry["line"],
                "warning": f"Quantity adjusted from {qty} to minimum {service.min}",
            })
            qty = service.min
        if qty > service.max:
            warnings.append({
                "line": entry["line"],
                "warning": f"Quantity adjusted from {qty} to maximum {service.max}",
            })
            qty = service.max
        validated.append({
            **entry,
            "quantity": qty,
            "charge": charge_for_quantity(service.rate, qty),
        })
    return {"validated": validated, "warnings": warnings}


class OrderService:
    """下单服务。"""

    def __init__(self, ledger: AccountLedger | None = None, catalog: CatalogService | None = None):
        self.ledger = ledger or AccountLedger()
        self.catalog = catalog or get_catalog()

    def _lookup_service(self, service_id) -> tuple[Service | None, OperationResult | None]:
        try:
            service = self.catalog.get_service(service_id)
        except (BadCatalogShapeError, SupplierClientError) as e:
            logger.warning("获取服务目录失败: %s", e)
            return None, OperationResult.fail("supplier_error", "Service catalog is unavailable")
        if service is None:
            return None, OperationResult.fail("validation_error", "Service not found")
        return service, None

    def _place(
        self,
        actor: Actor,
        service: Service,
        link: str,
        quantity: int,
        drip_feed: dict | None = None,
        is_mass_order: bool = False,
    ) -> OperationResult:
        """已校验参数后的扣款 → 建单 → 补偿序列。"""
        charge = charge_for_quantity(service.rate, quantity)

        balance = self.ledger.get_balance(actor)
        if balance is not None and balance < charge:
            return OperationResult.fail(
                "insufficient_balance",
                "Insufficient balance",
                balance=str(balance.quantize(CENT)),
                required=str(charge),
            )

        deducted = self.ledger.deduct_funds(actor, charge)
        if not deducted.success:
            return deducted

        created = self.ledger.create_order(actor, {
            "service": service.service,
            "service_name": service.name,
            "link": link,
            "quantity": quantity,
            "charge": charge,
            "price_per_k": service.rate,
            "is_mass_order": is_mass_order,
            "is_drip_feed": drip_feed is not None,
            "drip_feed": drip_feed,
        })
        if created.success:
            logger.info(
                "下单成功: order_id=%s, user_id=%s, charge=%s",
                created.data["order"]["id"], actor.user_id, charge,
            )
            return created

        if charge <= 0 or actor.is_admin:
            return OperationResult.fail(
                created.code or "store_error", created.error or "Failed to create order"
            )

        refunded = self.ledger.add_funds(actor, charge, reason="order creation failed")
        if not refunded.success:
            logger.error(
                "账本不一致：订单写入失败且扣款退回失败 user_id=%s, charge=%s, create_error=%s, refund_error=%s",
                actor.user_id, charge, created.error, refunded.error,
            )
            return OperationResult.fail(
                "ledger_inconsistency",
                "Order failed and the charge could not be returned; support has been notified",
                charge=str(charge),
            )
        return OperationResult.fail(
            created.code or "store_error", created.error or "Failed to create order"
        )

    def place_order(
        self,
        actor: Actor | None,
        service_id,
        link: str,
        quantity,
        drip: dict | None = None,
    ) -> OperationResult:
        """
        单笔下单。

        Args:
            actor: 当前操作者。
            service_id: 供应商服务 ID。
            link: 目标链接。
            quantity: 数量。
            drip: 可选分批投放配置 {runs, interval, interval_unit}。

        Returns:
            OperationResult，成功时 data["order"] 为订单字典。
        """
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        if not is_valid_url(link):
            return OperationResult.fail("validation_error", "Please enter a valid URL")

        qty = _parse_int(quantity)
        if qty is None:
            return OperationResult.fail("validation_error", "Quantity must be a whole number")

        service, error = self._lookup_service(service_id)
        if error:
            return error
        if qty < service.min or qty > service.max:
            return OperationResult.fail(
                "validation_error",
                f"Quantity must be between {service.min} and {service.max}",
            )

        drip_feed = None
        if drip:
            try:
                drip_feed = calculate_schedule(
                    qty,
                    int(drip.get("runs", 0)),
                    int(drip.get("interval", 0)),
                    drip.get("interval_unit", "minutes"),
                )
            except (TypeError, ValueError) as e:
                return OperationResult.fail("validation_error", f"Invalid drip feed: {e}")

        return self._place(actor, service, link.strip(), qty, drip_feed=drip_feed)

    def place_mass_order(
        self,
        actor: Actor | None,
        service_id,
        text: str,
        default_quantity=DEFAULT_MASS_QUANTITY,
    ) -> OperationResult:
        """
        批量下单：逐行按单笔顺序执行，某一行失败不影响其他行。

        Returns:
            data: {"results": [...], "errors": [...], "warnings": [...],
                   "summary": {"total", "success", "failed"}}
        """
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")

        default_qty = _parse_int(default_quantity)
        if default_qty is None or default_qty < 1:
            default_qty = DEFAULT_MASS_QUANTITY

        service, error = self._lookup_service(service_id)
        if error:
            return error

        parsed = parse_mass_input(text, default_qty)
        if not parsed["orders"] and not parsed["errors"]:
            return OperationResult.fail("validation_error", "No orders to place")

        checked = validate_mass_orders(parsed["orders"], service)
        results = []
        for entry in checked["validated"]:
            outcome = self._place(
                actor, service, entry["link"], entry["quantity"], is_mass_order=True
            )
            row = {"line": entry["line"], "link": entry["link"], "success": outcome.success}
            if outcome.success:
                row["order_id"] = outcome.data["order"]["id"]
                row["charge"] = outcome.data["order"]["charge"]
            else:
                row["error"] = outcome.error
                row["code"] = outcome.code
            results.append(row)

        succeeded = sum(1 for r in results if r["success"])
        summary = {
            "total": len(results) + len(parsed["errors"]),
            "success": succeeded,
            "failed": len(results) - succeeded + len(parsed["errors"]),
        }
        self.ledger.log_activity("mass_order", actor.user_id, actor.email, {
            "service": service.service,
            **summary,
        })
        logger.info("批量下单完成: user_id=%s, summary=%s", actor.user_id, summary)

        return OperationResult.ok(
            results=results,
            errors=parsed["errors"],
            warnings=checked["warnings"],
            summary=summary,
        )

    def get_drip_feed_status(self, actor: Actor | None, order_id: str) -> OperationResult:
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        order = self.ledger.repo.get_order(order_id)
        if order is None or not order.is_drip_feed or not order.drip_feed:
            return OperationResult.fail("not_found", "Drip feed order not found")
        if not actor.is_admin and order.user_id != actor.user_id:
            return OperationResult.fail("forbidden", "Not your order")

        schedule = order.drip_feed.get("schedule", [])
        runs = order.drip_feed.get("runs") or len(schedule) or 1
        completed = sum(1 for s in schedule if s.get("status") == "completed")
        next_run = next((s for s in schedule if s.get("status") == "pending"), None)

        return OperationResult.ok(
            order_id=order.id,
            total_runs=runs,
            completed_runs=completed,
            progress=round(completed / runs * 100, 2),
            next_run=next_run,
            estimated_completion=order.drip_feed.get("estimated_completion"),
        )
