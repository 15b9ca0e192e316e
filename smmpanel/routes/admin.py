"""
管理后台路由：充值审核、用户余额、订单处理、工单、统计、定价配置、供应商余额。

所有接口依赖 require_admin：未登录 401，非管理员 403。
"""

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from smmpanel.models.schemas import Actor
from smmpanel.routes.responses import error_response, result_response
from smmpanel.services.auth import require_admin
from smmpanel.services.catalog import get_catalog
from smmpanel.services.ledger_service import AccountLedger
from smmpanel.services.payment_service import PaymentService
from smmpanel.services.settings import (
    SettingsError,
    get_pricing_settings,
    settings_to_dict,
    update_pricing_settings,
)
from smmpanel.services.supplier_client import SupplierClient, SupplierClientError
from smmpanel.services.supplier_sync import SupplierSyncService
from smmpanel.services.ticket_service import TicketService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin")


class RejectRequest(BaseModel):
    reason: str = ""


class BalanceRequest(BaseModel):
    action: str  # "credit" / "debit" / "set"
    amount: Decimal
    reason: str | None = None


class OrderStatusRequest(BaseModel):
    status: str
    remains: int | None = None
    start_count: int | None = None


class RefillProcessRequest(BaseModel):
    success: bool = True


class TicketStatusRequest(BaseModel):
    status: str


class SettingsRequest(BaseModel):
    fx_rate: Decimal | None = None
    profit_multiplier: Decimal | None = None
    min_order_floor: int | None = None


# ── 充值审核 ──────────────────────────────────────────────


@router.get("/payments/pending")
async def pending_payments(admin: Actor = Depends(require_admin)):
    return result_response(PaymentService().get_all_pending_payments(admin))


@router.post("/payments/{request_id}/approve")
async def approve_payment(request_id: str, admin: Actor = Depends(require_admin)):
    return result_response(PaymentService().approve_payment(admin, request_id))


@router.post("/payments/{request_id}/reject")
async def reject_payment(request_id: str, body: RejectRequest, admin: Actor = Depends(require_admin)):
    return result_response(PaymentService().reject_payment(admin, request_id, body.reason))


# ── 用户 ──────────────────────────────────────────────────


@router.get("/users")
async def list_users(admin: Actor = Depends(require_admin)):
    return result_response(AccountLedger().list_users(admin))


@router.post("/users/{user_id}/balance")
async def adjust_balance(user_id: str, body: BalanceRequest, admin: Actor = Depends(require_admin)):
    """
    调整用户余额。

    action=credit/debit 按金额增减，action=set 直接设为指定值。
    """
    ledger = AccountLedger()
    if body.action == "set":
        return result_response(ledger.admin_set_balance(admin, user_id, body.amount, body.reason))
    return result_response(
        ledger.admin_adjust_balance(admin, user_id, body.amount, body.action, body.reason)
    )


# ── 订单 ──────────────────────────────────────────────────


@router.put("/orders/{order_id}/status")
async def update_order_status(order_id: str, body: OrderStatusRequest, admin: Actor = Depends(require_admin)):
    result = AccountLedger().update_order_status(
        order_id, body.status, {"remains": body.remains, "start_count": body.start_count}
    )
    if result.success:
        logger.info("管理员更新订单状态: order_id=%s, status=%s, by=%s", order_id, body.status, admin.email)
    return result_response(result)


@router.post("/orders/{order_id}/refund")
async def refund_order(order_id: str, admin: Actor = Depends(require_admin)):
    return result_response(AccountLedger().refund_order(admin, order_id))


@router.post("/orders/{order_id}/refill")
async def process_refill(order_id: str, body: RefillProcessRequest, admin: Actor = Depends(require_admin)):
    return result_response(SupplierSyncService().process_refill(admin, order_id, body.success))


@router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, admin: Actor = Depends(require_admin)):
    return result_response(SupplierSyncService().cancel_at_supplier(admin, order_id))


@router.post("/orders/{order_id}/sync")
async def sync_order(order_id: str, admin: Actor = Depends(require_admin)):
    """手动重试转发（包括已标记 failed 的订单）。"""
    return result_response(SupplierSyncService().sync_order(order_id, force=True))


# ── 工单 ──────────────────────────────────────────────────


@router.get("/tickets")
async def all_tickets(
    status: str | None = Query(None),
    priority: str | None = Query(None),
    category: str | None = Query(None),
    admin: Actor = Depends(require_admin),
):
    return result_response(TicketService().get_all_tickets(admin, status, priority, category))


@router.put("/tickets/{ticket_id}/status")
async def ticket_status(ticket_id: str, body: TicketStatusRequest, admin: Actor = Depends(require_admin)):
    return result_response(TicketService().update_status(admin, ticket_id, body.status))


# ── 统计 / 配置 ───────────────────────────────────────────


@router.get("/stats")
async def stats(admin: Actor = Depends(require_admin)):
    return result_response(AccountLedger().get_admin_stats(admin))


@router.get("/settings")
async def get_settings(admin: Actor = Depends(require_admin)):
    return {"code": 1, "settings": settings_to_dict(get_pricing_settings())}


@router.put("/settings")
async def put_settings(body: SettingsRequest, admin: Actor = Depends(require_admin)):
    """修改定价配置，成功后使目录缓存失效，下次读取按新价格重新计算。"""
    try:
        settings = update_pricing_settings(body.model_dump(exclude_none=True))
    except SettingsError as e:
        return error_response(str(e), "validation_error")
    get_catalog().invalidate()
    AccountLedger().log_activity("admin_update_settings", admin.user_id, admin.email, settings_to_dict(settings))
    return {"code": 1, "settings": settings_to_dict(settings)}


@router.get("/supplier/balance")
async def supplier_balance(admin: Actor = Depends(require_admin)):
    try:
        result = SupplierClient().balance()
    except SupplierClientError as e:
        logger.warning("查询供应商余额失败: %s", e)
        return error_response("Supplier balance is unavailable", "supplier_error")
    return {"code": 1, "balance": str(result["balance"]), "currency": result["currency"]}
