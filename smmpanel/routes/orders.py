"""
订单路由：下单、批量下单、订单列表、状态刷新、补单、分批投放进度。

下单成功后通过 BackgroundTasks 把订单转发给供应商，响应不等待转发结果。
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel

from smmpanel.models.schemas import Actor
from smmpanel.routes.responses import result_response
from smmpanel.services.auth import get_current_actor
from smmpanel.services.ledger_service import AccountLedger
from smmpanel.services.order_service import DEFAULT_MASS_QUANTITY, OrderService
from smmpanel.services.supplier_sync import SupplierSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/orders")


class DripFeedRequest(BaseModel):
    runs: int
    interval: int
    interval_unit: str = "minutes"


class PlaceOrderRequest(BaseModel):
    service: int
    link: str
    quantity: int
    drip_feed: DripFeedRequest | None = None


class MassOrderRequest(BaseModel):
    service: int
    orders: str
    default_quantity: int = DEFAULT_MASS_QUANTITY


def _sync_orders(order_ids: list[str]) -> None:
    """后台任务：逐个转发新订单，失败留给对账任务重试。"""
    svc = SupplierSyncService()
    for order_id in order_ids:
        svc.sync_order(order_id)


@router.post("")
async def place_order(
    body: PlaceOrderRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
):
    drip = body.drip_feed.model_dump() if body.drip_feed else None
    result = OrderService().place_order(actor, body.service, body.link, body.quantity, drip=drip)
    if result.success:
        background_tasks.add_task(_sync_orders, [result.data["order"]["id"]])
    return result_response(result)


@router.post("/mass")
async def place_mass_order(
    body: MassOrderRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
):
    result = OrderService().place_mass_order(
        actor, body.service, body.orders, body.default_quantity
    )
    if result.success:
        order_ids = [r["order_id"] for r in result.data["results"] if r["success"]]
        if order_ids:
            background_tasks.add_task(_sync_orders, order_ids)
    return result_response(result)


@router.get("")
async def list_orders(actor: Actor = Depends(get_current_actor)):
    return result_response(AccountLedger().get_user_orders(actor))


@router.post("/refresh")
async def refresh_orders(actor: Actor = Depends(get_current_actor)):
    return result_response(SupplierSyncService().refresh_statuses(actor))


@router.post("/{order_id}/refill")
async def request_refill(order_id: str, actor: Actor = Depends(get_current_actor)):
    return result_response(SupplierSyncService().request_refill(actor, order_id))


@router.get("/{order_id}/drip-feed")
async def drip_feed_status(order_id: str, actor: Actor = Depends(get_current_actor)):
    return result_response(OrderService().get_drip_feed_status(actor, order_id))
