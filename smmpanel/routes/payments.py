"""
钱包路由：余额查询、充值方式、充值申请、交易记录。
"""

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from smmpanel.models.schemas import Actor
from smmpanel.routes.responses import result_response
from smmpanel.services.auth import get_current_actor
from smmpanel.services.ledger_service import AccountLedger
from smmpanel.services.payment_service import (
    MIN_DEPOSIT,
    QUICK_AMOUNTS,
    PaymentService,
    get_enabled_methods,
)
from smmpanel.services.pricing import format_price

router = APIRouter()


class PaymentRequest(BaseModel):
    amount: Decimal
    method: str


@router.get("/v1/balance")
async def get_balance(actor: Actor = Depends(get_current_actor)):
    balance = AccountLedger().get_balance(actor)
    if balance is None:
        return {"code": 1, "balance": None, "display": "unlimited"}
    return {"code": 1, "balance": str(balance), "display": format_price(balance)}


@router.get("/v1/payments/methods")
async def payment_methods():
    return {
        "code": 1,
        "methods": get_enabled_methods(),
        "min_deposit": MIN_DEPOSIT,
        "quick_amounts": QUICK_AMOUNTS,
    }


@router.post("/v1/payments")
async def create_payment(body: PaymentRequest, actor: Actor = Depends(get_current_actor)):
    return result_response(PaymentService().create_payment_request(actor, body.amount, body.method))


@router.post("/v1/payments/{request_id}/paid")
async def mark_paid(request_id: str, actor: Actor = Depends(get_current_actor)):
    return result_response(PaymentService().mark_as_paid(actor, request_id))


@router.get("/v1/payments")
async def list_payments(actor: Actor = Depends(get_current_actor)):
    return result_response(PaymentService().get_user_pending_payments(actor))


@router.get("/v1/payments/transactions")
async def transactions(actor: Actor = Depends(get_current_actor)):
    return result_response(PaymentService().get_transaction_history(actor))
