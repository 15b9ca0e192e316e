"""
充值服务：GCash / Maya 手动转账充值。

流程：用户创建充值申请（pending）→ 转账后点击"已支付"（awaiting_verification）
→ 管理员核对后批准（completed，余额入账并写交易记录）或拒绝（rejected）。
不接入任何支付网关。
"""

import logging
import os
import random
from datetime import datetime, timedelta
from urllib.parse import quote

from dotenv import load_dotenv

from smmpanel.models.schemas import Actor, OperationResult
from smmpanel.services.ledger_service import TXN_DEPOSIT, AccountLedger
from smmpanel.services.pricing import CENT, PricingError, format_price, to_decimal

load_dotenv()

logger = logging.getLogger(__name__)

MIN_DEPOSIT = 50
REQUEST_TTL_HOURS = 24
QUICK_AMOUNTS = [100, 250, 500, 1000, 2500, 5000]

PAYMENT_PENDING = "pending"
PAYMENT_AWAITING = "awaiting_verification"
PAYMENT_COMPLETED = "completed"
PAYMENT_REJECTED = "rejected"

OPEN_PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_AWAITING)

MESSENGER_LINK = os.getenv("MESSENGER_LINK", "")


def _method_config() -> dict:
    return {
        "gcash": {
            "label": "GCash",
            "name": os.getenv("GCASH_ACCOUNT_NAME", ""),
            "number": os.getenv("GCASH_ACCOUNT_NUMBER", ""),
            "enabled": os.getenv("GCASH_ENABLED", "1") == "1",
        },
        "maya": {
            "label": "Maya",
            "name": os.getenv("MAYA_ACCOUNT_NAME", ""),
            "number": os.getenv("MAYA_ACCOUNT_NUMBER", ""),
            "enabled": os.getenv("MAYA_ENABLED", "1") == "1",
        },
    }


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def get_enabled_methods() -> list[dict]:
    return [
        {"id": method_id, **cfg}
        for method_id, cfg in _method_config().items()
        if cfg["enabled"]
    ]


def get_payment_instructions(method: str) -> dict | None:
    """转账步骤说明；方式不存在或未启用时返回 None。"""
    cfg = _method_config().get(method)
    if not cfg or not cfg["enabled"]:
        return None
    return {
        "steps": [
            f"Open your {cfg['label']} app",
            'Go to "Send Money"',
            f"Enter number: {cfg['number']}",
            "Enter the exact amount",
            "Complete the payment",
            "Take a screenshot of the receipt",
            "Click \"I've Paid\" and send the screenshot via Messenger",
        ],
        "account_name": cfg["name"],
        "account_number": cfg["number"],
    }


class PaymentService:
    """充值申请服务。"""

    def __init__(self, ledger: AccountLedger | None = None):
        self.ledger = ledger or AccountLedger()

    @property
    def repo(self):
        return self.ledger.repo

    def create_payment_request(self, actor: Actor | None, amount, method: str) -> OperationResult:
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        if actor.is_admin:
            return OperationResult.fail("validation_error", "Admin accounts do not need top-ups")

        try:
            value = to_decimal(amount, "amount")
        except PricingError:
            return OperationResult.fail("validation_error", "Amount must be a number")
        if value < MIN_DEPOSIT:
            return OperationResult.fail(
                "validation_error", f"Minimum deposit is {format_price(MIN_DEPOSIT)}"
            )
        if method not in {m["id"] for m in get_enabled_methods()}:
            return OperationResult.fail("validation_error", "Payment method is not available")

        now = datetime.now()
        existing = {p.get("id") for p in self.repo.list_payments()}
        request_id = f"TXN-{random.randint(1000000, 9999999)}"
        while request_id in existing:
            request_id = f"TXN-{random.randint(1000000, 9999999)}"

        request = {
            "id": request_id,
            "user_id": actor.user_id,
            "user_email": actor.email,
            "amount": str(value.quantize(CENT)),
            "method": method,
            "status": PAYMENT_PENDING,
            "created_at": now.strftime("%Y-%m-%d %H:%M:%S"),
            "expires_at": (now + timedelta(hours=REQUEST_TTL_HOURS)).strftime("%Y-%m-%d %H:%M:%S"),
        }
        self.repo.append_payment(request)
        self.ledger.log_activity("payment_request", actor.user_id, actor.email, {
            "txn_id": request_id,
            "amount": request["amount"],
            "method": method,
        })
        return OperationResult.ok(
            request=request,
            instructions=get_payment_instructions(method),
            messenger_message=self.build_messenger_message(actor, request),
        )

    def mark_as_paid(self, actor: Actor | None, request_id: str) -> OperationResult:
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")

        def _apply(p: dict) -> str | None:
            if p.get("user_id") != actor.user_id and not actor.is_admin:
                return "forbidden"
            if p.get("status") != PAYMENT_PENDING:
                return "state"
            p["status"] = PAYMENT_AWAITING
            p["paid_at"] = _now()
            return None

        found, problem = self.repo.update_payment(request_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "Payment request not found")
        if problem == "forbidden":
            return OperationResult.fail("forbidden", "Access denied")
        if problem == "state":
            return OperationResult.fail("validation_error", "Payment request is not pending")

        self.ledger.log_activity("payment_marked_paid", actor.user_id, actor.email, {"txn_id": request_id})
        return OperationResult.ok(request_id=request_id, status=PAYMENT_AWAITING)

    def get_user_pending_payments(self, actor: Actor | None) -> OperationResult:
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        payments = [
            p for p in self.repo.list_payments()
            if p.get("user_id") == actor.user_id and p.get("status") != PAYMENT_COMPLETED
        ]
        return OperationResult.ok(payments=payments)

    def get_all_pending_payments(self, actor: Actor | None) -> OperationResult:
        if actor is None or not actor.is_admin:
            return OperationResult.fail("forbidden", "Admin access required")
        payments = [
            p for p in self.repo.list_payments() if p.get("status") in OPEN_PAYMENT_STATUSES
        ]
        return OperationResult.ok(payments=payments)

    def approve_payment(self, actor: Actor | None, request_id: str) -> OperationResult:
        """
        批准充值：先把申请置为 completed（防止重复入账），再给用户加余额。

        入账失败时把申请恢复为原状态。
        """
        if actor is None or not actor.is_admin:
            return OperationResult.fail("forbidden", "Admin access required")

        def _complete(p: dict) -> tuple[str | None, dict]:
            if p.get("status") not in OPEN_PAYMENT_STATUSES:
                return None, dict(p)
            previous = p["status"]
            p["status"] = PAYMENT_COMPLETED
            p["approved_at"] = _now()
            p["approved_by"] = actor.email
            return previous, dict(p)

        found, outcome = self.repo.update_payment(request_id, _complete)
        if not found:
            return OperationResult.fail("not_found", "Payment request not found")
        previous, request = outcome
        if previous is None:
            return OperationResult.fail(
                "validation_error", f"Payment request is already {request.get('status')}"
            )

        credit = self.ledger.credit_user(request["user_id"], request["amount"], reason=f"deposit {request_id}")
        if not credit.success:
            def _revert(p: dict) -> None:
                p["status"] = previous
                p.pop("approved_at", None)
                p.pop("approved_by", None)

            self.repo.update_payment(request_id, _revert)
            logger.warning("充值入账失败，申请已恢复: txn_id=%s, error=%s", request_id, credit.error)
            return credit

        self.repo.append_transaction({
            "id": request_id,
            "user_id": request["user_id"],
            "user_email": request.get("user_email"),
            "type": TXN_DEPOSIT,
            "amount": request["amount"],
            "method": request.get("method"),
            "status": PAYMENT_COMPLETED,
            "reason": None,
            "created_at": request.get("created_at"),
            "completed_at": request["approved_at"],
        })
        self.ledger.log_activity("admin_approve_payment", actor.user_id, actor.email, {
            "txn_id": request_id,
            "amount": request["amount"],
            "user_id": request["user_id"],
        })
        logger.info("充值已批准: txn_id=%s, user_id=%s, amount=%s", request_id, request["user_id"], request["amount"])
        return OperationResult.ok(request=request, balance=credit.data.get("balance"))

    def reject_payment(self, actor: Actor | None, request_id: str, reason: str = "") -> OperationResult:
        if actor is None or not actor.is_admin:
            return OperationResult.fail("forbidden", "Admin access required")

        def _apply(p: dict) -> bool:
            if p.get("status") not in OPEN_PAYMENT_STATUSES:
                return False
            p["status"] = PAYMENT_REJECTED
            p["rejected_at"] = _now()
            p["rejected_by"] = actor.email
            p["reject_reason"] = reason
            return True

        found, changed = self.repo.update_payment(request_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "Payment request not found")
        if not changed:
            return OperationResult.fail("validation_error", "Payment request is no longer open")

        self.ledger.log_activity("admin_reject_payment", actor.user_id, actor.email, {
            "txn_id": request_id,
            "reason": reason,
        })
        return OperationResult.ok(request_id=request_id, status=PAYMENT_REJECTED)

    def get_transaction_history(self, actor: Actor | None) -> OperationResult:
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        transactions = self.repo.list_transactions()
        if not actor.is_admin:
            transactions = [t for t in transactions if t.get("user_id") == actor.user_id]
        return OperationResult.ok(transactions=transactions)

    def build_messenger_message(self, actor: Actor, request: dict) -> dict:
        """生成发送给客服的核对消息；配置了 MESSENGER_LINK 时附带预填链接。"""
        text = (
            "Hi! I just added funds.\n\n"
            "Payment Details:\n"
            f"Amount: {format_price(request['amount'])}\n"
            f"Method: {request['method'].upper()}\n"
            f"Reference: {request['id']}\n"
            f"Email: {actor.email or 'N/A'}\n\n"
            "Please verify my payment and add funds to my account. "
            "I have attached the payment screenshot/receipt.\n\n"
            "Thank you!"
        )
        link = f"{MESSENGER_LINK}?text={quote(text)}" if MESSENGER_LINK else None
        return {"text": text, "link": link}
