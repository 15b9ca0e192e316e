"""
工单服务：用户提交工单、双方回复、管理员更新状态。
"""

import logging
import secrets
import time
from datetime import datetime

from smmpanel.models.schemas import Actor, OperationResult
from smmpanel.services.ledger_service import AccountLedger

logger = logging.getLogger(__name__)

TICKET_STATUSES = ("open", "inProgress", "resolved", "closed")
TICKET_PRIORITIES = ("low", "medium", "high", "urgent")
TICKET_CATEGORIES = (
    "Order Issue",
    "Payment Problem",
    "Refill Request",
    "Account Issue",
    "Technical Support",
    "Refund Request",
    "Other",
)
MAX_SUBJECT_LENGTH = 200


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _ticket_id() -> str:
    return f"TKT-{int(time.time() * 1000):X}{secrets.token_hex(2).upper()}"


def _message(actor: Actor, content: str) -> dict:
    return {
        "id": f"msg_{secrets.token_hex(6)}",
        "sender": "admin" if actor.is_admin else "user",
        "sender_name": "Support Team" if actor.is_admin else actor.name,
        "content": content,
        "timestamp": _now(),
    }


class TicketService:
    """工单服务。"""

    def __init__(self, ledger: AccountLedger | None = None):
        self.ledger = ledger or AccountLedger()

    @property
    def repo(self):
        return self.ledger.repo

    def create(
        self,
        actor: Actor | None,
        subject: str,
        category: str,
        message: str,
        priority: str = "medium",
        order_id: str | None = None,
    ) -> OperationResult:
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        subject = (subject or "").strip()
        message = (message or "").strip()
        if not subject or not message:
            return OperationResult.fail("validation_error", "Subject and message are required")
        if len(subject) > MAX_SUBJECT_LENGTH:
            return OperationResult.fail("validation_error", "Subject is too long")
        if category not in TICKET_CATEGORIES:
            category = "Other"
        if priority not in TICKET_PRIORITIES:
            return OperationResult.fail("validation_error", f"Invalid priority: {priority}")

        now = _now()
        ticket = {
            "id": _ticket_id(),
            "user_id": actor.user_id,
            "user_email": actor.email,
            "user_name": actor.name,
            "subject": subject,
            "category": category,
            "priority": priority,
            "status": "open",
            "order_id": order_id or None,
            "messages": [_message(actor, message)],
            "created_at": now,
            "updated_at": now,
        }
        self.repo.append_ticket(ticket)
        self.ledger.log_activity("ticket_create", actor.user_id, actor.email, {
            "ticket_id": ticket["id"],
            "subject": subject,
        })
        return OperationResult.ok(ticket=ticket)

    def add_reply(self, actor: Actor | None, ticket_id: str, message: str) -> OperationResult:
        """回复工单；管理员回复会把 open 工单推进到 inProgress。"""
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        message = (message or "").strip()
        if not message:
            return OperationResult.fail("validation_error", "Message is required")

        def _apply(t: dict) -> dict | None:
            if not actor.is_admin and t.get("user_id") != actor.user_id:
                return None
            reply = _message(actor, message)
            t.setdefault("messages", []).append(reply)
            t["updated_at"] = reply["timestamp"]
            if actor.is_admin and t.get("status") == "open":
                t["status"] = "inProgress"
            return reply

        found, reply = self.repo.update_ticket(ticket_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "Ticket not found")
        if reply is None:
            return OperationResult.fail("forbidden", "Access denied")

        self.ledger.log_activity("ticket_reply", actor.user_id, actor.email, {
            "ticket_id": ticket_id,
            "is_admin": actor.is_admin,
        })
        return OperationResult.ok(reply=reply)

    def update_status(self, actor: Actor | None, ticket_id: str, status: str) -> OperationResult:
        if actor is None or not actor.is_admin:
            return OperationResult.fail("forbidden", "Admin access required")
        if status not in TICKET_STATUSES:
            return OperationResult.fail("validation_error", f"Invalid status: {status}")

        def _apply(t: dict) -> dict:
            t["status"] = status
            t["updated_at"] = _now()
            if status in ("resolved", "closed"):
                t["closed_at"] = t["updated_at"]
            return dict(t)

        found, ticket = self.repo.update_ticket(ticket_id, _apply)
        if not found:
            return OperationResult.fail("not_found", "Ticket not found")
        self.ledger.log_activity("ticket_status_update", actor.user_id, actor.email, {
            "ticket_id": ticket_id,
            "status": status,
        })
        return OperationResult.ok(ticket=ticket)

    def get_user_tickets(self, actor: Actor | None) -> OperationResult:
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        tickets = [t for t in self.repo.list_tickets() if t.get("user_id") == actor.user_id]
        return OperationResult.ok(tickets=tickets)

    def get_all_tickets(
        self,
        actor: Actor | None,
        status: str | None = None,
        priority: str | None = None,
        category: str | None = None,
    ) -> OperationResult:
        if actor is None or not actor.is_admin:
            return OperationResult.fail("forbidden", "Admin access required")
        tickets = self.repo.list_tickets()
        if status:
            tickets = [t for t in tickets if t.get("status") == status]
        if priority:
            tickets = [t for t in tickets if t.get("priority") == priority]
        if category:
            tickets = [t for t in tickets if t.get("category") == category]
        return OperationResult.ok(tickets=tickets)

    def get_ticket(self, actor: Actor | None, ticket_id: str) -> OperationResult:
        if actor is None:
            return OperationResult.fail("not_authenticated", "Please log in first")
        for ticket in self.repo.list_tickets():
            if ticket.get("id") == ticket_id:
                if not actor.is_admin and ticket.get("user_id") != actor.user_id:
                    # 不暴露他人工单是否存在
                    return OperationResult.fail("not_found", "Ticket not found")
                return OperationResult.ok(ticket=ticket)
        return OperationResult.fail("not_found", "Ticket not found")

    def get_open_count(self) -> int:
        return sum(
            1 for t in self.repo.list_tickets() if t.get("status") in ("open", "inProgress")
        )
