"""
工单路由。
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from smmpanel.models.schemas import Actor
from smmpanel.routes.responses import result_response
from smmpanel.services.auth import get_current_actor
from smmpanel.services.ticket_service import TicketService

router = APIRouter(prefix="/v1/tickets")


class CreateTicketRequest(BaseModel):
    subject: str
    category: str = "Other"
    message: str
    priority: str = "medium"
    order_id: str | None = None


class ReplyRequest(BaseModel):
    message: str


@router.post("")
async def create_ticket(body: CreateTicketRequest, actor: Actor = Depends(get_current_actor)):
    return result_response(TicketService().create(
        actor, body.subject, body.category, body.message, body.priority, body.order_id
    ))


@router.get("")
async def list_tickets(actor: Actor = Depends(get_current_actor)):
    return result_response(TicketService().get_user_tickets(actor))


@router.get("/{ticket_id}")
async def get_ticket(ticket_id: str, actor: Actor = Depends(get_current_actor)):
    return result_response(TicketService().get_ticket(actor, ticket_id))


@router.post("/{ticket_id}/reply")
async def reply(ticket_id: str, body: ReplyRequest, actor: Actor = Depends(get_current_actor)):
    return result_response(TicketService().add_reply(actor, ticket_id, body.message))
