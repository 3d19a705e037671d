"""
Support Ticket Service
Ticket intake with team routing and SLA deadlines, threaded messages, escalation
"""

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from config import Config
from models import (
    Department,
    Priority,
    SenderType,
    SupportTicket,
    TicketMessage,
    TicketStatus,
)
from services.bms_record_service import BMSRecordService, require_actor
from services.external_services import EmailProvider, EmailReceipt
from services.state_transition_service import StateTransitionService
from utils.atomic_transactions import atomic_transaction, lock_entity
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import InvalidTransitionError, ValidationError
from utils.insert_schema import FieldViolation

logger = logging.getLogger(__name__)

TICKET_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
LIVE_STATUSES = (TicketStatus.OPEN.value, TicketStatus.PENDING.value)


def generate_ticket_number(now: Optional[datetime] = None) -> str:
    """TKT-<unix millis>-<6 random uppercase alphanumerics>"""
    now = now or get_naive_utc_now()
    epoch_ms = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    suffix = "".join(secrets.choice(TICKET_SUFFIX_ALPHABET) for _ in range(6))
    return f"TKT-{epoch_ms}-{suffix}"


def route_team(category: Optional[str], priority: Optional[str]) -> str:
    """Category routing first, then critical tickets go to the executive team"""
    if category == "compliance":
        return Department.COMPLIANCE.value
    if category == "technical":
        return Department.TECH.value
    if priority == Priority.CRITICAL.value:
        return Department.EXECUTIVE.value
    return Department.SUPPORT.value


def sla_deadline_for(priority: str, opened_at: datetime) -> datetime:
    hours = Config.sla_hours().get(priority, Config.SLA_HOURS_MEDIUM)
    return opened_at + timedelta(hours=hours)


def is_sla_breached(ticket: SupportTicket, now: Optional[datetime] = None) -> bool:
    """
    First response later than the deadline, or no response yet and the
    deadline has passed. Breach is only reported; it never blocks a transition.
    """
    if ticket.sla_deadline is None:
        return False
    if ticket.first_response_time is not None:
        return ticket.first_response_time > ticket.sla_deadline
    return (now or get_naive_utc_now()) > ticket.sla_deadline


class SupportTicketService:
    """Service for the support desk ticket lifecycle"""

    @classmethod
    def open_ticket(cls, session: Session, payload: Mapping[str, Any], now: Optional[datetime] = None) -> SupportTicket:
        data = dict(payload)
        opened_at = now or get_naive_utc_now()

        priority = data.get("priority", Priority.MEDIUM.value)
        priority = getattr(priority, "value", priority)
        data["priority"] = priority

        data.setdefault("ticket_number", generate_ticket_number(opened_at))
        if not data.get("assigned_team") and not data.get("assignedTeam"):
            data["assigned_team"] = route_team(data.get("category"), priority)
        if priority in Config.sla_hours():
            data.setdefault("sla_deadline", sla_deadline_for(priority, opened_at))
        if priority == Priority.CRITICAL.value:
            current_level = data.get("escalation_level")
            if current_level is None or (isinstance(current_level, int) and current_level < 1):
                data["escalation_level"] = 1

        ticket = BMSRecordService.create_record(session, "support_tickets", data)
        logger.info(
            f"🎫 TICKET_OPENED: {ticket.ticket_number} priority={ticket.priority} "
            f"team={ticket.assigned_team} sla={ticket.sla_deadline}"
        )
        return ticket

    @classmethod
    def add_message(
        cls,
        session: Session,
        ticket_id: str,
        payload: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> TicketMessage:
        """
        Append a message to a ticket.

        The first public agent reply stamps first_response_time and moves an
        open ticket to pending (awaiting customer); a customer reply moves a
        pending ticket back to open.
        """
        data = dict(payload)
        data.pop("ticketId", None)
        data["ticket_id"] = ticket_id
        at = now or get_naive_utc_now()

        with atomic_transaction(session) as tx_session:
            ticket = lock_entity(tx_session, SupportTicket, ticket_id)
            if ticket.status == TicketStatus.CLOSED.value:
                raise InvalidTransitionError(
                    "support_tickets", ticket.status, "message", reason="ticket is closed"
                )

            message = BMSRecordService.create_record(tx_session, "ticket_messages", data)
            sender_type = message.sender_type

            if sender_type == SenderType.AGENT.value and not message.is_internal:
                if ticket.first_response_time is None:
                    ticket.first_response_time = at
                    if is_sla_breached(ticket, at):
                        logger.warning(f"⏰ SLA_BREACHED: {ticket.ticket_number} first response at {at}")
                if ticket.status == TicketStatus.OPEN.value:
                    StateTransitionService.transition(ticket, "await_customer", actor=message.sender_id, at=at)
            elif sender_type == SenderType.USER.value and ticket.status == TicketStatus.PENDING.value:
                StateTransitionService.transition(ticket, "customer_reply", actor=message.sender_id, at=at)

        logger.info(f"💬 TICKET_MESSAGE: {ticket.ticket_number} from {sender_type} {message.sender_id}")
        return message

    @classmethod
    def escalate(
        cls,
        session: Session,
        ticket_id: str,
        level: int,
        assigned_to: Optional[str] = None,
    ) -> SupportTicket:
        """Raise the escalation level; it never goes down"""
        if isinstance(level, bool) or not isinstance(level, int) or level < 1:
            raise ValidationError(
                "Escalation level must be a positive integer",
                [FieldViolation("escalation_level", "out_of_range", "escalation_level must be >= 1")],
            )

        with atomic_transaction(session) as tx_session:
            ticket = lock_entity(tx_session, SupportTicket, ticket_id)
            if ticket.status not in LIVE_STATUSES:
                raise InvalidTransitionError(
                    "support_tickets", ticket.status, "escalate", reason=f"ticket is {ticket.status}"
                )
            if level <= (ticket.escalation_level or 0):
                raise ValidationError(
                    f"Ticket {ticket.ticket_number} is already at escalation level {ticket.escalation_level}",
                    [FieldViolation("escalation_level", "out_of_range",
                                    f"escalation_level must exceed {ticket.escalation_level}")],
                )
            ticket.escalation_level = level
            if assigned_to is not None:
                ticket.assigned_to = require_actor("assigned_to", assigned_to)

        logger.warning(f"📈 TICKET_ESCALATED: {ticket.ticket_number} level={level} assigned_to={ticket.assigned_to}")
        return ticket

    @classmethod
    def breached_tickets(cls, session: Session, now: Optional[datetime] = None) -> List[SupportTicket]:
        """Live tickets whose SLA is breached at ``now``"""
        now = now or get_naive_utc_now()
        candidates = (
            session.query(SupportTicket)
            .filter(
                SupportTicket.status.in_(LIVE_STATUSES),
                SupportTicket.sla_deadline.isnot(None),
                or_(
                    SupportTicket.first_response_time.is_(None),
                    SupportTicket.first_response_time > SupportTicket.sla_deadline,
                ),
            )
            .order_by(SupportTicket.sla_deadline)
            .all()
        )
        return [ticket for ticket in candidates if is_sla_breached(ticket, now)]

    @classmethod
    async def send_acknowledgement(
        cls, ticket: SupportTicket, recipient: str, email: EmailProvider
    ) -> EmailReceipt:
        """Email the customer their ticket number and first-response deadline"""
        deadline = ticket.sla_deadline.strftime("%Y-%m-%d %H:%M UTC") if ticket.sla_deadline else "as soon as possible"
        body = (
            f"We received your request \"{ticket.subject}\".\n\n"
            f"Ticket number: {ticket.ticket_number}\n"
            f"Priority: {ticket.priority}\n"
            f"An agent will respond by {deadline}."
        )
        try:
            receipt = await email.send_email(recipient, f"[{ticket.ticket_number}] {ticket.subject}", body)
        except Exception as e:
            logger.error(f"❌ TICKET_ACK_FAILED: {ticket.ticket_number} -> {recipient}: {e}", exc_info=True)
            raise
        logger.info(f"📧 TICKET_ACK_SENT: {ticket.ticket_number} -> {recipient}")
        return receipt
