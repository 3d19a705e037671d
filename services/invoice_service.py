"""
Invoice Service
Sends invoices by email and collects payment through the payment gateway
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from models import Invoice, InvoiceStatus
from services.bms_record_service import BMSRecordService
from services.external_services import EmailProvider, PaymentGateway, PaymentIntent
from services.state_transition_service import StateTransitionService
from utils.atomic_transactions import atomic_transaction, lock_entity
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import InvalidTransitionError

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = (InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value)


def payment_idempotency_key(invoice: Invoice) -> str:
    """Stable per invoice and outstanding amount, so retries reuse the same intent"""
    outstanding = MonetaryDecimal.subtract_precise(invoice.total_amount, invoice.paid_amount or 0)
    return f"invoice-{invoice.id}-{format(outstanding, 'f')}"


class InvoiceService:

    @classmethod
    async def send_invoice(
        cls, session: Session, invoice_id: str, recipient: str, email: EmailProvider
    ) -> Invoice:
        """Email a draft invoice, then mark it sent"""
        invoice = BMSRecordService.get_record(session, "invoices", invoice_id)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise InvalidTransitionError(
                "invoices", invoice.status, InvoiceStatus.SENT.value, reason="only draft invoices can be sent"
            )

        body = (
            f"Invoice {invoice.invoice_number}\n"
            f"Amount due: {MonetaryDecimal.format_usd(invoice.total_amount)} {invoice.currency}\n"
            f"Due date: {invoice.due_date:%Y-%m-%d}\n"
            f"Terms: {invoice.payment_terms}"
        )
        await email.send_email(recipient, f"Invoice {invoice.invoice_number}", body)

        invoice = StateTransitionService.transition_entity(session, "invoices", invoice_id, "send")
        logger.info(f"🧾 INVOICE_SENT: {invoice.invoice_number} -> {recipient}")
        return invoice

    @classmethod
    async def request_payment(cls, session: Session, invoice_id: str, gateway: PaymentGateway) -> PaymentIntent:
        """Create a payment intent for the outstanding balance and remember its reference"""
        invoice = BMSRecordService.get_record(session, "invoices", invoice_id)
        if invoice.status not in PAYABLE_STATUSES:
            raise InvalidTransitionError(
                "invoices", invoice.status, InvoiceStatus.PAID.value,
                reason="payment can only be requested for sent or overdue invoices",
            )

        outstanding = MonetaryDecimal.subtract_precise(invoice.total_amount, invoice.paid_amount or 0)
        try:
            intent = await gateway.create_payment_intent(
                outstanding,
                invoice.currency,
                payment_idempotency_key(invoice),
                metadata={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number},
            )
        except Exception as e:
            logger.error(f"❌ INVOICE_PAYMENT_REQUEST_FAILED: {invoice.invoice_number}: {e}", exc_info=True)
            raise

        with atomic_transaction(session) as tx_session:
            invoice = lock_entity(tx_session, Invoice, invoice_id)
            invoice.payment_reference = intent.id
            invoice.payment_method = gateway.service_name

        logger.info(f"💳 INVOICE_PAYMENT_REQUESTED: {invoice.invoice_number} {outstanding} intent={intent.id}")
        return intent

    @classmethod
    def mark_paid(
        cls, session: Session, invoice_id: str, payment_reference: Optional[str] = None, at: Optional[datetime] = None
    ) -> Invoice:
        with atomic_transaction(session) as tx_session:
            invoice = lock_entity(tx_session, Invoice, invoice_id)
            if payment_reference:
                invoice.payment_reference = payment_reference
            StateTransitionService.transition(invoice, "pay", at=at)
        logger.info(f"✅ INVOICE_PAID: {invoice.invoice_number} {invoice.paid_amount}")
        return invoice

    @classmethod
    def mark_overdue(cls, session: Session, now: Optional[datetime] = None) -> List[Invoice]:
        """Move every sent invoice past its due date to overdue"""
        now = now or get_naive_utc_now()
        with atomic_transaction(session) as tx_session:
            late = (
                tx_session.query(Invoice)
                .filter(Invoice.status == InvoiceStatus.SENT.value, Invoice.due_date < now)
                .with_for_update()
                .all()
            )
            for invoice in late:
                StateTransitionService.transition(invoice, "mark_overdue", at=now)

        if late:
            logger.warning(f"⏰ INVOICES_OVERDUE: {len(late)} invoice(s) past due")
        return late
