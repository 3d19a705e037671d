"""
Tests for invoice delivery and payment collection
"""

import pytest
from decimal import Decimal

from services.invoice_service import InvoiceService, payment_idempotency_key
from utils.exception_handler import InvalidTransitionError, ValidationError


@pytest.fixture
def invoice(create):
    def build(**overrides):
        return create("invoices", **overrides)
    return build


class TestSendInvoice:

    @pytest.mark.asyncio
    async def test_send_emails_and_marks_sent(self, invoice, db_session, mock_email):
        draft = invoice()
        sent = await InvoiceService.send_invoice(db_session, draft.id, "billing@client.example", mock_email)

        assert sent.status == "sent"
        assert sent.sent_at is not None
        message = mock_email.outbox[0]
        assert message["subject"] == f"Invoice {draft.invoice_number}"
        assert "$1,080.00" in message["body"]
        assert "2025-02-15" in message["body"]

    @pytest.mark.asyncio
    async def test_only_drafts_are_sent(self, invoice, db_session, mock_email):
        draft = invoice()
        await InvoiceService.send_invoice(db_session, draft.id, "billing@client.example", mock_email)
        with pytest.raises(InvalidTransitionError):
            await InvoiceService.send_invoice(db_session, draft.id, "billing@client.example", mock_email)
        assert len(mock_email.outbox) == 1

    @pytest.mark.parametrize("overrides", [
        {"status": "paid"},
        {"paid_amount": "1080.00", "paid_at": "2025-01-15T12:00:00"},
        {"sent_at": "2025-01-15T12:00:00"},
    ])
    def test_payment_state_cannot_be_preset(self, invoice, overrides):
        with pytest.raises(ValidationError) as exc_info:
            invoice(**overrides)
        assert {v.code for v in exc_info.value.violations} == {"workflow_owned"}


class TestRequestPayment:

    @pytest.mark.asyncio
    async def test_draft_invoice_is_not_payable(self, invoice, db_session, mock_payments):
        draft = invoice()
        with pytest.raises(InvalidTransitionError):
            await InvoiceService.request_payment(db_session, draft.id, mock_payments)
        assert mock_payments.intents == {}

    @pytest.mark.asyncio
    async def test_intent_for_outstanding_balance(self, invoice, db_session, mock_email, mock_payments):
        draft = invoice()
        # an earlier partial payment already settled part of the balance
        draft.paid_amount = Decimal("80.00")
        db_session.commit()
        await InvoiceService.send_invoice(db_session, draft.id, "billing@client.example", mock_email)

        intent = await InvoiceService.request_payment(db_session, draft.id, mock_payments)
        assert intent.amount == Decimal("1000.00")
        assert intent.currency == "USD"
        assert intent.idempotency_key == f"invoice-{draft.id}-1000.00"
        assert draft.payment_reference == intent.id
        assert draft.payment_method == "payments"

    @pytest.mark.asyncio
    async def test_repeated_request_reuses_intent(self, invoice, db_session, mock_email, mock_payments):
        draft = invoice()
        await InvoiceService.send_invoice(db_session, draft.id, "billing@client.example", mock_email)

        first = await InvoiceService.request_payment(db_session, draft.id, mock_payments)
        second = await InvoiceService.request_payment(db_session, draft.id, mock_payments)
        assert first.id == second.id
        assert len(mock_payments.intents) == 1

    def test_idempotency_key_tracks_outstanding_amount(self, invoice):
        draft = invoice()
        assert payment_idempotency_key(draft) == f"invoice-{draft.id}-1080.00"


class TestSettlement:

    @pytest.mark.asyncio
    async def test_mark_paid(self, invoice, db_session, mock_email, now):
        draft = invoice()
        await InvoiceService.send_invoice(db_session, draft.id, "billing@client.example", mock_email)
        InvoiceService.mark_paid(db_session, draft.id, payment_reference="pi_123", at=now)

        assert draft.status == "paid"
        assert draft.paid_amount == Decimal("1080.00")
        assert draft.paid_at == now
        assert draft.payment_reference == "pi_123"

    @pytest.mark.asyncio
    async def test_mark_overdue(self, invoice, db_session, mock_email, later):
        late = invoice(due_date=later(days=-1).isoformat())
        current = invoice(due_date=later(days=10).isoformat())
        never_sent = invoice(due_date=later(days=-5).isoformat())
        for inv in (late, current):
            await InvoiceService.send_invoice(db_session, inv.id, "billing@client.example", mock_email)

        overdue = InvoiceService.mark_overdue(db_session, now=later())
        assert [inv.id for inv in overdue] == [late.id]
        assert late.status == "overdue"
        assert never_sent.status == "draft"

    def test_draft_cannot_be_paid(self, invoice, db_session):
        draft = invoice()
        with pytest.raises(InvalidTransitionError):
            InvoiceService.mark_paid(db_session, draft.id)
