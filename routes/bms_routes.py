"""
BMS API Routes
FastAPI routes for validated record creation and updates, lookups, workflow actions
and the executive overview
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from models import normalize_entity_type
from services.affiliate_service import AffiliateService
from services.bms_record_service import BMSRecordService
from services.bms_summary_service import BMSSummaryService
from services.compliance_report_service import ComplianceReportService
from services.external_services import ExternalServices
from services.invoice_service import InvoiceService
from services.kyc_workflow_service import KycWorkflowService
from services.security_incident_service import SecurityIncidentService
from services.state_transition_service import StateTransitionService
from services.support_ticket_service import SupportTicketService
from services.wallet_approval_service import WalletApprovalService
from utils.datetime_helpers import parse_datetime
from utils.exception_handler import ValidationError
from utils.insert_schema import FieldViolation, get_insert_schema, serialize_row

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bms", tags=["bms"])

# Entities whose creation carries workflow defaults beyond plain validation
CREATE_HANDLERS = {
    "wallet_operations": WalletApprovalService.create_operation,
    "kyc_workflows": KycWorkflowService.create_workflow,
    "compliance_reports": ComplianceReportService.create_report,
    "support_tickets": SupportTicketService.open_ticket,
    "affiliate_tracking": AffiliateService.record_conversion,
    "security_incidents": SecurityIncidentService.report_incident,
}


def get_external_services(request: Request) -> ExternalServices:
    return request.app.state.external_services


def _body(body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return dict(body or {})


def _optional_datetime(body: Dict[str, Any], key: str = "at"):
    value = body.get(key)
    if value is None:
        return None
    try:
        return parse_datetime(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Invalid {key}", [FieldViolation(key, "invalid_type", f"{key} must be an ISO-8601 datetime")]
        )


def _int_param(value: Optional[str], name: str, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {name}", [FieldViolation(name, "invalid_type", f"{name} must be an integer")]
        )


# ============================================================================
# WORKFLOW ACTIONS
# ============================================================================

@router.post("/wallet-operations/{operation_id}/approvals")
def approve_wallet_operation(operation_id: str, body: Optional[Dict[str, Any]] = Body(None),
                             db: Session = Depends(get_db)):
    data = _body(body)
    outcome = WalletApprovalService.record_approval(db, operation_id, data.get("approver_id"))
    return outcome.to_dict()


@router.post("/wallet-operations/{operation_id}/confirmations")
def update_wallet_confirmations(operation_id: str, body: Optional[Dict[str, Any]] = Body(None),
                                db: Session = Depends(get_db)):
    data = _body(body)
    op = WalletApprovalService.record_confirmations(
        db,
        operation_id,
        data.get("confirmations"),
        block_number=data.get("block_number"),
        transaction_hash=data.get("transaction_hash"),
    )
    return serialize_row(op)


@router.post("/wallet-operations/{operation_id}/execute")
def execute_wallet_operation(operation_id: str, body: Optional[Dict[str, Any]] = Body(None),
                             db: Session = Depends(get_db)):
    data = _body(body)
    op = WalletApprovalService.execute(db, operation_id, data.get("executor_id"))
    return serialize_row(op)


@router.post("/kyc-workflows/{workflow_id}/stages/{stage}/verify")
def verify_kyc_stage(workflow_id: str, stage: str, body: Optional[Dict[str, Any]] = Body(None),
                     db: Session = Depends(get_db)):
    data = _body(body)
    workflow = KycWorkflowService.verify_stage(
        db, workflow_id, stage, data.get("reviewer"),
        details=data.get("details"), at=_optional_datetime(data),
    )
    return serialize_row(workflow)


@router.post("/kyc-workflows/{workflow_id}/screen")
async def screen_kyc_workflow(workflow_id: str, body: Optional[Dict[str, Any]] = Body(None),
                              db: Session = Depends(get_db),
                              services: ExternalServices = Depends(get_external_services)):
    data = _body(body)
    workflow = await KycWorkflowService.screen(
        db, workflow_id, services.screening,
        full_name=data.get("full_name"), country=data.get("country"),
    )
    return serialize_row(workflow)


@router.post("/kyc-workflows/{workflow_id}/complete")
def complete_kyc_workflow(workflow_id: str, body: Optional[Dict[str, Any]] = Body(None),
                          db: Session = Depends(get_db)):
    data = _body(body)
    workflow = KycWorkflowService.complete(db, workflow_id, approved_by=data.get("approved_by"))
    return serialize_row(workflow)


@router.post("/kyc-workflows/{workflow_id}/reject")
def reject_kyc_workflow(workflow_id: str, body: Optional[Dict[str, Any]] = Body(None),
                        db: Session = Depends(get_db)):
    data = _body(body)
    workflow = KycWorkflowService.reject(db, workflow_id, data.get("reason"), reviewer=data.get("reviewer"))
    return serialize_row(workflow)


@router.post("/compliance-reports/{report_id}/file")
def file_compliance_report(report_id: str, body: Optional[Dict[str, Any]] = Body(None),
                           db: Session = Depends(get_db)):
    data = _body(body)
    report = ComplianceReportService.file_report(
        db, report_id, data.get("filed_with"), data.get("filing_reference"), data.get("filed_by"),
        at=_optional_datetime(data),
    )
    return serialize_row(report)


@router.post("/affiliate-tracking/{tracking_id}/payments")
def pay_affiliate_commission(tracking_id: str, body: Optional[Dict[str, Any]] = Body(None),
                             db: Session = Depends(get_db)):
    data = _body(body)
    tracking = AffiliateService.pay_commission(db, tracking_id, data.get("amount"), paid_by=data.get("paid_by"))
    return serialize_row(tracking)


@router.post("/support-tickets/{ticket_id}/messages", status_code=201)
def add_ticket_message(ticket_id: str, body: Optional[Dict[str, Any]] = Body(None),
                       db: Session = Depends(get_db)):
    message = SupportTicketService.add_message(db, ticket_id, _body(body))
    return serialize_row(message)


@router.post("/invoices/{invoice_id}/payment-intents", status_code=201)
async def request_invoice_payment(invoice_id: str, db: Session = Depends(get_db),
                                  services: ExternalServices = Depends(get_external_services)):
    intent = await InvoiceService.request_payment(db, invoice_id, services.payments)
    return {
        "id": intent.id,
        "amount": format(intent.amount, "f"),
        "currency": intent.currency,
        "status": intent.status,
        "client_secret": intent.client_secret,
    }


# ============================================================================
# EXECUTIVE OVERVIEW
# ============================================================================

@router.get("/executive/kpis")
def executive_kpis(db: Session = Depends(get_db)):
    return BMSSummaryService.executive_overview(db)


@router.get("/treasury-reports/latest")
def latest_treasury_report(db: Session = Depends(get_db)):
    return serialize_row(BMSSummaryService.latest_treasury_report(db))


# ============================================================================
# GENERIC RECORD ROUTES
# ============================================================================

@router.get("/{entity_type}/schema")
def describe_schema(entity_type: str):
    return get_insert_schema(entity_type).describe()


@router.post("/{entity_type}", status_code=201)
def create_record(entity_type: str, payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    handler = CREATE_HANDLERS.get(normalize_entity_type(entity_type))
    if handler is not None:
        row = handler(db, payload)
    else:
        row = BMSRecordService.create_record(db, entity_type, payload)
    return serialize_row(row)


@router.get("/{entity_type}")
def list_records(entity_type: str, request: Request, db: Session = Depends(get_db)):
    params = dict(request.query_params)
    limit = _int_param(params.pop("limit", None), "limit", 100)
    offset = _int_param(params.pop("offset", None), "offset", 0)
    date_from = params.pop("dateFrom", None)
    date_to = params.pop("dateTo", None)
    rows = BMSRecordService.list_records(
        db, entity_type, params, limit=limit, offset=offset, date_from=date_from, date_to=date_to,
    )
    return {"items": [serialize_row(row) for row in rows], "count": len(rows)}


@router.get("/{entity_type}/{entity_id}")
def get_record(entity_type: str, entity_id: str, db: Session = Depends(get_db)):
    return serialize_row(BMSRecordService.get_record(db, entity_type, entity_id))


@router.put("/{entity_type}/{entity_id}")
def update_record(entity_type: str, entity_id: str, payload: Dict[str, Any] = Body(...),
                  db: Session = Depends(get_db)):
    return serialize_row(BMSRecordService.update_record(db, entity_type, entity_id, payload))


@router.post("/{entity_type}/{entity_id}/transition")
def transition_record(entity_type: str, entity_id: str, body: Optional[Dict[str, Any]] = Body(None),
                      db: Session = Depends(get_db)):
    data = _body(body)
    event = data.get("event")
    if not isinstance(event, str) or not event:
        raise ValidationError("event is required", [FieldViolation("event", "required", "event is required")])
    row = StateTransitionService.transition_entity(
        db, entity_type, entity_id, event, actor=data.get("actor"), at=_optional_datetime(data),
    )
    return serialize_row(row)


@router.post("/{entity_type}/{entity_id}/deactivate")
def deactivate_record(entity_type: str, entity_id: str, db: Session = Depends(get_db)):
    return serialize_row(BMSRecordService.deactivate_record(db, entity_type, entity_id))
