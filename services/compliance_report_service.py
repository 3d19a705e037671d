"""
Compliance Report Service
Regulatory filings (SAR/STR/CTR/FBAR) with mandatory deadlines and write-once filing time
"""

import logging
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional

from sqlalchemy.orm import Session

from config import Config
from models import ComplianceReport, WorkflowStatus
from services.bms_record_service import BMSRecordService, require_actor
from services.state_transition_service import StateTransitionService
from utils.atomic_transactions import atomic_transaction, lock_entity
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import ImmutableFieldError

logger = logging.getLogger(__name__)


class ComplianceReportService:

    @classmethod
    def create_report(cls, session: Session, payload: Mapping[str, Any]) -> ComplianceReport:
        """
        Create a report; a missing due_date defaults to the filing window
        configured for the report type.
        """
        data = dict(payload)
        due = data.get("due_date", data.get("dueDate"))
        report_type = data.get("report_type", data.get("reportType"))
        report_type = getattr(report_type, "value", report_type)
        if due is None and report_type in Config.COMPLIANCE_DUE_DAYS:
            data.pop("dueDate", None)
            data["due_date"] = get_naive_utc_now() + timedelta(days=Config.COMPLIANCE_DUE_DAYS[report_type])

        report = BMSRecordService.create_record(session, "compliance_reports", data)
        logger.info(
            f"📑 COMPLIANCE_REPORT_CREATED: {report.id} {report.report_type} "
            f"{report.jurisdiction} due {report.due_date}"
        )
        return report

    @classmethod
    def file_report(
        cls,
        session: Session,
        report_id: str,
        filed_with: str,
        filing_reference: str,
        filed_by: str,
        at: Optional[datetime] = None,
    ) -> ComplianceReport:
        """
        Record the submission to the regulator and complete the report.

        Raises:
            ImmutableFieldError: the report was already filed
        """
        filed_with = require_actor("filed_with", filed_with)
        filing_reference = require_actor("filing_reference", filing_reference)
        filed_by = require_actor("filed_by", filed_by)

        with atomic_transaction(session) as tx_session:
            report = lock_entity(tx_session, ComplianceReport, report_id)
            if report.filed_at is not None:
                logger.warning(f"🚫 COMPLIANCE_REFILE: {report.id} already filed at {report.filed_at}")
                raise ImmutableFieldError("compliance_reports", "filed_at")

            if report.status == WorkflowStatus.PENDING.value:
                StateTransitionService.transition(report, "start", actor=filed_by)
            report.filed_at = at or get_naive_utc_now()
            report.filed_with = filed_with
            report.filing_reference = filing_reference
            report.filed_by = filed_by
            StateTransitionService.transition(report, "complete", actor=filed_by, at=report.filed_at)

        logger.info(f"📨 COMPLIANCE_REPORT_FILED: {report.id} with {filed_with} ref={filing_reference}")
        return report

    @classmethod
    def overdue_reports(cls, session: Session, now: Optional[datetime] = None) -> List[ComplianceReport]:
        """Unfiled, uncancelled reports whose due date has passed"""
        now = now or get_naive_utc_now()
        return (
            session.query(ComplianceReport)
            .filter(
                ComplianceReport.filed_at.is_(None),
                ComplianceReport.status != WorkflowStatus.CANCELLED.value,
                ComplianceReport.due_date < now,
            )
            .order_by(ComplianceReport.due_date)
            .all()
        )
