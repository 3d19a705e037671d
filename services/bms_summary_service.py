"""
BMS Summary Service
Read-only aggregates behind the executive dashboard and the latest treasury report
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import (
    ComplianceReport,
    IncidentSeverity,
    KycWorkflow,
    RevenueReport,
    RiskMonitoring,
    SecurityAlert,
    SecurityAlertStatus,
    SecurityIncident,
    SupportTicket,
    TicketStatus,
    TradingPairControl,
    TreasuryReport,
    UserSegment,
    WalletOperation,
    WorkflowStatus,
)
from utils.datetime_helpers import get_naive_utc_now, to_iso
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import EntityNotFoundError

logger = logging.getLogger(__name__)


def _count(session: Session, model, *criteria) -> int:
    return session.query(func.count(model.id)).filter(*criteria).scalar() or 0


class BMSSummaryService:
    """Counts and totals for the executive overview; nothing here writes"""

    @classmethod
    def dashboard_kpis(cls, session: Session) -> Dict[str, Any]:
        # summed in Python so SQLite floats never leak into money
        revenues = [value for (value,) in session.query(RevenueReport.total_revenue) if value is not None]
        return {
            "totalUsers": _count(session, UserSegment),
            "totalRevenue": format(MonetaryDecimal.add_precise(*revenues), "f"),
            "openTickets": _count(session, SupportTicket, SupportTicket.status == TicketStatus.OPEN.value),
            "securityAlerts": _count(
                session, SecurityAlert, SecurityAlert.status == SecurityAlertStatus.OPEN.value
            ),
        }

    @classmethod
    def system_health(cls, session: Session) -> Dict[str, int]:
        return {
            "activeTradingPairs": _count(session, TradingPairControl, TradingPairControl.is_active.is_(True)),
            "pendingWalletOps": _count(
                session, WalletOperation, WalletOperation.status == WorkflowStatus.PENDING.value
            ),
            "riskAlerts": _count(session, RiskMonitoring, RiskMonitoring.alert_triggered.is_(True)),
        }

    @classmethod
    def risk_summary(cls, session: Session) -> Dict[str, int]:
        flagged = sum(1 for (flags,) in session.query(UserSegment.risk_flags) if flags)
        return {
            "highRiskUsers": flagged,
            "criticalIncidents": _count(
                session, SecurityIncident, SecurityIncident.severity == IncidentSeverity.CRITICAL.value
            ),
        }

    @classmethod
    def compliance_summary(cls, session: Session) -> Dict[str, int]:
        return {
            "pendingKyc": _count(session, KycWorkflow, KycWorkflow.status == WorkflowStatus.PENDING.value),
            "pendingReports": _count(
                session, ComplianceReport, ComplianceReport.status == WorkflowStatus.PENDING.value
            ),
        }

    @classmethod
    def executive_overview(cls, session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Everything the executive dashboard shows, stamped with when it was computed"""
        overview = {
            "kpis": cls.dashboard_kpis(session),
            "systemHealth": cls.system_health(session),
            "riskSummary": cls.risk_summary(session),
            "complianceSummary": cls.compliance_summary(session),
            "timestamp": to_iso(now or get_naive_utc_now()),
        }
        logger.info(
            f"📈 EXECUTIVE_KPIS: users={overview['kpis']['totalUsers']} "
            f"open_tickets={overview['kpis']['openTickets']} "
            f"pending_wallet_ops={overview['systemHealth']['pendingWalletOps']}"
        )
        return overview

    @classmethod
    def latest_treasury_report(cls, session: Session) -> TreasuryReport:
        """Most recent treasury report by report date"""
        report = (
            session.query(TreasuryReport)
            .order_by(TreasuryReport.report_date.desc(), TreasuryReport.created_at.desc())
            .first()
        )
        if report is None:
            raise EntityNotFoundError("treasury_reports", "latest")
        return report
