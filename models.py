"""
Exchange BMS (Business Management System) - Database Schema
===========================================================

Internal admin/ops tables for the exchange back office:
- Executive dashboards and board reporting
- KYC workflows and user segmentation
- Wallet operations (multi-approver treasury movements) and treasury reports
- Trading pair controls and risk monitoring
- Compliance reports, audit logs and legal documents
- Support tickets, customer profiles, affiliates, invoicing
- Security incidents/alerts, custom dashboards, staff directory

Rows are never physically deleted; soft state lives in status / is_active.

Column ``info`` carries the metadata the insert validator is generated from:
``enum`` (closed value set), ``min``/``max`` (integer range), ``shape``
(JSON list or dict), ``internal`` (never accepted from callers) and
``workflow`` (owned by a state machine or workflow service: a new row only
ever carries the column default, and generic updates never touch it).
"""

import uuid
from enum import Enum
from typing import Dict, List, Optional, Type

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, func, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development/tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def generate_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class Department(Enum):
    EXECUTIVE = "executive"
    COMPLIANCE = "compliance"
    FINANCE = "finance"
    OPERATIONS = "operations"
    SECURITY = "security"
    SUPPORT = "support"
    LEGAL = "legal"
    HR = "hr"
    MARKETING = "marketing"
    TECH = "tech"


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class WorkflowStatus(Enum):
    """Generic lifecycle shared by most BMS entities"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentSeverity(Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"
    CATASTROPHIC = "catastrophic"


class KycStage(Enum):
    """KYC verification stages, verified strictly in declaration order"""
    EMAIL = "email"
    PHONE = "phone"
    IDENTITY = "identity"
    ADDRESS = "address"


class TicketStatus(Enum):
    OPEN = "open"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


class IncidentStatus(Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    CONTAINED = "contained"
    RESOLVED = "resolved"


class SecurityAlertStatus(Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class InvoiceStatus(Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class AffiliatePaymentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class StaffStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TERMINATED = "terminated"


class WalletType(Enum):
    HOT = "hot"
    COLD = "cold"
    MULTISIG = "multisig"


class WalletOperationType(Enum):
    SWEEP = "sweep"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    RECONCILIATION = "reconciliation"


class ComplianceReportType(Enum):
    """Regulatory report types; every one carries a filing deadline"""
    SAR = "sar"
    STR = "str"
    CTR = "ctr"
    FBAR = "fbar"


class SenderType(Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


def enum_values(enum_cls: Type[Enum]) -> List[str]:
    return [member.value for member in enum_cls]


def _in_check(column_name: str, enum_cls: Type[Enum], name: str) -> CheckConstraint:
    allowed = ", ".join(f"'{v}'" for v in enum_values(enum_cls))
    return CheckConstraint(f"{column_name} IN ({allowed})", name=name)


# ============================================================================
# A. EXECUTIVE MANAGEMENT & DASHBOARDS
# ============================================================================

class ExecutiveDashboard(Base):
    """Per-executive dashboard configuration"""
    __tablename__ = "executive_dashboards"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, index=True)
    dashboard_type = Column(String(50), nullable=False)  # ceo, coo, cto, board
    widgets = Column(JSONType, nullable=False, default=list, info={"shape": "list"})
    kpi_preferences = Column(JSONType, nullable=False, default=dict, info={"shape": "dict"})
    refresh_interval = Column(Integer, default=30, info={"min": 1})  # seconds
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)


class BoardReport(Base):
    __tablename__ = "board_reports"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    report_type = Column(String(50), nullable=False)  # monthly, quarterly, annual
    period = Column(String(20), nullable=False)  # 2024-Q1
    financial_data = Column(JSONType, nullable=False, info={"shape": "dict"})
    compliance_status = Column(JSONType, nullable=False, info={"shape": "dict"})
    risk_metrics = Column(JSONType, nullable=False, info={"shape": "dict"})
    kpi_summary = Column(JSONType, nullable=False, info={"shape": "dict"})
    generated_by = Column(String(255), nullable=False)
    approved_by = Column(String(255), nullable=True)
    status = Column(String(20), default=WorkflowStatus.PENDING.value, nullable=False,
                    info={"workflow": True, "enum": WorkflowStatus})
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    approved_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})

    __table_args__ = (
        _in_check("status", WorkflowStatus, "ck_board_reports_status"),
        Index("ix_board_reports_period", "period"),
    )


# ============================================================================
# B. USER LIFECYCLE & KYC
# ============================================================================

class KycWorkflow(Base):
    """Staged KYC verification for one user"""
    __tablename__ = "kyc_workflows"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False)
    current_stage = Column(String(20), default=KycStage.EMAIL.value, nullable=False,
                           info={"workflow": True, "enum": KycStage})
    kyc_level = Column(Integer, default=0, nullable=False, info={"workflow": True, "min": 0, "max": 3})
    risk_score = Column(Numeric(5, 2), nullable=True, info={"workflow": True, "min": 0, "max": 100})
    risk_level = Column(String(20), default=RiskLevel.LOW.value, nullable=False,
                        info={"workflow": True, "enum": RiskLevel})
    documents = Column(JSONType, default=list, info={"shape": "list"})
    verification_results = Column(JSONType, default=dict, info={"workflow": True, "shape": "dict"})
    aml_flags = Column(JSONType, default=list, info={"workflow": True, "shape": "list"})
    sanctions_check = Column(JSONType, default=dict, info={"workflow": True, "shape": "dict"})
    pep_check = Column(JSONType, default=dict, info={"workflow": True, "shape": "dict"})
    assigned_reviewer = Column(String(255), nullable=True)
    review_notes = Column(Text, nullable=True)
    approved_by = Column(String(255), nullable=True, info={"workflow": True})
    rejected_reason = Column(Text, nullable=True, info={"workflow": True})
    status = Column(String(20), default=WorkflowStatus.PENDING.value, nullable=False,
                    info={"workflow": True, "enum": WorkflowStatus})
    expires_at = Column(DateTime(timezone=False), nullable=True)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Optimistic locking against concurrent reviewer actions
    version = Column(Integer, nullable=False, default=1, info={"internal": True})

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        _in_check("current_stage", KycStage, "ck_kyc_workflows_stage"),
        _in_check("risk_level", RiskLevel, "ck_kyc_workflows_risk_level"),
        _in_check("status", WorkflowStatus, "ck_kyc_workflows_status"),
        CheckConstraint("kyc_level >= 0 AND kyc_level <= 3", name="ck_kyc_workflows_level_range"),
        CheckConstraint(
            "NOT (status = 'completed' AND risk_level = 'critical' AND approved_by IS NULL)",
            name="ck_kyc_workflows_critical_approval",
        ),
        Index("ix_kyc_workflows_user", "user_id"),
        Index("ix_kyc_workflows_status", "status"),
    )

    def __repr__(self):
        return (
            f"<KycWorkflow(id={self.id}, user_id={self.user_id}, stage={self.current_stage}, "
            f"level={self.kyc_level}, status={self.status})>"
        )


class UserSegment(Base):
    __tablename__ = "user_segments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, index=True)
    segment_type = Column(String(50), nullable=False)  # vip, retail, business, high_risk
    tier_level = Column(Integer, default=1, info={"min": 1})
    trading_volume_30d = Column(Numeric(18, 8), nullable=True, info={"min": 0})
    deposit_amount_30d = Column(Numeric(18, 2), nullable=True, info={"min": 0})
    risk_flags = Column(JSONType, default=list, info={"shape": "list"})
    special_notes = Column(Text, nullable=True)
    assigned_manager = Column(String(255), nullable=True)
    last_review_date = Column(DateTime(timezone=False), nullable=True)
    next_review_date = Column(DateTime(timezone=False), nullable=True)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)


# ============================================================================
# C. WALLET & TREASURY
# ============================================================================

class WalletOperation(Base):
    """Treasury movement gated by an approval quorum and on-chain confirmations"""
    __tablename__ = "wallet_operations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    wallet_type = Column(String(20), nullable=False, info={"enum": WalletType})
    asset = Column(String(20), nullable=False)
    operation_type = Column(String(20), nullable=False, info={"enum": WalletOperationType})
    amount = Column(Numeric(18, 8), nullable=False, info={"min": 0, "exclusive_min": True})
    source_address = Column(String(255), nullable=True)
    destination_address = Column(String(255), nullable=True)
    transaction_hash = Column(String(255), nullable=True, info={"workflow": True})
    block_number = Column(Integer, nullable=True, info={"workflow": True, "min": 0})
    confirmations = Column(Integer, default=0, nullable=False, info={"workflow": True, "min": 0})
    required_confirmations = Column(Integer, default=6, nullable=False, info={"min": 0})
    required_approvals = Column(Integer, default=1, nullable=False, info={"min": 1})
    current_approvals = Column(Integer, default=0, nullable=False, info={"workflow": True, "min": 0})
    approvers = Column(JSONType, default=list, info={"workflow": True, "shape": "list"})
    fees = Column(Numeric(18, 8), nullable=True, info={"min": 0})
    status = Column(String(20), default=WorkflowStatus.PENDING.value, nullable=False,
                    info={"workflow": True, "enum": WorkflowStatus})
    scheduled_for = Column(DateTime(timezone=False), nullable=True)
    executed_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})
    executed_by = Column(String(255), nullable=True, info={"workflow": True})
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    # Two reviewers approving at once must not lose an approval
    version = Column(Integer, nullable=False, default=1, info={"internal": True})

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        _in_check("wallet_type", WalletType, "ck_wallet_operations_wallet_type"),
        _in_check("operation_type", WalletOperationType, "ck_wallet_operations_type"),
        _in_check("status", WorkflowStatus, "ck_wallet_operations_status"),
        CheckConstraint("amount > 0", name="ck_wallet_operations_amount_positive"),
        CheckConstraint("current_approvals >= 0", name="ck_wallet_operations_approvals_positive"),
        CheckConstraint("confirmations >= 0", name="ck_wallet_operations_confirmations_positive"),
        CheckConstraint(
            "status != 'completed' OR current_approvals >= required_approvals",
            name="ck_wallet_operations_quorum_before_completion",
        ),
        Index("ix_wallet_operations_status", "status"),
        Index("ix_wallet_operations_asset", "asset"),
        Index("ix_wallet_operations_created_by", "created_by"),
    )

    def __repr__(self):
        return (
            f"<WalletOperation(id={self.id}, {self.operation_type} {self.amount} {self.asset}, "
            f"approvals={self.current_approvals}/{self.required_approvals}, status={self.status})>"
        )


class TreasuryReport(Base):
    __tablename__ = "treasury_reports"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    report_date = Column(DateTime(timezone=False), nullable=False)
    total_assets = Column(JSONType, nullable=False, info={"shape": "dict"})  # {BTC: "123.45"}
    hot_wallet_balances = Column(JSONType, nullable=False, info={"shape": "dict"})
    cold_wallet_balances = Column(JSONType, nullable=False, info={"shape": "dict"})
    customer_liabilities = Column(JSONType, nullable=False, info={"shape": "dict"})
    reserve_ratio = Column(Numeric(5, 4), nullable=True, info={"min": 0})  # 1.05 = 105%
    proof_of_reserves_hash = Column(String(255), nullable=True)
    reconciliation_status = Column(String(20), default=WorkflowStatus.PENDING.value, nullable=False,
                                   info={"workflow": True, "enum": WorkflowStatus})
    discrepancies = Column(JSONType, default=list, info={"shape": "list"})
    generated_by = Column(String(255), nullable=False)
    verified_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    __table_args__ = (
        _in_check("reconciliation_status", WorkflowStatus, "ck_treasury_reports_reconciliation"),
    )


# ============================================================================
# D. TRADING OPERATIONS & RISK CONTROLS
# ============================================================================

class TradingPairControl(Base):
    __tablename__ = "trading_pair_controls"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    symbol = Column(String(50), nullable=False, index=True)  # BTC/USDT
    base_asset = Column(String(20), nullable=False)
    quote_asset = Column(String(20), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    tick_size = Column(Numeric(18, 8), nullable=True, info={"min": 0})
    min_order_size = Column(Numeric(18, 8), nullable=True, info={"min": 0})
    max_order_size = Column(Numeric(18, 8), nullable=True, info={"min": 0})
    circuit_breaker_upper = Column(Numeric(5, 4), nullable=True)  # 1.10 = 10% up
    circuit_breaker_lower = Column(Numeric(5, 4), nullable=True)  # 0.90 = 10% down
    trading_fees = Column(JSONType, nullable=False, info={"shape": "dict"})  # {maker: 0.001, taker: 0.002}
    liquidity_providers = Column(JSONType, default=list, info={"shape": "list"})
    risk_limits = Column(JSONType, default=dict, info={"shape": "dict"})
    last_updated_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)


class RiskMonitoring(Base):
    __tablename__ = "risk_monitoring"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    monitoring_type = Column(String(50), nullable=False)  # position, concentration, liquidity, market
    symbol = Column(String(50), nullable=True)
    risk_metric = Column(String(50), nullable=False)  # var, concentration, leverage
    current_value = Column(Numeric(18, 8), nullable=True)
    threshold = Column(Numeric(18, 8), nullable=True)
    risk_level = Column(String(20), default=RiskLevel.LOW.value, nullable=False, info={"enum": RiskLevel})
    alert_triggered = Column(Boolean, default=False, nullable=False)
    alert_message = Column(Text, nullable=True)
    assigned_to = Column(String(255), nullable=True)
    resolved_by = Column(String(255), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    status = Column(String(20), default=WorkflowStatus.PENDING.value, nullable=False,
                    info={"workflow": True, "enum": WorkflowStatus})
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})

    __table_args__ = (
        _in_check("risk_level", RiskLevel, "ck_risk_monitoring_risk_level"),
        _in_check("status", WorkflowStatus, "ck_risk_monitoring_status"),
    )


# ============================================================================
# E. COMPLIANCE & LEGAL
# ============================================================================

class ComplianceReport(Base):
    """Regulatory filing (SAR/STR/CTR/FBAR); filed_at is write-once"""
    __tablename__ = "compliance_reports"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    report_type = Column(String(10), nullable=False, info={"enum": ComplianceReportType})
    jurisdiction = Column(String(50), nullable=False)
    user_id = Column(String(255), nullable=True)
    transaction_ids = Column(JSONType, default=list, info={"shape": "list"})
    suspicious_activity = Column(Text, nullable=False)
    investigation_notes = Column(Text, nullable=True)
    risk_score = Column(Numeric(5, 2), nullable=True, info={"min": 0, "max": 100})
    filed_with = Column(String(255), nullable=True, info={"workflow": True})  # regulatory body
    filing_reference = Column(String(255), nullable=True, info={"workflow": True})
    filed_by = Column(String(255), nullable=False)
    approved_by = Column(String(255), nullable=True)
    due_date = Column(DateTime(timezone=False), nullable=True)
    filed_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True, "write_once": True})
    status = Column(String(20), default=WorkflowStatus.PENDING.value, nullable=False,
                    info={"workflow": True, "enum": WorkflowStatus})
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    __table_args__ = (
        _in_check("report_type", ComplianceReportType, "ck_compliance_reports_type"),
        _in_check("status", WorkflowStatus, "ck_compliance_reports_status"),
        CheckConstraint("due_date IS NOT NULL", name="ck_compliance_reports_due_date"),
        Index("ix_compliance_reports_user", "user_id"),
        Index("ix_compliance_reports_due", "due_date"),
    )

    def __repr__(self):
        return f"<ComplianceReport(id={self.id}, type={self.report_type}, filed_at={self.filed_at})>"


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False)
    action = Column(String(100), nullable=False)  # login, trade, withdrawal, admin_action
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(255), nullable=True)
    details = Column(JSONType, nullable=False, info={"shape": "dict"})
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    session_id = Column(String(255), nullable=True)
    department = Column(String(20), nullable=True, info={"enum": Department})
    risk_level = Column(String(20), default=RiskLevel.LOW.value, nullable=False, info={"enum": RiskLevel})
    flagged = Column(Boolean, default=False, nullable=False)
    reviewed_by = Column(String(255), nullable=True)
    review_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    __table_args__ = (
        _in_check("department", Department, "ck_audit_logs_department"),
        _in_check("risk_level", RiskLevel, "ck_audit_logs_risk_level"),
        Index("ix_audit_logs_user_created", "user_id", "created_at"),
    )


class LegalDocument(Base):
    __tablename__ = "legal_documents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    document_type = Column(String(50), nullable=False)  # tos, privacy, aml, risk_disclosure
    title = Column(String(255), nullable=False)
    version = Column(String(50), nullable=False)
    content = Column(Text, nullable=False)
    effective_date = Column(DateTime(timezone=False), nullable=False)
    expiry_date = Column(DateTime(timezone=False), nullable=True)
    approved_by = Column(String(255), nullable=True)
    jurisdictions = Column(JSONType, default=list, info={"shape": "list"})  # ["US", "EU", "UK"]
    is_active = Column(Boolean, default=True, nullable=False)
    previous_version_id = Column(String(36), ForeignKey("legal_documents.id"), nullable=True,
                                 info={"uuid": True})
    digital_signature = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    approved_at = Column(DateTime(timezone=False), nullable=True)


# ============================================================================
# F. CRM & SUPPORT
# ============================================================================

class SupportTicket(Base):
    """Customer support ticket with SLA tracking"""
    __tablename__ = "support_tickets"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    ticket_number = Column(String(50), nullable=False, unique=True)
    user_id = Column(String(255), nullable=False)
    category = Column(String(50), nullable=False)  # account, trading, technical, compliance
    subcategory = Column(String(50), nullable=True)
    priority = Column(String(20), default=Priority.MEDIUM.value, nullable=False, info={"enum": Priority})
    severity = Column(String(20), default=Priority.LOW.value, nullable=False, info={"enum": Priority})
    subject = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), default=TicketStatus.OPEN.value, nullable=False,
                    info={"workflow": True, "enum": TicketStatus})
    assigned_to = Column(String(255), nullable=True)
    assigned_team = Column(String(20), nullable=True, info={"enum": Department})
    escalation_level = Column(Integer, default=0, nullable=False, info={"min": 0})
    sla_deadline = Column(DateTime(timezone=False), nullable=True)
    first_response_time = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})
    resolution_time = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})
    customer_satisfaction = Column(Integer, nullable=True, info={"min": 1, "max": 5})
    tags = Column(JSONType, default=list, info={"shape": "list"})
    attachments = Column(JSONType, default=list, info={"shape": "list"})
    internal_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})

    messages = relationship(
        "TicketMessage", back_populates="ticket", order_by="TicketMessage.created_at"
    )

    __table_args__ = (
        _in_check("priority", Priority, "ck_support_tickets_priority"),
        _in_check("severity", Priority, "ck_support_tickets_severity"),
        _in_check("status", TicketStatus, "ck_support_tickets_status"),
        _in_check("assigned_team", Department, "ck_support_tickets_team"),
        CheckConstraint(
            "customer_satisfaction IS NULL OR (customer_satisfaction >= 1 AND customer_satisfaction <= 5)",
            name="ck_support_tickets_satisfaction_range",
        ),
        Index("ix_support_tickets_user", "user_id"),
        Index("ix_support_tickets_status", "status"),
        Index("ix_support_tickets_sla", "sla_deadline"),
    )

    def __repr__(self):
        return f"<SupportTicket(id={self.id}, number={self.ticket_number}, status={self.status})>"


class TicketMessage(Base):
    """Messages in support tickets"""
    __tablename__ = "ticket_messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    ticket_id = Column(String(36), ForeignKey("support_tickets.id"), nullable=False, info={"uuid": True})
    sender_id = Column(String(255), nullable=False)
    sender_type = Column(String(20), nullable=False, info={"enum": SenderType})
    message = Column(Text, nullable=False)
    is_internal = Column(Boolean, default=False, nullable=False)
    attachments = Column(JSONType, default=list, info={"shape": "list"})
    read_by = Column(JSONType, default=list, info={"shape": "list"})
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    ticket = relationship("SupportTicket", back_populates="messages")

    __table_args__ = (
        _in_check("sender_type", SenderType, "ck_ticket_messages_sender_type"),
        Index("ix_ticket_messages_ticket", "ticket_id"),
    )


class CustomerProfile(Base):
    __tablename__ = "customer_profiles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, index=True)
    customer_tier = Column(String(20), default="standard", nullable=False)  # standard, premium, vip, enterprise
    lifetime_value = Column(Numeric(18, 2), nullable=True)
    total_trading_volume = Column(Numeric(18, 8), nullable=True, info={"min": 0})
    average_monthly_volume = Column(Numeric(18, 8), nullable=True, info={"min": 0})
    risk_profile = Column(String(20), default=RiskLevel.LOW.value, nullable=False, info={"enum": RiskLevel})
    preferred_communication = Column(String(20), default="email", nullable=False)  # email, sms, phone
    relationship_manager = Column(String(255), nullable=True)
    onboarding_date = Column(DateTime(timezone=False), nullable=True)
    last_activity_date = Column(DateTime(timezone=False), nullable=True)
    special_requirements = Column(Text, nullable=True)
    compliance_notes = Column(Text, nullable=True)
    marketing_opt_in = Column(Boolean, default=False, nullable=False)
    vip_status = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        _in_check("risk_profile", RiskLevel, "ck_customer_profiles_risk_profile"),
    )


# ============================================================================
# G. AFFILIATES & PARTNERSHIPS
# ============================================================================

class AffiliateProgram(Base):
    __tablename__ = "affiliate_programs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    program_name = Column(String(255), nullable=False)
    program_type = Column(String(50), nullable=False)  # referral, partner, influencer, institutional
    commission_structure = Column(JSONType, nullable=False, info={"shape": "dict"})  # {type: "percentage", rate: 0.3}
    eligibility_criteria = Column(JSONType, default=dict, info={"shape": "dict"})
    payment_schedule = Column(String(20), default="monthly", nullable=False)  # weekly, monthly, quarterly
    minimum_payout = Column(Numeric(18, 2), default=100, nullable=False, info={"min": 0})
    tracking_method = Column(String(20), default="code", nullable=False)  # code, link, email
    is_active = Column(Boolean, default=True, nullable=False)
    start_date = Column(DateTime(timezone=False), nullable=True)
    end_date = Column(DateTime(timezone=False), nullable=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    conversions = relationship("AffiliateTracking", back_populates="program")


class AffiliateTracking(Base):
    """One referral conversion and its commission ledger"""
    __tablename__ = "affiliate_tracking"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    affiliate_id = Column(String(255), nullable=False)
    program_id = Column(String(36), ForeignKey("affiliate_programs.id"), nullable=False, info={"uuid": True})
    referred_user_id = Column(String(255), nullable=True)
    referral_code = Column(String(100), nullable=True)
    referral_source = Column(String(20), nullable=True)  # link, code, email
    conversion_type = Column(String(20), nullable=True)  # signup, deposit, trade, kyc
    conversion_value = Column(Numeric(18, 2), nullable=True, info={"min": 0})
    commission_earned = Column(Numeric(18, 2), default=0, nullable=False, info={"min": 0})
    commission_paid = Column(Numeric(18, 2), default=0, nullable=False, info={"workflow": True, "min": 0})
    payment_status = Column(String(20), default=AffiliatePaymentStatus.PENDING.value, nullable=False,
                            info={"workflow": True, "enum": AffiliatePaymentStatus})
    fraud_score = Column(Numeric(5, 2), nullable=True, info={"min": 0, "max": 100})
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    paid_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})

    program = relationship("AffiliateProgram", back_populates="conversions")

    __table_args__ = (
        _in_check("payment_status", AffiliatePaymentStatus, "ck_affiliate_tracking_payment_status"),
        CheckConstraint("commission_paid >= 0", name="ck_affiliate_tracking_paid_positive"),
        CheckConstraint("commission_paid <= commission_earned", name="ck_affiliate_tracking_paid_within_earned"),
        Index("ix_affiliate_tracking_affiliate", "affiliate_id"),
        Index("ix_affiliate_tracking_program", "program_id"),
    )

    def __repr__(self):
        return (
            f"<AffiliateTracking(id={self.id}, affiliate={self.affiliate_id}, "
            f"paid={self.commission_paid}/{self.commission_earned})>"
        )


# ============================================================================
# H. FINANCE & ACCOUNTING
# ============================================================================

class RevenueReport(Base):
    __tablename__ = "revenue_reports"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    report_period = Column(String(20), nullable=False)  # 2024-01, 2024-Q1
    trading_fees = Column(Numeric(18, 2), nullable=True)
    withdrawal_fees = Column(Numeric(18, 2), nullable=True)
    deposit_fees = Column(Numeric(18, 2), nullable=True)
    affiliate_commissions = Column(Numeric(18, 2), nullable=True)
    otc_revenue = Column(Numeric(18, 2), nullable=True)
    staking_revenue = Column(Numeric(18, 2), nullable=True)
    listing_fees = Column(Numeric(18, 2), nullable=True)
    total_revenue = Column(Numeric(18, 2), nullable=True)
    revenue_by_asset = Column(JSONType, default=dict, info={"shape": "dict"})
    revenue_by_region = Column(JSONType, default=dict, info={"shape": "dict"})
    operating_expenses = Column(Numeric(18, 2), nullable=True)
    net_profit = Column(Numeric(18, 2), nullable=True)
    generated_by = Column(String(255), nullable=False)
    verified_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    verified_at = Column(DateTime(timezone=False), nullable=True)


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    invoice_number = Column(String(50), nullable=False, unique=True)
    client_id = Column(String(255), nullable=False)
    client_type = Column(String(50), nullable=False)  # otc, institutional, partner, vendor
    invoice_type = Column(String(50), nullable=False)  # trading_fees, otc_commission, service_fee
    amount = Column(Numeric(18, 2), nullable=False, info={"min": 0})
    currency = Column(String(10), default="USD", nullable=False)
    tax_amount = Column(Numeric(18, 2), nullable=True, info={"min": 0})
    total_amount = Column(Numeric(18, 2), nullable=False, info={"min": 0})
    description = Column(Text, nullable=True)
    line_items = Column(JSONType, default=list, info={"shape": "list"})
    payment_terms = Column(String(20), default="NET30", nullable=False)  # NET15, NET30, DUE_ON_RECEIPT
    due_date = Column(DateTime(timezone=False), nullable=False)
    status = Column(String(20), default=InvoiceStatus.DRAFT.value, nullable=False,
                    info={"workflow": True, "enum": InvoiceStatus})
    paid_amount = Column(Numeric(18, 2), default=0, nullable=False, info={"workflow": True, "min": 0})
    payment_method = Column(String(50), nullable=True, info={"workflow": True})
    payment_reference = Column(String(255), nullable=True, info={"workflow": True})
    issued_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    sent_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})
    paid_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})

    __table_args__ = (
        _in_check("status", InvoiceStatus, "ck_invoices_status"),
        CheckConstraint("total_amount >= amount", name="ck_invoices_total_covers_amount"),
        Index("ix_invoices_client", "client_id"),
        Index("ix_invoices_status_due", "status", "due_date"),
    )


# ============================================================================
# I. SECURITY & INCIDENTS
# ============================================================================

class SecurityIncident(Base):
    """Incident lifecycle; detected_at <= contained_at <= resolved_at"""
    __tablename__ = "security_incidents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    incident_type = Column(String(50), nullable=False)  # breach, ddos, fraud, suspicious_activity
    severity = Column(String(20), default=IncidentSeverity.MINOR.value, nullable=False,
                      info={"enum": IncidentSeverity})
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    affected_systems = Column(JSONType, default=list, info={"shape": "list"})
    affected_users = Column(JSONType, default=list, info={"shape": "list"})
    detected_by = Column(String(50), nullable=True)  # system, user, external
    detection_method = Column(String(255), nullable=True)
    assigned_to = Column(String(255), nullable=True)
    escalation_level = Column(Integer, default=0, nullable=False, info={"min": 0})
    status = Column(String(20), default=IncidentStatus.OPEN.value, nullable=False,
                    info={"workflow": True, "enum": IncidentStatus})
    risk_level = Column(String(20), default=RiskLevel.MEDIUM.value, nullable=False, info={"enum": RiskLevel})
    estimated_impact = Column(Text, nullable=True)
    containment_actions = Column(Text, nullable=True)
    root_cause = Column(Text, nullable=True)
    remediation_steps = Column(Text, nullable=True)
    lessons_learned = Column(Text, nullable=True)
    reported_to_regulator = Column(Boolean, default=False, nullable=False)
    reported_to_law_enforcement = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    detected_at = Column(DateTime(timezone=False), nullable=True)
    contained_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})
    resolved_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})

    __table_args__ = (
        _in_check("severity", IncidentSeverity, "ck_security_incidents_severity"),
        _in_check("status", IncidentStatus, "ck_security_incidents_status"),
        _in_check("risk_level", RiskLevel, "ck_security_incidents_risk_level"),
        CheckConstraint(
            "contained_at IS NULL OR detected_at IS NULL OR contained_at >= detected_at",
            name="ck_security_incidents_contained_after_detected",
        ),
        CheckConstraint(
            "resolved_at IS NULL OR contained_at IS NULL OR resolved_at >= contained_at",
            name="ck_security_incidents_resolved_after_contained",
        ),
        Index("ix_security_incidents_status", "status"),
        Index("ix_security_incidents_severity", "severity"),
    )

    def __repr__(self):
        return f"<SecurityIncident(id={self.id}, severity={self.severity}, status={self.status})>"


class SecurityAlert(Base):
    __tablename__ = "security_alerts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    alert_type = Column(String(50), nullable=False)  # login_anomaly, brute_force, suspicious_transaction
    severity = Column(String(20), default=Priority.LOW.value, nullable=False, info={"enum": Priority})
    user_id = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    description = Column(Text, nullable=False)
    risk_score = Column(Numeric(5, 2), nullable=True, info={"min": 0, "max": 100})
    detection_rules = Column(JSONType, default=list, info={"shape": "list"})
    raw_data = Column(JSONType, default=dict, info={"shape": "dict"})
    is_auto_resolved = Column(Boolean, default=False, nullable=False)
    assigned_to = Column(String(255), nullable=True)
    investigation_notes = Column(Text, nullable=True)
    resolution = Column(Text, nullable=True)
    status = Column(String(20), default=SecurityAlertStatus.OPEN.value, nullable=False,
                    info={"workflow": True, "enum": SecurityAlertStatus})
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    acknowledged_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})
    resolved_at = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})

    __table_args__ = (
        _in_check("severity", Priority, "ck_security_alerts_severity"),
        _in_check("status", SecurityAlertStatus, "ck_security_alerts_status"),
        Index("ix_security_alerts_status", "status"),
    )


# ============================================================================
# J. ANALYTICS & REPORTING
# ============================================================================

class CustomDashboard(Base):
    __tablename__ = "custom_dashboards"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, index=True)
    dashboard_name = Column(String(255), nullable=False)
    department = Column(String(20), nullable=True, info={"enum": Department})
    layout = Column(JSONType, nullable=False, info={"shape": "dict"})
    data_filters = Column(JSONType, default=dict, info={"shape": "dict"})
    refresh_interval = Column(Integer, default=300, info={"min": 1})  # seconds
    is_public = Column(Boolean, default=False, nullable=False)
    shared_with = Column(JSONType, default=list, info={"shape": "list"})
    last_viewed_at = Column(DateTime(timezone=False), nullable=True)
    view_count = Column(Integer, default=0, nullable=False, info={"min": 0})
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        _in_check("department", Department, "ck_custom_dashboards_department"),
    )


class SystemAlert(Base):
    __tablename__ = "system_alerts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    alert_name = Column(String(255), nullable=False)
    alert_type = Column(String(50), nullable=False)  # threshold, anomaly, system, business
    department = Column(String(20), nullable=True, info={"enum": Department})
    metric = Column(String(100), nullable=False)  # trading_volume, kyc_backlog, system_latency
    threshold_value = Column(Numeric(18, 8), nullable=True)
    current_value = Column(Numeric(18, 8), nullable=True)
    comparison_operator = Column(String(5), nullable=False)  # gt, lt, eq, gte, lte
    priority = Column(String(20), default=Priority.MEDIUM.value, nullable=False, info={"enum": Priority})
    is_active = Column(Boolean, default=True, nullable=False)
    notification_channels = Column(JSONType, default=list, info={"shape": "list"})
    recipients = Column(JSONType, default=list, info={"shape": "list"})
    escalation_rules = Column(JSONType, default=dict, info={"shape": "dict"})
    suppression_rules = Column(JSONType, default=dict, info={"shape": "dict"})
    last_triggered = Column(DateTime(timezone=False), nullable=True)
    trigger_count = Column(Integer, default=0, nullable=False, info={"min": 0})
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        _in_check("department", Department, "ck_system_alerts_department"),
        _in_check("priority", Priority, "ck_system_alerts_priority"),
    )


# ============================================================================
# K. HR & INTERNAL OPERATIONS
# ============================================================================

class StaffDirectory(Base):
    __tablename__ = "staff_directory"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    employee_id = Column(String(50), nullable=False, unique=True)
    user_id = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    department = Column(String(20), nullable=False, info={"enum": Department})
    position = Column(String(100), nullable=False)
    level = Column(String(20), nullable=True)  # junior, senior, lead, manager, director
    direct_manager = Column(String(255), nullable=True)
    start_date = Column(DateTime(timezone=False), nullable=False)
    end_date = Column(DateTime(timezone=False), nullable=True, info={"workflow": True})
    status = Column(String(20), default=StaffStatus.ACTIVE.value, nullable=False,
                    info={"workflow": True, "enum": StaffStatus})
    access_level = Column(Integer, default=1, nullable=False, info={"min": 1, "max": 5})
    permissions = Column(JSONType, default=list, info={"shape": "list"})
    last_login = Column(DateTime(timezone=False), nullable=True)
    work_location = Column(String(20), nullable=True)  # remote, office, hybrid
    phone_number = Column(String(50), nullable=True)
    emergency_contact = Column(JSONType, default=dict, info={"shape": "dict"})
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        _in_check("department", Department, "ck_staff_directory_department"),
        _in_check("status", StaffStatus, "ck_staff_directory_status"),
        CheckConstraint("access_level >= 1 AND access_level <= 5", name="ck_staff_directory_access_level"),
    )


class PerformanceMetric(Base):
    __tablename__ = "performance_metrics"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    employee_id = Column(String(50), nullable=False, index=True)
    metric_type = Column(String(50), nullable=False)  # kpi, sla, quality, productivity
    metric_name = Column(String(255), nullable=False)
    target_value = Column(Numeric(18, 4), nullable=True)
    actual_value = Column(Numeric(18, 4), nullable=True)
    unit = Column(String(20), nullable=True)  # percentage, number, time, currency
    period = Column(String(20), nullable=False)
    score = Column(Numeric(5, 2), nullable=True)
    notes = Column(Text, nullable=True)
    reviewed_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    reviewed_at = Column(DateTime(timezone=False), nullable=True)


# ============================================================================
# ENTITY REGISTRY
# ============================================================================

ENTITY_MODELS: Dict[str, Type[Base]] = {
    model.__tablename__: model
    for model in (
        ExecutiveDashboard, BoardReport, KycWorkflow, UserSegment,
        WalletOperation, TreasuryReport, TradingPairControl, RiskMonitoring,
        ComplianceReport, AuditLog, LegalDocument, SupportTicket,
        TicketMessage, CustomerProfile, AffiliateProgram, AffiliateTracking,
        RevenueReport, Invoice, SecurityIncident, SecurityAlert,
        CustomDashboard, SystemAlert, StaffDirectory, PerformanceMetric,
    )
}


def normalize_entity_type(entity_type: str) -> str:
    """Accept table names in snake_case or the kebab-case used in URLs"""
    return entity_type.strip().lower().replace("-", "_")


def get_model(entity_type: str) -> Optional[Type[Base]]:
    return ENTITY_MODELS.get(normalize_entity_type(entity_type))
