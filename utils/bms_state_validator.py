"""
BMS State Transition Validators
===============================

Prevents invalid status changes across the BMS entities.

Every validator declares its VALID_TRANSITIONS map, the named EVENTS that
drive it, an optional ``guard`` (business preconditions for entering a state)
and ``on_enter`` (timestamps stamped on the row when a state is entered).

Generic lifecycle shared by most entities:

    pending -> in_progress -> completed
       \\            \\
        +-> cancelled <+

completed and cancelled are terminal, so neither is reachable from the other.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Type

from models import (
    AffiliatePaymentStatus,
    IncidentStatus,
    InvoiceStatus,
    KycStage,
    RiskLevel,
    SecurityAlertStatus,
    StaffStatus,
    TicketStatus,
    WorkflowStatus,
)
from utils.approval_quorum import executable_blocker
from utils.exception_handler import InvalidTransitionError, InvariantViolationError

logger = logging.getLogger(__name__)


class BaseStateValidator:
    """Shared transition checking; subclasses supply the state graph"""

    ENTITY_TYPE = "entity"
    STATUS_FIELD = "status"
    STATUS_ENUM: Type[Enum] = WorkflowStatus
    VALID_TRANSITIONS: Dict[Enum, Set[Enum]] = {}
    EVENTS: Dict[str, Enum] = {}
    # state -> column stamped with the transition time on entry
    TIMESTAMP_ON_ENTER: Dict[Enum, str] = {}

    @classmethod
    def terminal_states(cls) -> Set[Enum]:
        return {state for state, targets in cls.VALID_TRANSITIONS.items() if not targets}

    @classmethod
    def parse_status(cls, value: Any) -> Enum:
        if isinstance(value, cls.STATUS_ENUM):
            return value
        try:
            return cls.STATUS_ENUM(value)
        except ValueError:
            raise InvalidTransitionError(
                cls.ENTITY_TYPE, None, str(value), reason=f"unknown {cls.STATUS_FIELD} value"
            )

    @classmethod
    def validate_transition(
        cls,
        from_status: Any,
        to_status: Any,
        entity_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        entity_ref = f"{cls.ENTITY_TYPE} {entity_id}" if entity_id else cls.ENTITY_TYPE
        current = cls.parse_status(from_status)
        target = cls.parse_status(to_status)

        if current == target:
            return False, f"{entity_ref} is already {current.value}"

        if current in cls.terminal_states():
            return False, f"{entity_ref} is in terminal state {current.value}"

        allowed = cls.VALID_TRANSITIONS.get(current, set())
        if target not in allowed:
            allowed_values = ", ".join(sorted(s.value for s in allowed)) or "none"
            return False, (
                f"{entity_ref}: {current.value} -> {target.value} not allowed "
                f"(allowed: {allowed_values})"
            )

        return True, f"{entity_ref}: {current.value} -> {target.value} is valid"

    @classmethod
    def resolve_event(cls, event: str, current_status: Any = None) -> Enum:
        """Map an event name (or a target status value) to the target state"""
        if event in cls.EVENTS:
            return cls.EVENTS[event]
        try:
            return cls.STATUS_ENUM(event)
        except ValueError:
            current = getattr(current_status, "value", current_status)
            raise InvalidTransitionError(
                cls.ENTITY_TYPE, current, event,
                reason=f"unknown event; expected one of {', '.join(sorted(cls.EVENTS))}",
            )

    @classmethod
    def guard(cls, entity: Any, target: Enum) -> Optional[str]:
        """Return a reason to refuse entering ``target``, or None"""
        return None

    @classmethod
    def on_enter(cls, entity: Any, target: Enum, at: datetime) -> None:
        field_name = cls.TIMESTAMP_ON_ENTER.get(target)
        if field_name and getattr(entity, field_name, None) is None:
            setattr(entity, field_name, at)


class WorkflowStateValidator(BaseStateValidator):
    """pending -> in_progress -> completed, cancel from either live state"""

    ENTITY_TYPE = "workflow"
    VALID_TRANSITIONS = {
        WorkflowStatus.PENDING: {WorkflowStatus.IN_PROGRESS, WorkflowStatus.CANCELLED},
        WorkflowStatus.IN_PROGRESS: {WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED},
        WorkflowStatus.COMPLETED: set(),
        WorkflowStatus.CANCELLED: set(),
    }
    EVENTS = {
        "start": WorkflowStatus.IN_PROGRESS,
        "complete": WorkflowStatus.COMPLETED,
        "cancel": WorkflowStatus.CANCELLED,
    }


class BoardReportStateValidator(WorkflowStateValidator):
    ENTITY_TYPE = "board_reports"
    TIMESTAMP_ON_ENTER = {WorkflowStatus.COMPLETED: "approved_at"}

    @classmethod
    def guard(cls, entity, target):
        if target == WorkflowStatus.COMPLETED and not entity.approved_by:
            return "board report must be approved before completion"
        return None


class RiskMonitoringStateValidator(WorkflowStateValidator):
    ENTITY_TYPE = "risk_monitoring"
    TIMESTAMP_ON_ENTER = {WorkflowStatus.COMPLETED: "resolved_at"}


class TreasuryReconciliationValidator(WorkflowStateValidator):
    ENTITY_TYPE = "treasury_reports"
    STATUS_FIELD = "reconciliation_status"

    @classmethod
    def guard(cls, entity, target):
        if target == WorkflowStatus.COMPLETED and not entity.verified_by:
            return "reconciliation must be verified before completion"
        return None


class ComplianceReportStateValidator(WorkflowStateValidator):
    ENTITY_TYPE = "compliance_reports"

    @classmethod
    def guard(cls, entity, target):
        if target == WorkflowStatus.COMPLETED and entity.filed_at is None:
            return "report must be filed before completion"
        if target == WorkflowStatus.CANCELLED and entity.filed_at is not None:
            return "a filed report cannot be cancelled"
        return None


class WalletOperationStateValidator(WorkflowStateValidator):
    """Completion is execution; the approval quorum gate lives in the approval service"""

    ENTITY_TYPE = "wallet_operations"
    TIMESTAMP_ON_ENTER = {WorkflowStatus.COMPLETED: "executed_at"}

    @classmethod
    def guard(cls, entity, target):
        if target == WorkflowStatus.COMPLETED:
            return executable_blocker(entity)
        return None


class KycStageValidator:
    """
    KYC stages must be verified strictly in order:
    email -> phone -> identity -> address.
    """

    STAGE_ORDER: List[KycStage] = [KycStage.EMAIL, KycStage.PHONE, KycStage.IDENTITY, KycStage.ADDRESS]
    STAGE_LEVEL: Dict[KycStage, int] = {
        KycStage.EMAIL: 1,
        KycStage.PHONE: 1,
        KycStage.IDENTITY: 2,
        KycStage.ADDRESS: 3,
    }

    @staticmethod
    def is_verified(verification_results: Optional[Mapping[str, Any]], stage: KycStage) -> bool:
        entry = (verification_results or {}).get(stage.value)
        return isinstance(entry, Mapping) and entry.get("verified") is True

    @classmethod
    def first_unverified(cls, verification_results: Optional[Mapping[str, Any]]) -> Optional[KycStage]:
        for stage in cls.STAGE_ORDER:
            if not cls.is_verified(verification_results, stage):
                return stage
        return None

    @classmethod
    def next_stage(cls, stage: KycStage) -> KycStage:
        index = cls.STAGE_ORDER.index(stage)
        return cls.STAGE_ORDER[min(index + 1, len(cls.STAGE_ORDER) - 1)]

    @classmethod
    def validate_stage_verification(
        cls, verification_results: Optional[Mapping[str, Any]], stage: Any
    ) -> Tuple[bool, str]:
        try:
            stage = KycStage(getattr(stage, "value", stage))
        except ValueError:
            return False, f"unknown KYC stage {stage!r}"

        if cls.is_verified(verification_results, stage):
            return False, f"stage {stage.value} is already verified"

        pending = cls.first_unverified(verification_results)
        if pending != stage:
            return False, f"stage {pending.value} must be verified before {stage.value}"

        return True, f"stage {stage.value} can be verified"


class KycWorkflowStateValidator(WorkflowStateValidator):
    ENTITY_TYPE = "kyc_workflows"

    @classmethod
    def guard(cls, entity, target):
        if target != WorkflowStatus.COMPLETED:
            return None
        if entity.current_stage != KycStage.ADDRESS.value:
            return f"current stage is {entity.current_stage}, completion requires address"
        if not KycStageValidator.is_verified(entity.verification_results, KycStage.ADDRESS):
            return "address stage has not been verified"
        if entity.risk_level == RiskLevel.CRITICAL.value and not entity.approved_by:
            return "critical-risk workflow requires approved_by before completion"
        return None


class TicketStateValidator(BaseStateValidator):
    """open -> pending -> resolved -> closed, with customer reply and reopen loops"""

    ENTITY_TYPE = "support_tickets"
    STATUS_ENUM = TicketStatus
    VALID_TRANSITIONS = {
        TicketStatus.OPEN: {TicketStatus.PENDING, TicketStatus.RESOLVED},
        TicketStatus.PENDING: {TicketStatus.OPEN, TicketStatus.RESOLVED},
        TicketStatus.RESOLVED: {TicketStatus.CLOSED, TicketStatus.OPEN},
        TicketStatus.CLOSED: set(),
    }
    EVENTS = {
        "await_customer": TicketStatus.PENDING,
        "customer_reply": TicketStatus.OPEN,
        "resolve": TicketStatus.RESOLVED,
        "reopen": TicketStatus.OPEN,
        "close": TicketStatus.CLOSED,
    }

    @classmethod
    def on_enter(cls, entity, target, at):
        if target == TicketStatus.RESOLVED:
            entity.resolved_at = at
            entity.resolution_time = at
        elif target == TicketStatus.OPEN and entity.resolved_at is not None:
            # reopened
            entity.resolved_at = None
            entity.resolution_time = None


class IncidentStateValidator(BaseStateValidator):
    """Strict open -> investigating -> contained -> resolved"""

    ENTITY_TYPE = "security_incidents"
    STATUS_ENUM = IncidentStatus
    VALID_TRANSITIONS = {
        IncidentStatus.OPEN: {IncidentStatus.INVESTIGATING},
        IncidentStatus.INVESTIGATING: {IncidentStatus.CONTAINED},
        IncidentStatus.CONTAINED: {IncidentStatus.RESOLVED},
        IncidentStatus.RESOLVED: set(),
    }
    EVENTS = {
        "investigate": IncidentStatus.INVESTIGATING,
        "contain": IncidentStatus.CONTAINED,
        "resolve": IncidentStatus.RESOLVED,
    }
    TIMESTAMP_ON_ENTER = {
        IncidentStatus.CONTAINED: "contained_at",
        IncidentStatus.RESOLVED: "resolved_at",
    }
    TIMESTAMP_ORDER = ("detected_at", "contained_at", "resolved_at")

    @classmethod
    def on_enter(cls, entity, target, at):
        field_name = cls.TIMESTAMP_ON_ENTER.get(target)
        if field_name is None:
            return
        position = cls.TIMESTAMP_ORDER.index(field_name)
        for earlier in reversed(cls.TIMESTAMP_ORDER[:position]):
            previous = getattr(entity, earlier)
            if previous is not None:
                if at < previous:
                    raise InvariantViolationError(
                        f"security incident {entity.id}: {field_name} {at.isoformat()} "
                        f"precedes {earlier} {previous.isoformat()}"
                    )
                break
        setattr(entity, field_name, at)


class SecurityAlertStateValidator(BaseStateValidator):
    ENTITY_TYPE = "security_alerts"
    STATUS_ENUM = SecurityAlertStatus
    VALID_TRANSITIONS = {
        SecurityAlertStatus.OPEN: {
            SecurityAlertStatus.INVESTIGATING,
            SecurityAlertStatus.RESOLVED,
            SecurityAlertStatus.FALSE_POSITIVE,
        },
        SecurityAlertStatus.INVESTIGATING: {SecurityAlertStatus.RESOLVED, SecurityAlertStatus.FALSE_POSITIVE},
        SecurityAlertStatus.RESOLVED: set(),
        SecurityAlertStatus.FALSE_POSITIVE: set(),
    }
    EVENTS = {
        "investigate": SecurityAlertStatus.INVESTIGATING,
        "resolve": SecurityAlertStatus.RESOLVED,
        "dismiss": SecurityAlertStatus.FALSE_POSITIVE,
    }
    TIMESTAMP_ON_ENTER = {
        SecurityAlertStatus.INVESTIGATING: "acknowledged_at",
        SecurityAlertStatus.RESOLVED: "resolved_at",
        SecurityAlertStatus.FALSE_POSITIVE: "resolved_at",
    }


class InvoiceStateValidator(BaseStateValidator):
    ENTITY_TYPE = "invoices"
    STATUS_ENUM = InvoiceStatus
    VALID_TRANSITIONS = {
        InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.CANCELLED},
        InvoiceStatus.SENT: {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED},
        InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
        InvoiceStatus.PAID: set(),
        InvoiceStatus.CANCELLED: set(),
    }
    EVENTS = {
        "send": InvoiceStatus.SENT,
        "pay": InvoiceStatus.PAID,
        "mark_overdue": InvoiceStatus.OVERDUE,
        "cancel": InvoiceStatus.CANCELLED,
    }
    TIMESTAMP_ON_ENTER = {
        InvoiceStatus.SENT: "sent_at",
        InvoiceStatus.PAID: "paid_at",
    }

    @classmethod
    def on_enter(cls, entity, target, at):
        super().on_enter(entity, target, at)
        if target == InvoiceStatus.PAID and (entity.paid_amount or 0) < entity.total_amount:
            entity.paid_amount = entity.total_amount


class StaffStateValidator(BaseStateValidator):
    ENTITY_TYPE = "staff_directory"
    STATUS_ENUM = StaffStatus
    VALID_TRANSITIONS = {
        StaffStatus.ACTIVE: {StaffStatus.INACTIVE, StaffStatus.TERMINATED},
        StaffStatus.INACTIVE: {StaffStatus.ACTIVE, StaffStatus.TERMINATED},
        StaffStatus.TERMINATED: set(),
    }
    EVENTS = {
        "activate": StaffStatus.ACTIVE,
        "deactivate": StaffStatus.INACTIVE,
        "terminate": StaffStatus.TERMINATED,
    }
    TIMESTAMP_ON_ENTER = {StaffStatus.TERMINATED: "end_date"}


class AffiliatePaymentStateValidator(BaseStateValidator):
    ENTITY_TYPE = "affiliate_tracking"
    STATUS_FIELD = "payment_status"
    STATUS_ENUM = AffiliatePaymentStatus
    VALID_TRANSITIONS = {
        AffiliatePaymentStatus.PENDING: {AffiliatePaymentStatus.PAID, AffiliatePaymentStatus.CANCELLED},
        AffiliatePaymentStatus.PAID: set(),
        AffiliatePaymentStatus.CANCELLED: set(),
    }
    EVENTS = {
        "mark_paid": AffiliatePaymentStatus.PAID,
        "cancel": AffiliatePaymentStatus.CANCELLED,
    }
    TIMESTAMP_ON_ENTER = {AffiliatePaymentStatus.PAID: "paid_at"}

    @classmethod
    def guard(cls, entity, target):
        if target == AffiliatePaymentStatus.PAID:
            earned = entity.commission_earned or 0
            if (entity.commission_paid or 0) < earned or earned == 0:
                return "commission is not fully paid"
        return None
