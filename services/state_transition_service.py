"""
State Transition Service
========================

Centralized service for validating and executing status transitions across
all BMS entity types.

## Architecture

**Validator Registry Pattern**: Maps entity types (table names) to validators:
- kyc_workflows → KycWorkflowStateValidator
- wallet_operations → WalletOperationStateValidator
- compliance_reports → ComplianceReportStateValidator
- support_tickets → TicketStateValidator
- security_incidents → IncidentStateValidator
- security_alerts → SecurityAlertStateValidator
- invoices → InvoiceStateValidator
- ...

## Usage Examples

### Pre-flight Validation
```python
can_transition = StateTransitionService.validate_transition_only(
    entity_type="kyc_workflows",
    entity_id=workflow.id,
    current_status="pending",
    new_status="completed",
)
```

### Transition a loaded row
```python
StateTransitionService.transition(ticket, "resolve", actor="agent-7")
```

### Transition by id (row lock + atomic transaction)
```python
StateTransitionService.transition_entity(session, "security_alerts", alert_id, "dismiss")
```
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Type

from sqlalchemy.orm import Session

from models import get_model, normalize_entity_type
from utils.atomic_transactions import locked_entity
from utils.bms_state_validator import (
    AffiliatePaymentStateValidator,
    BaseStateValidator,
    BoardReportStateValidator,
    ComplianceReportStateValidator,
    IncidentStateValidator,
    InvoiceStateValidator,
    KycWorkflowStateValidator,
    RiskMonitoringStateValidator,
    SecurityAlertStateValidator,
    StaffStateValidator,
    TicketStateValidator,
    TreasuryReconciliationValidator,
    WalletOperationStateValidator,
)
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import InvalidTransitionError, UnknownEntityTypeError

logger = logging.getLogger(__name__)


class StateTransitionService:
    """
    Facade over the per-entity validators.

    ``transition`` applies a validated change to a row already held by the
    caller; ``transition_entity`` loads and locks the row itself.
    """

    VALIDATOR_REGISTRY: Dict[str, Type[BaseStateValidator]] = {
        "kyc_workflows": KycWorkflowStateValidator,
        "wallet_operations": WalletOperationStateValidator,
        "compliance_reports": ComplianceReportStateValidator,
        "board_reports": BoardReportStateValidator,
        "risk_monitoring": RiskMonitoringStateValidator,
        "treasury_reports": TreasuryReconciliationValidator,
        "support_tickets": TicketStateValidator,
        "security_incidents": IncidentStateValidator,
        "security_alerts": SecurityAlertStateValidator,
        "invoices": InvoiceStateValidator,
        "staff_directory": StaffStateValidator,
        "affiliate_tracking": AffiliatePaymentStateValidator,
    }

    @classmethod
    def get_validator(cls, entity_type: str) -> Type[BaseStateValidator]:
        if get_model(entity_type) is None:
            raise UnknownEntityTypeError(entity_type)
        validator = cls.VALIDATOR_REGISTRY.get(normalize_entity_type(entity_type))
        if validator is None:
            raise InvalidTransitionError(
                entity_type, None, "?", reason="entity has no workflow status"
            )
        return validator

    @classmethod
    def validate_transition_only(
        cls,
        entity_type: str,
        entity_id: Optional[str],
        current_status: Any,
        new_status: Any,
    ) -> bool:
        """Pre-flight check: True if the state graph allows the change"""
        try:
            validator = cls.get_validator(entity_type)
            is_valid, reason = validator.validate_transition(current_status, new_status, entity_id)
        except InvalidTransitionError as e:
            logger.debug(f"🔍 PREFLIGHT_TRANSITION: {e}")
            return False

        if not is_valid:
            logger.debug(f"🔍 PREFLIGHT_TRANSITION: {reason}")
        return is_valid

    @classmethod
    def transition(
        cls,
        entity: Any,
        event: str,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Any:
        """
        Apply ``event`` to ``entity`` in memory.

        Raises:
            InvalidTransitionError: the state graph or a guard refuses the change
        """
        entity_type = entity.__tablename__
        validator = cls.get_validator(entity_type)
        current_raw = getattr(entity, validator.STATUS_FIELD)
        current = validator.parse_status(current_raw)
        target = validator.resolve_event(event, current)

        is_valid, reason = validator.validate_transition(current, target, entity.id)
        if not is_valid:
            logger.warning(f"🚫 TRANSITION_BLOCKED: {reason}")
            raise InvalidTransitionError(entity_type, current.value, target.value, reason=reason)

        blocker = validator.guard(entity, target)
        if blocker:
            logger.warning(
                f"🚫 TRANSITION_GUARD: {entity_type} {entity.id} {current.value} -> {target.value}: {blocker}"
            )
            raise InvalidTransitionError(entity_type, current.value, target.value, reason=blocker)

        validator.on_enter(entity, target, at or get_naive_utc_now())
        setattr(entity, validator.STATUS_FIELD, target.value)

        logger.info(
            f"🔄 STATE_TRANSITION: {entity_type} {entity.id} {current.value} -> {target.value} "
            f"(event={event}, actor={actor or 'system'})"
        )
        return entity

    @classmethod
    def transition_entity(
        cls,
        session: Session,
        entity_type: str,
        entity_id: str,
        event: str,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Any:
        """Lock the row, apply the transition and commit atomically"""
        cls.get_validator(entity_type)
        with locked_entity(entity_type, entity_id, session) as entity:
            cls.transition(entity, event, actor=actor, at=at)
        return entity
