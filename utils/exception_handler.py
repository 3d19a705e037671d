"""
Exception Handler Module
Domain exceptions raised by the BMS validation, workflow and approval layers
"""

import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class BMSError(Exception):
    """Base class for all recoverable BMS errors"""

    error_code = "BMS_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


class ValidationError(BMSError):
    """Payload failed insert-schema validation; carries field-level violations"""

    error_code = "VALIDATION_FAILED"

    def __init__(self, message: str, violations: Optional[List[Any]] = None):
        self.violations = list(violations or [])
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["violations"] = [v.to_dict() for v in self.violations]
        return data


class UnknownEntityTypeError(BMSError):
    error_code = "UNKNOWN_ENTITY_TYPE"

    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        super().__init__(f"Unknown entity type: {entity_type}")


class EntityNotFoundError(BMSError):
    error_code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class InvalidTransitionError(BMSError):
    """Raised when a status change is not allowed from the current state"""

    error_code = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, current_state: Optional[str],
                 attempted_state: str, reason: Optional[str] = None):
        self.entity_type = entity_type
        self.current_state = current_state
        self.attempted_state = attempted_state
        message = f"Invalid {entity_type} transition: {current_state} -> {attempted_state}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["current_state"] = self.current_state
        data["attempted_state"] = self.attempted_state
        return data


class InsufficientApprovalsError(BMSError):
    error_code = "INSUFFICIENT_APPROVALS"

    def __init__(self, operation_id: str, current_approvals: int, required_approvals: int):
        self.operation_id = operation_id
        self.current_approvals = current_approvals
        self.required_approvals = required_approvals
        super().__init__(
            f"Wallet operation {operation_id} has {current_approvals}/{required_approvals} approvals"
        )


class InsufficientConfirmationsError(BMSError):
    error_code = "INSUFFICIENT_CONFIRMATIONS"

    def __init__(self, operation_id: str, confirmations: int, required_confirmations: int):
        self.operation_id = operation_id
        self.confirmations = confirmations
        self.required_confirmations = required_confirmations
        super().__init__(
            f"Wallet operation {operation_id} has {confirmations}/{required_confirmations} confirmations"
        )


class ImmutableFieldError(BMSError):
    error_code = "IMMUTABLE_FIELD"

    def __init__(self, entity_type: str, field_name: str):
        self.entity_type = entity_type
        self.field_name = field_name
        super().__init__(f"{entity_type}.{field_name} is already set and cannot change")


class InvariantViolationError(BMSError):
    """A business invariant would be broken by the requested change"""

    error_code = "INVARIANT_VIOLATION"


class ConcurrentModificationError(BMSError):
    """Row changed underneath us between read and write"""

    error_code = "CONCURRENT_MODIFICATION"


class ExternalServiceError(BMSError):
    """Failure talking to a payment, email or screening provider"""

    error_code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service_name: str, message: str, retryable: bool = False,
                 status_code: Optional[int] = None):
        self.service_name = service_name
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"{service_name}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["service"] = self.service_name
        data["retryable"] = self.retryable
        return data
