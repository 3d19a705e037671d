"""
Approval quorum and on-chain finality checks for wallet operations.

Pure functions over a WalletOperation row (or any object/mapping with the same
field names) so they can be used both before and inside a locked transaction.
"""

from typing import Any, Mapping, Optional

from models import WalletOperationType
from utils.exception_handler import InsufficientApprovalsError, InsufficientConfirmationsError


def _get(op: Any, name: str, default: Any = None) -> Any:
    if isinstance(op, Mapping):
        value = op.get(name, default)
    else:
        value = getattr(op, name, default)
    return default if value is None else value


def has_quorum(op: Any) -> bool:
    return _get(op, "current_approvals", 0) >= _get(op, "required_approvals", 1)


def requires_onchain_finality(op: Any) -> bool:
    """On-chain unless it is a reconciliation with no addresses attached"""
    if _get(op, "source_address") or _get(op, "destination_address"):
        return True
    return _get(op, "operation_type") != WalletOperationType.RECONCILIATION.value


def has_finality(op: Any) -> bool:
    if not requires_onchain_finality(op):
        return True
    return _get(op, "confirmations", 0) >= _get(op, "required_confirmations", 0)


def is_executable(op: Any) -> bool:
    """Quorum reached and, for on-chain operations, enough confirmations"""
    return has_quorum(op) and has_finality(op)


def executable_blocker(op: Any) -> Optional[str]:
    if not has_quorum(op):
        return (
            f"approvals {_get(op, 'current_approvals', 0)}/{_get(op, 'required_approvals', 1)}"
        )
    if not has_finality(op):
        return (
            f"confirmations {_get(op, 'confirmations', 0)}/{_get(op, 'required_confirmations', 0)}"
        )
    return None


def assert_executable(op: Any) -> None:
    """Raise the specific error naming which gate is still closed"""
    op_id = _get(op, "id", "?")
    if not has_quorum(op):
        raise InsufficientApprovalsError(
            op_id, _get(op, "current_approvals", 0), _get(op, "required_approvals", 1)
        )
    if not has_finality(op):
        raise InsufficientConfirmationsError(
            op_id, _get(op, "confirmations", 0), _get(op, "required_confirmations", 0)
        )
