"""
Wallet Operation Approval Service
Multi-approver sign-off and on-chain finality tracking for treasury movements
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from config import Config
from models import WalletOperation, WorkflowStatus
from services.bms_record_service import BMSRecordService, require_actor
from services.state_transition_service import StateTransitionService
from utils.approval_quorum import assert_executable, is_executable
from utils.atomic_transactions import atomic_transaction, lock_entity
from utils.exception_handler import (
    InvalidTransitionError,
    InvariantViolationError,
    ValidationError,
)
from utils.insert_schema import FieldViolation

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {WorkflowStatus.COMPLETED.value, WorkflowStatus.CANCELLED.value}


@dataclass
class ApprovalOutcome:
    operation_id: str
    approver_id: str
    duplicate: bool
    current_approvals: int
    required_approvals: int
    executable: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _reject_if_terminal(op: WalletOperation, attempted: str) -> None:
    if op.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            "wallet_operations", op.status, attempted, reason=f"operation is already {op.status}"
        )


class WalletApprovalService:
    """Service for managing approval quorums on wallet operations"""

    @classmethod
    def create_operation(cls, session: Session, payload: Mapping[str, Any]) -> WalletOperation:
        """
        Create a pending wallet operation.

        Approvals, confirmations and execution state are workflow-owned and
        rejected by the insert schema; they only move through this service.
        """
        data = dict(payload)
        if "required_confirmations" not in data and "requiredConfirmations" not in data:
            data["required_confirmations"] = Config.DEFAULT_REQUIRED_CONFIRMATIONS
        if "required_approvals" not in data and "requiredApprovals" not in data:
            data["required_approvals"] = Config.DEFAULT_REQUIRED_APPROVALS

        op = BMSRecordService.create_record(session, "wallet_operations", data)
        logger.info(
            f"🏦 WALLET_OP_CREATED: {op.id} {op.operation_type} {op.amount} {op.asset} "
            f"requires {op.required_approvals} approval(s), {op.required_confirmations} confirmation(s)"
        )
        return op

    @classmethod
    def record_approval(cls, session: Session, operation_id: str, approver_id: str) -> ApprovalOutcome:
        """
        Record one approver's sign-off.

        Idempotent per approver: a repeat approval is reported as duplicate and
        leaves current_approvals untouched.
        """
        approver_id = require_actor("approver_id", approver_id)

        with atomic_transaction(session) as tx_session:
            op = lock_entity(tx_session, WalletOperation, operation_id)
            _reject_if_terminal(op, "approved")

            if Config.WALLET_OP_FOUR_EYES and approver_id == op.created_by:
                logger.warning(f"🚫 FOUR_EYES: {approver_id} tried to approve own operation {op.id}")
                raise InvariantViolationError(
                    f"Creator {approver_id} cannot approve wallet operation {op.id}"
                )

            approvers = list(op.approvers or [])
            duplicate = approver_id in approvers
            if duplicate:
                logger.info(f"♻️ APPROVAL_DUPLICATE: {approver_id} already approved {op.id}")
            else:
                # new list so the JSON column is flagged dirty
                op.approvers = approvers + [approver_id]
                op.current_approvals = (op.current_approvals or 0) + 1
                if op.status == WorkflowStatus.PENDING.value:
                    StateTransitionService.transition(op, "start", actor=approver_id)
                logger.info(
                    f"✅ APPROVAL_RECORDED: {approver_id} approved {op.id} "
                    f"({op.current_approvals}/{op.required_approvals})"
                )

            outcome = ApprovalOutcome(
                operation_id=op.id,
                approver_id=approver_id,
                duplicate=duplicate,
                current_approvals=op.current_approvals,
                required_approvals=op.required_approvals,
                executable=is_executable(op),
            )

        return outcome

    @classmethod
    def record_confirmations(
        cls,
        session: Session,
        operation_id: str,
        confirmations: int,
        block_number: Optional[int] = None,
        transaction_hash: Optional[str] = None,
    ) -> WalletOperation:
        """Update on-chain confirmation count; it never moves backwards"""
        if isinstance(confirmations, bool) or not isinstance(confirmations, int) or confirmations < 0:
            raise ValidationError(
                "confirmations must be a non-negative integer",
                [FieldViolation("confirmations", "invalid_type", "confirmations must be a non-negative integer")],
            )

        with atomic_transaction(session) as tx_session:
            op = lock_entity(tx_session, WalletOperation, operation_id)
            if op.status == WorkflowStatus.CANCELLED.value:
                raise InvalidTransitionError(
                    "wallet_operations", op.status, "confirmed", reason="operation is cancelled"
                )

            if transaction_hash:
                if op.transaction_hash and op.transaction_hash != transaction_hash:
                    raise InvariantViolationError(
                        f"Wallet operation {op.id} is bound to transaction {op.transaction_hash}"
                    )
                op.transaction_hash = transaction_hash
            if block_number is not None and op.block_number is None:
                op.block_number = block_number

            current = op.confirmations or 0
            if confirmations < current:
                logger.warning(
                    f"⚠️ CONFIRMATIONS_REGRESSION: {op.id} reported {confirmations} < {current}, keeping {current}"
                )
            else:
                op.confirmations = confirmations
                logger.info(
                    f"⛓️ CONFIRMATIONS_UPDATED: {op.id} {confirmations}/{op.required_confirmations}"
                )

        return op

    @classmethod
    def is_executable(cls, session: Session, operation_id: str) -> bool:
        op = BMSRecordService.get_record(session, "wallet_operations", operation_id)
        return op.status not in TERMINAL_STATUSES and is_executable(op)

    @classmethod
    def execute(cls, session: Session, operation_id: str, executor_id: str) -> WalletOperation:
        """
        Mark the operation executed.

        Raises:
            InsufficientApprovalsError: quorum not reached
            InsufficientConfirmationsError: on-chain finality not reached
        """
        executor_id = require_actor("executor_id", executor_id)

        with atomic_transaction(session) as tx_session:
            op = lock_entity(tx_session, WalletOperation, operation_id)
            _reject_if_terminal(op, WorkflowStatus.COMPLETED.value)
            assert_executable(op)

            StateTransitionService.transition(op, "complete", actor=executor_id)
            op.executed_by = executor_id

        logger.info(f"🚀 WALLET_OP_EXECUTED: {op.id} by {executor_id}")
        return op

    @classmethod
    def cancel(cls, session: Session, operation_id: str, actor_id: str) -> WalletOperation:
        actor_id = require_actor("actor_id", actor_id)

        with atomic_transaction(session) as tx_session:
            op = lock_entity(tx_session, WalletOperation, operation_id)
            StateTransitionService.transition(op, "cancel", actor=actor_id)

        return op

    @classmethod
    def get_pending_approvals(cls, session: Session) -> List[WalletOperation]:
        """Live operations still short of their approval quorum"""
        return (
            session.query(WalletOperation)
            .filter(
                WalletOperation.status.in_(
                    [WorkflowStatus.PENDING.value, WorkflowStatus.IN_PROGRESS.value]
                ),
                WalletOperation.current_approvals < WalletOperation.required_approvals,
            )
            .order_by(WalletOperation.created_at)
            .all()
        )
