"""
KYC Workflow Service
Ordered stage verification, risk scoring, sanctions/PEP screening and sign-off
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from models import KycStage, KycWorkflow, RiskLevel, WorkflowStatus
from services.bms_record_service import BMSRecordService, require_actor
from services.external_services import ScreeningProvider
from services.state_transition_service import StateTransitionService
from utils.atomic_transactions import atomic_transaction, lock_entity
from utils.bms_state_validator import KycStageValidator, KycWorkflowStateValidator
from utils.datetime_helpers import get_naive_utc_now, to_iso
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import InvalidTransitionError, ValidationError
from utils.insert_schema import FieldViolation

logger = logging.getLogger(__name__)

RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


def risk_level_for_score(score: Decimal) -> RiskLevel:
    """<25 low, <50 medium, <75 high, otherwise critical"""
    if score < 25:
        return RiskLevel.LOW
    if score < 50:
        return RiskLevel.MEDIUM
    if score < 75:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def _raise_risk(current: str, floor: RiskLevel) -> str:
    """Risk only ratchets upwards from a screening hit"""
    current_level = RiskLevel(current) if current else RiskLevel.LOW
    return max(current_level, floor, key=RISK_ORDER.index).value


def _reject_if_terminal(workflow: KycWorkflow, attempted: str) -> None:
    if KycWorkflowStateValidator.parse_status(workflow.status) in KycWorkflowStateValidator.terminal_states():
        raise InvalidTransitionError(
            "kyc_workflows", workflow.status, attempted, reason=f"workflow is already {workflow.status}"
        )


class KycWorkflowService:
    """Service for driving a user's KYC workflow from email to address"""

    @classmethod
    def create_workflow(cls, session: Session, payload: Mapping[str, Any]) -> KycWorkflow:
        data = dict(payload)
        workflow = BMSRecordService.create_record(session, "kyc_workflows", data)
        logger.info(f"🪪 KYC_WORKFLOW_CREATED: {workflow.id} user={workflow.user_id}")
        return workflow

    @classmethod
    def verify_stage(
        cls,
        session: Session,
        workflow_id: str,
        stage: Any,
        reviewer: str,
        details: Optional[Mapping[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> KycWorkflow:
        """
        Record verification of ``stage``.

        Stages are verified strictly in order; the workflow's current_stage
        advances and kyc_level rises to the level the stage grants.

        Raises:
            InvalidTransitionError: stage out of order, already verified, or workflow closed
        """
        reviewer = require_actor("reviewer", reviewer)
        stage_value = getattr(stage, "value", stage)
        verified_at = at or get_naive_utc_now()

        with atomic_transaction(session) as tx_session:
            workflow = lock_entity(tx_session, KycWorkflow, workflow_id)
            _reject_if_terminal(workflow, f"verify:{stage_value}")

            is_valid, reason = KycStageValidator.validate_stage_verification(
                workflow.verification_results, stage_value
            )
            if not is_valid:
                logger.warning(f"🚫 KYC_STAGE_BLOCKED: {workflow.id} {reason}")
                raise InvalidTransitionError(
                    "kyc_workflows", workflow.current_stage, str(stage_value), reason=reason
                )

            kyc_stage = KycStage(stage_value)
            results = dict(workflow.verification_results or {})
            results[kyc_stage.value] = {
                "verified": True,
                "verified_by": reviewer,
                "verified_at": to_iso(verified_at),
                "details": dict(details or {}),
            }
            workflow.verification_results = results
            workflow.kyc_level = max(workflow.kyc_level or 0, KycStageValidator.STAGE_LEVEL[kyc_stage])
            workflow.current_stage = KycStageValidator.next_stage(kyc_stage).value

            if workflow.status == WorkflowStatus.PENDING.value:
                StateTransitionService.transition(workflow, "start", actor=reviewer, at=verified_at)

        logger.info(
            f"✅ KYC_STAGE_VERIFIED: {workflow.id} {kyc_stage.value} by {reviewer} "
            f"(level={workflow.kyc_level}, next={workflow.current_stage})"
        )
        return workflow

    @classmethod
    def complete(cls, session: Session, workflow_id: str, approved_by: Optional[str] = None) -> KycWorkflow:
        """
        Close the workflow as completed.

        Requires the address stage to be verified; critical-risk workflows
        also need ``approved_by``.
        """
        with atomic_transaction(session) as tx_session:
            workflow = lock_entity(tx_session, KycWorkflow, workflow_id)
            if approved_by is not None:
                workflow.approved_by = require_actor("approved_by", approved_by)
            StateTransitionService.transition(workflow, "complete", actor=approved_by)

        logger.info(f"🎉 KYC_COMPLETED: {workflow.id} level={workflow.kyc_level} risk={workflow.risk_level}")
        return workflow

    @classmethod
    def reject(cls, session: Session, workflow_id: str, reason: str, reviewer: Optional[str] = None) -> KycWorkflow:
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError(
                "A rejection reason is required",
                [FieldViolation("rejected_reason", "empty", "rejected_reason must be a non-empty string")],
            )

        with atomic_transaction(session) as tx_session:
            workflow = lock_entity(tx_session, KycWorkflow, workflow_id)
            StateTransitionService.transition(workflow, "cancel", actor=reviewer)
            workflow.rejected_reason = reason.strip()
            if reviewer:
                workflow.assigned_reviewer = reviewer

        logger.info(f"❌ KYC_REJECTED: {workflow.id} reason={workflow.rejected_reason!r}")
        return workflow

    @classmethod
    def assess_risk(cls, session: Session, workflow_id: str, score: Any) -> KycWorkflow:
        """Store a 0-100 risk score and the risk level it maps to"""
        try:
            score_decimal = MonetaryDecimal.quantize_to_scale(score, 2)
        except ValueError:
            score_decimal = None
        if score_decimal is None or score_decimal < 0 or score_decimal > 100:
            raise ValidationError(
                f"Invalid risk score {score!r}",
                [FieldViolation("risk_score", "out_of_range", "risk_score must be a number between 0 and 100")],
            )

        with atomic_transaction(session) as tx_session:
            workflow = lock_entity(tx_session, KycWorkflow, workflow_id)
            _reject_if_terminal(workflow, "risk_assessment")
            workflow.risk_score = score_decimal
            workflow.risk_level = risk_level_for_score(score_decimal).value

        logger.info(f"📊 KYC_RISK_ASSESSED: {workflow.id} score={score_decimal} level={workflow.risk_level}")
        return workflow

    @classmethod
    async def screen(
        cls,
        session: Session,
        workflow_id: str,
        provider: ScreeningProvider,
        full_name: Optional[str] = None,
        country: Optional[str] = None,
    ) -> KycWorkflow:
        """
        Run sanctions and PEP screening for the workflow's user.

        The provider call happens outside the row lock; only the result write
        is transactional. A sanctions hit makes the workflow critical risk, a
        PEP hit raises it to at least high.
        """
        workflow = BMSRecordService.get_record(session, "kyc_workflows", workflow_id)
        _reject_if_terminal(workflow, "screening")
        user_id = workflow.user_id

        try:
            result = await provider.screen_subject(user_id, full_name=full_name, country=country)
        except Exception as e:
            logger.error(f"❌ KYC_SCREENING_FAILED: {workflow_id} user={user_id}: {e}", exc_info=True)
            raise

        screened_at = to_iso(get_naive_utc_now())
        with atomic_transaction(session) as tx_session:
            workflow = lock_entity(tx_session, KycWorkflow, workflow_id)
            workflow.sanctions_check = {**result.to_check("sanctions"), "screened_at": screened_at}
            workflow.pep_check = {**result.to_check("pep"), "screened_at": screened_at}

            flags = list(workflow.aml_flags or [])
            if result.sanctions_hit:
                flags.append({"type": "sanctions_hit", "reference": result.reference, "flagged_at": screened_at})
                workflow.risk_level = _raise_risk(workflow.risk_level, RiskLevel.CRITICAL)
            if result.pep_hit:
                flags.append({"type": "pep_hit", "reference": result.reference, "flagged_at": screened_at})
                workflow.risk_level = _raise_risk(workflow.risk_level, RiskLevel.HIGH)
            workflow.aml_flags = flags

        if result.sanctions_hit or result.pep_hit:
            logger.warning(
                f"🚨 KYC_SCREENING_HIT: {workflow.id} user={user_id} sanctions={result.sanctions_hit} "
                f"pep={result.pep_hit} risk={workflow.risk_level}"
            )
        else:
            logger.info(f"🛡️ KYC_SCREENING_CLEAR: {workflow.id} user={user_id}")
        return workflow
