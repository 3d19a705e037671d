"""
Tests for the KYC workflow: ordered stages, risk scoring, screening and sign-off
"""

import pytest
from decimal import Decimal

from models import KycStage, RiskLevel
from services.kyc_workflow_service import KycWorkflowService, risk_level_for_score
from utils.exception_handler import InvalidTransitionError, ValidationError

STAGES = ["email", "phone", "identity", "address"]


@pytest.fixture
def workflow(db_session):
    def build(user_id="user-100", **overrides):
        return KycWorkflowService.create_workflow(db_session, {"user_id": user_id, **overrides})
    return build


def verify_all(db_session, workflow_id, reviewer="reviewer-1"):
    for stage in STAGES:
        KycWorkflowService.verify_stage(db_session, workflow_id, stage, reviewer)


class TestStageVerification:

    def test_new_workflow_starts_at_email(self, workflow):
        wf = workflow()
        assert wf.current_stage == "email"
        assert wf.kyc_level == 0
        assert wf.status == "pending"

    @pytest.mark.parametrize("overrides", [
        {"status": "completed"},
        {"kyc_level": 3},
        {"current_stage": "address", "verification_results": {"email": {"verified": True}}},
        {"risk_level": "critical", "approved_by": "mlro-1"},
    ])
    def test_workflow_cannot_be_born_verified(self, workflow, overrides):
        with pytest.raises(ValidationError) as exc_info:
            workflow(**overrides)
        assert {v.code for v in exc_info.value.violations} == {"workflow_owned"}
        assert {v.field for v in exc_info.value.violations} == set(overrides)

    def test_first_verification_starts_workflow(self, workflow, db_session, now):
        wf = workflow()
        KycWorkflowService.verify_stage(
            db_session, wf.id, KycStage.EMAIL, "reviewer-1", details={"method": "link"}, at=now
        )
        assert wf.status == "in_progress"
        assert wf.current_stage == "phone"
        assert wf.kyc_level == 1
        entry = wf.verification_results["email"]
        assert entry["verified"] is True
        assert entry["verified_by"] == "reviewer-1"
        assert entry["verified_at"] == "2025-01-15T12:00:00"
        assert entry["details"] == {"method": "link"}

    def test_out_of_order_stage_rejected(self, workflow, db_session):
        wf = workflow()
        with pytest.raises(InvalidTransitionError) as exc_info:
            KycWorkflowService.verify_stage(db_session, wf.id, "identity", "reviewer-1")
        assert "email" in str(exc_info.value)
        db_session.expire_all()
        assert wf.verification_results == {}

    def test_stage_cannot_be_verified_twice(self, workflow, db_session):
        wf = workflow()
        KycWorkflowService.verify_stage(db_session, wf.id, "email", "reviewer-1")
        with pytest.raises(InvalidTransitionError):
            KycWorkflowService.verify_stage(db_session, wf.id, "email", "reviewer-2")

    def test_levels_follow_stages(self, workflow, db_session):
        wf = workflow()
        levels = []
        for stage in STAGES:
            KycWorkflowService.verify_stage(db_session, wf.id, stage, "reviewer-1")
            levels.append(wf.kyc_level)
        assert levels == [1, 1, 2, 3]
        assert wf.current_stage == "address"

    def test_reviewer_required(self, workflow, db_session):
        wf = workflow()
        with pytest.raises(ValidationError):
            KycWorkflowService.verify_stage(db_session, wf.id, "email", "")


class TestCompletion:

    def test_cannot_complete_at_email_stage(self, workflow, db_session):
        wf = workflow()
        KycWorkflowService.verify_stage(db_session, wf.id, "email", "reviewer-1")
        with pytest.raises(InvalidTransitionError):
            KycWorkflowService.complete(db_session, wf.id)

    def test_complete_after_all_stages(self, workflow, db_session):
        wf = workflow()
        verify_all(db_session, wf.id)
        KycWorkflowService.complete(db_session, wf.id)
        assert wf.status == "completed"
        assert wf.kyc_level == 3

    def test_critical_risk_needs_approver(self, workflow, db_session):
        wf = workflow()
        verify_all(db_session, wf.id)
        KycWorkflowService.assess_risk(db_session, wf.id, 90)

        with pytest.raises(InvalidTransitionError):
            KycWorkflowService.complete(db_session, wf.id)

        KycWorkflowService.complete(db_session, wf.id, approved_by="mlro-1")
        assert wf.status == "completed"
        assert wf.approved_by == "mlro-1"

    def test_reject_records_reason(self, workflow, db_session):
        wf = workflow()
        KycWorkflowService.reject(db_session, wf.id, "Document forged", reviewer="reviewer-2")
        assert wf.status == "cancelled"
        assert wf.rejected_reason == "Document forged"
        assert wf.assigned_reviewer == "reviewer-2"

    def test_reject_needs_reason(self, workflow, db_session):
        wf = workflow()
        with pytest.raises(ValidationError):
            KycWorkflowService.reject(db_session, wf.id, "   ")

    def test_closed_workflow_cannot_be_verified(self, workflow, db_session):
        wf = workflow()
        KycWorkflowService.reject(db_session, wf.id, "Duplicate account")
        with pytest.raises(InvalidTransitionError):
            KycWorkflowService.verify_stage(db_session, wf.id, "email", "reviewer-1")


class TestRiskAssessment:

    @pytest.mark.parametrize("score,level", [
        (0, RiskLevel.LOW),
        (24.99, RiskLevel.LOW),
        (25, RiskLevel.MEDIUM),
        (49.99, RiskLevel.MEDIUM),
        (50, RiskLevel.HIGH),
        (74.99, RiskLevel.HIGH),
        (75, RiskLevel.CRITICAL),
        (100, RiskLevel.CRITICAL),
    ])
    def test_score_bands(self, score, level):
        assert risk_level_for_score(Decimal(str(score))) == level

    def test_assess_risk_stores_score_and_level(self, workflow, db_session):
        wf = workflow()
        KycWorkflowService.assess_risk(db_session, wf.id, "62.5")
        assert wf.risk_score == Decimal("62.50")
        assert wf.risk_level == "high"

    @pytest.mark.parametrize("score", [-1, 100.01, "high", None])
    def test_invalid_scores(self, workflow, db_session, score):
        wf = workflow()
        with pytest.raises(ValidationError):
            KycWorkflowService.assess_risk(db_session, wf.id, score)


class TestScreening:

    @pytest.mark.asyncio
    async def test_clear_subject(self, workflow, db_session, mock_screening):
        wf = workflow()
        await KycWorkflowService.screen(db_session, wf.id, mock_screening)
        assert wf.sanctions_check["hit"] is False
        assert wf.pep_check["hit"] is False
        assert "screened_at" in wf.sanctions_check
        assert wf.aml_flags == []
        assert wf.risk_level == "low"

    @pytest.mark.asyncio
    async def test_sanctions_hit_makes_workflow_critical(self, workflow, db_session, mock_screening):
        wf = workflow(user_id="user-sanctioned")
        await KycWorkflowService.screen(db_session, wf.id, mock_screening, full_name="Bad Actor")
        assert wf.sanctions_check["hit"] is True
        assert wf.sanctions_check["matches"][0]["list"] == "MOCK-OFAC"
        assert wf.risk_level == "critical"
        assert [flag["type"] for flag in wf.aml_flags] == ["sanctions_hit"]

    @pytest.mark.asyncio
    async def test_pep_hit_raises_to_high(self, workflow, db_session, mock_screening):
        wf = workflow(user_id="user-pep")
        await KycWorkflowService.screen(db_session, wf.id, mock_screening)
        assert wf.pep_check["hit"] is True
        assert wf.risk_level == "high"

    @pytest.mark.asyncio
    async def test_pep_hit_never_lowers_risk(self, workflow, db_session, mock_screening):
        wf = workflow(user_id="user-pep")
        KycWorkflowService.assess_risk(db_session, wf.id, 80)
        await KycWorkflowService.screen(db_session, wf.id, mock_screening)
        assert wf.risk_level == "critical"

    @pytest.mark.asyncio
    async def test_closed_workflow_is_not_screened(self, workflow, db_session, mock_screening):
        wf = workflow()
        KycWorkflowService.reject(db_session, wf.id, "Duplicate account")
        with pytest.raises(InvalidTransitionError):
            await KycWorkflowService.screen(db_session, wf.id, mock_screening)
