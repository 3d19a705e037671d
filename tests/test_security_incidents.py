"""
Tests for security incident intake and lifecycle timestamps
"""

import pytest

from services.security_incident_service import SecurityIncidentService
from utils.exception_handler import InvalidTransitionError, InvariantViolationError, ValidationError


@pytest.fixture
def incident(db_session, payload, now):
    def build(**overrides):
        return SecurityIncidentService.report_incident(
            db_session, payload("security_incidents", **overrides), now=now
        )
    return build


class TestReportIncident:

    def test_detected_at_defaults_to_now(self, incident, now):
        reported = incident()
        assert reported.detected_at == now
        assert reported.status == "open"
        assert reported.escalation_level == 0

    @pytest.mark.parametrize("severity", ["critical", "catastrophic"])
    def test_severe_incidents_auto_escalate(self, incident, severity):
        reported = incident(severity=severity)
        assert reported.risk_level == "critical"
        assert reported.escalation_level == 1

    def test_higher_explicit_escalation_is_kept(self, incident):
        assert incident(severity="critical", escalation_level=3).escalation_level == 3

    def test_minor_incident_keeps_defaults(self, incident):
        reported = incident(severity="minor")
        assert reported.risk_level == "medium"

    @pytest.mark.parametrize("overrides", [
        {"status": "resolved"},
        {"status": "contained", "contained_at": "2025-01-15T12:30:00"},
        {"resolved_at": "2025-01-15T13:00:00"},
    ])
    def test_incident_cannot_be_reported_already_handled(self, incident, overrides):
        with pytest.raises(ValidationError) as exc_info:
            incident(**overrides)
        assert {v.code for v in exc_info.value.violations} == {"workflow_owned"}


class TestLifecycle:

    def test_full_lifecycle(self, incident, db_session, now, later):
        reported = incident()
        SecurityIncidentService.investigate(db_session, reported.id, "secops-1")
        SecurityIncidentService.contain(
            db_session, reported.id, containment_actions="Blocked IP range", actor="secops-1", at=later(hours=1)
        )
        SecurityIncidentService.resolve(
            db_session, reported.id, root_cause="Leaked credentials", remediation_steps="Forced resets",
            lessons_learned="Enable breach monitoring", actor="secops-1", at=later(hours=3),
        )

        assert reported.status == "resolved"
        assert reported.assigned_to == "secops-1"
        assert reported.detected_at <= reported.contained_at <= reported.resolved_at
        assert reported.containment_actions == "Blocked IP range"
        assert reported.root_cause == "Leaked credentials"

    def test_containment_before_detection_rejected(self, incident, db_session, later):
        reported = incident()
        SecurityIncidentService.investigate(db_session, reported.id, "secops-1")
        with pytest.raises(InvariantViolationError):
            SecurityIncidentService.contain(db_session, reported.id, at=later(hours=-1))
        db_session.expire_all()
        assert reported.status == "investigating"
        assert reported.contained_at is None

    def test_resolution_before_containment_rejected(self, incident, db_session, later):
        reported = incident()
        SecurityIncidentService.investigate(db_session, reported.id, "secops-1")
        SecurityIncidentService.contain(db_session, reported.id, at=later(hours=2))
        with pytest.raises(InvariantViolationError):
            SecurityIncidentService.resolve(db_session, reported.id, at=later(hours=1))

    def test_steps_cannot_be_skipped(self, incident, db_session, later):
        reported = incident()
        with pytest.raises(InvalidTransitionError):
            SecurityIncidentService.contain(db_session, reported.id, at=later(hours=1))

    def test_investigator_required(self, incident, db_session):
        reported = incident()
        with pytest.raises(ValidationError):
            SecurityIncidentService.investigate(db_session, reported.id, "")
