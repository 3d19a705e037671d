"""
Security Incident Service
Incident intake, auto-escalation and the investigate -> contain -> resolve lifecycle
"""

import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from models import IncidentSeverity, RiskLevel, SecurityIncident
from services.bms_record_service import BMSRecordService, require_actor
from services.state_transition_service import StateTransitionService
from utils.atomic_transactions import atomic_transaction, lock_entity
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now

logger = logging.getLogger(__name__)

AUTO_ESCALATE_SEVERITIES = {IncidentSeverity.CRITICAL.value, IncidentSeverity.CATASTROPHIC.value}


class SecurityIncidentService:

    @classmethod
    def report_incident(
        cls, session: Session, payload: Mapping[str, Any], now: Optional[datetime] = None
    ) -> SecurityIncident:
        data = dict(payload)
        if data.get("detected_at") is None and data.get("detectedAt") is None:
            data["detected_at"] = now or get_naive_utc_now()

        severity = getattr(data.get("severity"), "value", data.get("severity"))
        if severity in AUTO_ESCALATE_SEVERITIES:
            data["risk_level"] = RiskLevel.CRITICAL.value
            level = data.get("escalation_level")
            if level is None or (isinstance(level, int) and level < 1):
                data["escalation_level"] = 1

        incident = BMSRecordService.create_record(session, "security_incidents", data)
        log = logger.critical if severity in AUTO_ESCALATE_SEVERITIES else logger.warning
        log(
            f"🚨 SECURITY_INCIDENT: {incident.id} {incident.incident_type} severity={incident.severity} "
            f"escalation={incident.escalation_level}"
        )
        return incident

    @classmethod
    def investigate(
        cls, session: Session, incident_id: str, assigned_to: str, at: Optional[datetime] = None
    ) -> SecurityIncident:
        assigned_to = require_actor("assigned_to", assigned_to)
        with atomic_transaction(session) as tx_session:
            incident = lock_entity(tx_session, SecurityIncident, incident_id)
            StateTransitionService.transition(incident, "investigate", actor=assigned_to, at=ensure_naive_datetime(at))
            incident.assigned_to = assigned_to
        return incident

    @classmethod
    def contain(
        cls,
        session: Session,
        incident_id: str,
        containment_actions: Optional[str] = None,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> SecurityIncident:
        """
        Mark the incident contained at ``at`` (default now).

        Raises:
            InvariantViolationError: ``at`` precedes detected_at
        """
        with atomic_transaction(session) as tx_session:
            incident = lock_entity(tx_session, SecurityIncident, incident_id)
            StateTransitionService.transition(incident, "contain", actor=actor, at=ensure_naive_datetime(at))
            if containment_actions:
                incident.containment_actions = containment_actions
        return incident

    @classmethod
    def resolve(
        cls,
        session: Session,
        incident_id: str,
        root_cause: Optional[str] = None,
        remediation_steps: Optional[str] = None,
        lessons_learned: Optional[str] = None,
        actor: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> SecurityIncident:
        with atomic_transaction(session) as tx_session:
            incident = lock_entity(tx_session, SecurityIncident, incident_id)
            StateTransitionService.transition(incident, "resolve", actor=actor, at=ensure_naive_datetime(at))
            if root_cause:
                incident.root_cause = root_cause
            if remediation_steps:
                incident.remediation_steps = remediation_steps
            if lessons_learned:
                incident.lessons_learned = lessons_learned

        logger.info(
            f"✅ INCIDENT_RESOLVED: {incident.id} detected={incident.detected_at} "
            f"contained={incident.contained_at} resolved={incident.resolved_at}"
        )
        return incident
