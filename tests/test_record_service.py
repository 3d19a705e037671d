"""
Tests for generic record creation, partial updates, listing and soft deactivation
"""

import pytest
from datetime import datetime

from services.bms_record_service import BMSRecordService, require_actor
from utils.exception_handler import (
    EntityNotFoundError,
    InvariantViolationError,
    UnknownEntityTypeError,
    ValidationError,
)


class TestCreateRecord:

    def test_created_row_has_id_and_defaults(self, create):
        workflow = create("kyc_workflows")
        assert len(workflow.id) == 36
        assert workflow.status == "pending"
        assert workflow.kyc_level == 0
        assert workflow.version == 1

    def test_invalid_payload_writes_nothing(self, db_session, payload):
        with pytest.raises(ValidationError):
            BMSRecordService.create_record(db_session, "kyc_workflows", payload("kyc_workflows", kyc_level=9))
        assert BMSRecordService.list_records(db_session, "kyc_workflows") == []

    @pytest.mark.parametrize("entity_type,overrides", [
        ("kyc_workflows", {"status": "completed", "current_stage": "address", "kyc_level": 3}),
        ("security_incidents", {"status": "resolved", "resolved_at": "2025-01-15T12:00:00"}),
        ("affiliate_tracking", {"payment_status": "paid"}),
        ("support_tickets", {"status": "closed"}),
    ])
    def test_rows_cannot_be_born_mid_workflow(self, entity_type, overrides, db_session, payload):
        with pytest.raises(ValidationError) as exc_info:
            BMSRecordService.create_record(db_session, entity_type, payload(entity_type, **overrides))
        assert {v.code for v in exc_info.value.violations} == {"workflow_owned"}
        assert BMSRecordService.list_records(db_session, entity_type) == []

    def test_unknown_parent_reference(self, db_session, payload):
        with pytest.raises(ValidationError) as exc_info:
            BMSRecordService.create_record(db_session, "ticket_messages", payload("ticket_messages"))
        violation = exc_info.value.violations[0]
        assert violation.field == "ticket_id"
        assert violation.code == "unknown_reference"

    def test_child_row_with_existing_parent(self, create):
        ticket = create("support_tickets")
        message = create("ticket_messages", ticket_id=ticket.id)
        assert message.ticket_id == ticket.id

    def test_duplicate_unique_value(self, create):
        create("invoices", invoice_number="INV-DUP")
        with pytest.raises(InvariantViolationError):
            create("invoices", invoice_number="INV-DUP")

    def test_unknown_entity(self, db_session):
        with pytest.raises(UnknownEntityTypeError):
            BMSRecordService.create_record(db_session, "spaceships", {})


class TestGetAndList:

    def test_get_record(self, create, db_session):
        alert = create("security_alerts")
        assert BMSRecordService.get_record(db_session, "security-alerts", alert.id) is alert

    def test_get_missing_record(self, db_session):
        with pytest.raises(EntityNotFoundError):
            BMSRecordService.get_record(db_session, "security_alerts", "missing")

    def test_filters_are_exact_matches(self, create, db_session):
        create("user_segments", user_id="user-1")
        create("user_segments", user_id="user-2", tier_level=2)

        rows = BMSRecordService.list_records(db_session, "user_segments", {"user_id": "user-2"})
        assert [row.user_id for row in rows] == ["user-2"]

        rows = BMSRecordService.list_records(db_session, "user_segments", {"tier_level": "2"})
        assert len(rows) == 1

    def test_boolean_filter_from_query_string(self, create, db_session):
        create("trading_pair_controls", is_active=False)
        create("trading_pair_controls", symbol="ETH/USDT", base_asset="ETH")
        rows = BMSRecordService.list_records(db_session, "trading_pair_controls", {"is_active": "true"})
        assert [row.symbol for row in rows] == ["ETH/USDT"]

    def test_unknown_filter_column(self, db_session):
        with pytest.raises(ValidationError):
            BMSRecordService.list_records(db_session, "kyc_workflows", {"shoe_size": "9"})

    def test_non_integer_filter(self, db_session):
        with pytest.raises(ValidationError):
            BMSRecordService.list_records(db_session, "kyc_workflows", {"kyc_level": "two"})

    def test_paging(self, create, db_session):
        for i in range(5):
            create("audit_logs", user_id=f"admin-{i}")
        assert len(BMSRecordService.list_records(db_session, "audit_logs", limit=2)) == 2
        assert len(BMSRecordService.list_records(db_session, "audit_logs", limit=2, offset=4)) == 1


    def test_date_range_on_report_date(self, create, db_session):
        create("treasury_reports", report_date="2025-01-10T00:00:00")
        create("treasury_reports", report_date="2025-01-15T00:00:00")
        create("treasury_reports", report_date="2025-01-20T00:00:00")

        rows = BMSRecordService.list_records(
            db_session, "treasury-reports", date_from="2025-01-12T00:00:00", date_to="2025-01-15T00:00:00",
        )
        assert [row.report_date for row in rows] == [datetime(2025, 1, 15)]

    def test_date_range_on_created_at(self, create, db_session):
        create("audit_logs")
        assert len(BMSRecordService.list_records(db_session, "audit_logs", date_from="2000-01-01T00:00:00Z")) == 1
        assert BMSRecordService.list_records(db_session, "audit_logs", date_to="2000-01-01T00:00:00Z") == []

    def test_invalid_date_bound(self, db_session):
        with pytest.raises(ValidationError) as exc_info:
            BMSRecordService.list_records(db_session, "audit_logs", date_from="last week")
        assert exc_info.value.violations[0].field == "dateFrom"

class TestUpdateRecord:

    def test_plain_fields_are_updated(self, create, db_session):
        report = create("board_reports")
        BMSRecordService.update_record(db_session, "board-reports", report.id, {"approvedBy": "board-chair"})
        db_session.refresh(report)
        assert report.approved_by == "board-chair"
        assert report.status == "pending"

    def test_workflow_fields_are_refused(self, create, db_session):
        workflow = create("kyc_workflows")
        with pytest.raises(ValidationError) as exc_info:
            BMSRecordService.update_record(db_session, "kyc_workflows", workflow.id, {"status": "completed"})
        assert exc_info.value.violations[0].code == "workflow_owned"
        db_session.refresh(workflow)
        assert workflow.status == "pending"

    def test_invalid_value_changes_nothing(self, create, db_session):
        staff = create("staff_directory")
        with pytest.raises(ValidationError):
            BMSRecordService.update_record(
                db_session, "staff_directory", staff.id, {"position": "Lead", "access_level": 9},
            )
        db_session.refresh(staff)
        assert staff.position == "Analyst"
        assert staff.access_level == 1

    def test_cross_field_rules_see_the_merged_row(self, create, db_session):
        invoice = create("invoices")
        with pytest.raises(ValidationError) as exc_info:
            BMSRecordService.update_record(db_session, "invoices", invoice.id, {"total_amount": "900.00"})
        assert ("total_amount", "invariant") in {(v.field, v.code) for v in exc_info.value.violations}

    def test_changed_reference_must_exist(self, create, db_session):
        ticket = create("support_tickets")
        message = create("ticket_messages", ticket_id=ticket.id)
        with pytest.raises(ValidationError) as exc_info:
            BMSRecordService.update_record(
                db_session, "ticket_messages", message.id, {"ticket_id": "00000000-0000-0000-0000-000000000000"},
            )
        assert exc_info.value.violations[0].code == "unknown_reference"

    def test_unique_clash_is_an_invariant_violation(self, create, db_session):
        create("invoices", invoice_number="INV-TAKEN")
        invoice = create("invoices")
        with pytest.raises(InvariantViolationError):
            BMSRecordService.update_record(db_session, "invoices", invoice.id, {"invoice_number": "INV-TAKEN"})

    def test_missing_row(self, db_session):
        with pytest.raises(EntityNotFoundError):
            BMSRecordService.update_record(db_session, "board_reports", "missing", {"approved_by": "x"})


class TestDeactivate:

    def test_is_active_flag_cleared(self, create, db_session):
        program = create("affiliate_programs")
        BMSRecordService.deactivate_record(db_session, "affiliate_programs", program.id)
        assert program.is_active is False

    def test_staff_moves_to_inactive(self, create, db_session):
        staff = create("staff_directory")
        BMSRecordService.deactivate_record(db_session, "staff_directory", staff.id)
        assert staff.status == "inactive"
        assert staff.end_date is None

    def test_records_without_soft_delete_state(self, create, db_session):
        log = create("audit_logs")
        with pytest.raises(InvariantViolationError):
            BMSRecordService.deactivate_record(db_session, "audit_logs", log.id)


class TestRequireActor:

    def test_strips_whitespace(self):
        assert require_actor("reviewer", "  reviewer-1 ") == "reviewer-1"

    @pytest.mark.parametrize("value", [None, "", "   ", 42])
    def test_rejects_blank_or_non_string(self, value):
        with pytest.raises(ValidationError) as exc_info:
            require_actor("reviewer", value)
        assert exc_info.value.violations[0].code == "empty"
