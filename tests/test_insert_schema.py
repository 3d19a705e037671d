"""
Tests for the generated insert validators
Covers required fields, enum sets, numeric bounds, JSON shapes, cross-field rules,
workflow-owned columns and partial updates
"""

import pytest
from datetime import datetime
from decimal import Decimal

from models import ENTITY_MODELS
from services.state_transition_service import StateTransitionService
from utils.exception_handler import UnknownEntityTypeError, ValidationError
from utils.insert_schema import get_insert_schema, to_json_payload, to_snake_case, validate_insert


def codes(result):
    return {(v.field, v.code) for v in result.violations}


ENTITY_TYPES = sorted(ENTITY_MODELS)


class TestValidPayloads:

    @pytest.mark.parametrize("entity_type", ENTITY_TYPES)
    def test_valid_payload_is_accepted(self, entity_type, payload):
        result = validate_insert(entity_type, payload(entity_type))
        assert result.ok, f"{entity_type} rejected: {codes(result)}"
        assert result.record is not None

    @pytest.mark.parametrize("entity_type", ENTITY_TYPES)
    def test_serialized_record_revalidates(self, entity_type, payload):
        """Validate -> serialize -> re-validate yields the same record"""
        first = validate_insert(entity_type, payload(entity_type)).unwrap()
        second = validate_insert(entity_type, to_json_payload(first)).unwrap()
        assert second == first

    def test_kebab_case_entity_type_is_accepted(self, payload):
        assert validate_insert("wallet-operations", payload("wallet_operations")).ok

    def test_camel_case_keys_are_normalized(self, payload):
        data = payload("kyc_workflows")
        data.pop("user_id")
        data["userId"] = "user-7"
        data["assignedReviewer"] = "analyst-2"
        record = validate_insert("kyc_workflows", data).unwrap()
        assert record["user_id"] == "user-7"
        assert record["assigned_reviewer"] == "analyst-2"

    def test_decimal_strings_become_decimals(self, payload):
        record = validate_insert("wallet_operations", payload("wallet_operations")).unwrap()
        assert record["amount"] == Decimal("1.5")
        assert isinstance(record["amount"], Decimal)

    def test_defaults_are_not_filled_in(self, payload):
        record = validate_insert("kyc_workflows", payload("kyc_workflows")).unwrap()
        assert "status" not in record
        assert "kyc_level" not in record


class TestEnumRejection:

    @pytest.mark.parametrize("entity_type", ENTITY_TYPES)
    def test_out_of_set_values_rejected_for_every_enum_field(self, entity_type, payload):
        schema = get_insert_schema(entity_type)
        enum_fields = [name for name, spec in schema.fields.items() if spec.enum_values]
        for field_name in enum_fields:
            result = validate_insert(entity_type, payload(entity_type, **{field_name: "not-a-member"}))
            assert not result.ok
            assert (field_name, "invalid_enum") in codes(result), f"{entity_type}.{field_name} accepted bad value"
            assert result.record is None

    def test_enum_member_is_accepted(self, payload):
        from models import Priority
        record = validate_insert("support_tickets", payload("support_tickets", priority=Priority.HIGH)).unwrap()
        assert record["priority"] == "high"


class TestFieldViolations:

    def test_missing_required_fields(self):
        result = validate_insert("wallet_operations", {"asset": "BTC"})
        assert {("amount", "required"), ("created_by", "required"), ("wallet_type", "required")} <= codes(result)

    def test_unknown_field(self, payload):
        result = validate_insert("kyc_workflows", payload("kyc_workflows", favourite_colour="blue"))
        assert ("favourite_colour", "unknown_field") in codes(result)

    def test_internal_version_column_is_not_accepted(self, payload):
        result = validate_insert("kyc_workflows", payload("kyc_workflows", version=3))
        assert ("version", "unknown_field") in codes(result)

    def test_duplicate_field_in_two_spellings(self, payload):
        result = validate_insert("kyc_workflows", payload("kyc_workflows", userId="user-2"))
        assert ("userId", "duplicate_field") in codes(result)

    def test_null_on_non_nullable_column(self, payload):
        result = validate_insert("kyc_workflows", payload("kyc_workflows", user_id=None))
        assert ("user_id", "null_not_allowed") in codes(result)

    def test_blank_required_string(self, payload):
        result = validate_insert("kyc_workflows", payload("kyc_workflows", user_id="   "))
        assert ("user_id", "empty") in codes(result)

    def test_string_too_long(self, payload):
        result = validate_insert("wallet_operations", payload("wallet_operations", asset="X" * 21))
        assert ("asset", "too_long") in codes(result)

    def test_decimal_scale_exceeded(self, payload):
        result = validate_insert("wallet_operations", payload("wallet_operations", amount="0.123456789"))
        assert ("amount", "scale") in codes(result)

    def test_decimal_precision_exceeded(self, payload):
        result = validate_insert("invoices", payload("invoices", total_amount="12345678901234567.00"))
        assert ("total_amount", "precision") in codes(result)

    def test_wallet_amount_must_be_positive(self, payload):
        result = validate_insert("wallet_operations", payload("wallet_operations", amount="0"))
        assert ("amount", "out_of_range") in codes(result)

    def test_non_numeric_decimal(self, payload):
        result = validate_insert("wallet_operations", payload("wallet_operations", amount="lots"))
        assert ("amount", "invalid_type") in codes(result)

    def test_boolean_is_not_an_integer(self, payload):
        result = validate_insert("kyc_workflows", payload("kyc_workflows", kyc_level=True))
        assert ("kyc_level", "invalid_type") in codes(result)

    def test_kyc_level_range(self, payload):
        result = validate_insert("kyc_workflows", payload("kyc_workflows", kyc_level=4))
        assert ("kyc_level", "out_of_range") in codes(result)

    def test_access_level_range(self, payload):
        result = validate_insert("staff_directory", payload("staff_directory", access_level=0))
        assert ("access_level", "out_of_range") in codes(result)

    def test_json_shape(self, payload):
        result = validate_insert("kyc_workflows", payload("kyc_workflows", documents={"passport": "x"}))
        assert ("documents", "invalid_type") in codes(result)

    def test_invalid_datetime(self, payload):
        result = validate_insert("invoices", payload("invoices", due_date="next tuesday"))
        assert ("due_date", "invalid_type") in codes(result)

    def test_foreign_key_must_be_uuid(self, payload):
        result = validate_insert("affiliate_tracking", payload("affiliate_tracking", program_id="program-1"))
        assert ("program_id", "invalid_format") in codes(result)

    def test_payload_must_be_an_object(self):
        result = validate_insert("kyc_workflows", ["not", "a", "mapping"])
        assert codes(result) == {("$", "invalid_type")}

    def test_every_violation_is_reported_at_once(self, payload):
        result = validate_insert(
            "wallet_operations", payload("wallet_operations", amount="-1", wallet_type="paper", asset="")
        )
        assert {("amount", "out_of_range"), ("wallet_type", "invalid_enum"), ("asset", "empty")} <= codes(result)

    def test_unknown_entity_type(self):
        with pytest.raises(UnknownEntityTypeError):
            validate_insert("spaceships", {})

    def test_unwrap_raises_with_violations(self, payload):
        result = validate_insert("kyc_workflows", payload("kyc_workflows", current_stage="retina"))
        with pytest.raises(ValidationError) as exc_info:
            result.unwrap()
        assert exc_info.value.violations
        assert exc_info.value.to_dict()["violations"][0]["field"] == "current_stage"


class TestCrossFieldRules:

    def test_compliance_report_requires_due_date(self, payload):
        data = payload("compliance_reports")
        data.pop("due_date")
        assert ("due_date", "required") in codes(validate_insert("compliance_reports", data))

    def test_compliance_report_null_due_date(self, payload):
        result = validate_insert("compliance_reports", payload("compliance_reports", due_date=None))
        assert ("due_date", "required") in codes(result)

    def test_invoice_total_below_amount(self, payload):
        result = validate_insert("invoices", payload("invoices", total_amount="999.99"))
        assert ("total_amount", "invariant") in codes(result)

    def test_order_size_bounds(self, payload):
        result = validate_insert(
            "trading_pair_controls",
            payload("trading_pair_controls", min_order_size="10", max_order_size="1"),
        )
        assert ("max_order_size", "invariant") in codes(result)


class TestWorkflowOwnedFields:
    """New rows always start at the beginning of their workflow"""

    @pytest.mark.parametrize("entity_type,overrides", [
        ("kyc_workflows", {"status": "completed"}),
        ("kyc_workflows", {"kyc_level": 3}),
        ("kyc_workflows", {"current_stage": "address"}),
        ("kyc_workflows", {"verification_results": {"email": {"verified": True}}}),
        ("kyc_workflows", {"risk_level": "critical", "approved_by": "mlro-1"}),
        ("wallet_operations", {"status": "in_progress"}),
        ("wallet_operations", {"current_approvals": 1, "approvers": ["treasurer-2"]}),
        ("wallet_operations", {"executed_at": "2025-01-15T12:00:00", "executed_by": "treasurer-2"}),
        ("wallet_operations", {"confirmations": 6, "transaction_hash": "0xabc"}),
        ("compliance_reports", {"filed_at": "2025-01-15T12:00:00"}),
        ("compliance_reports", {"status": "in_progress"}),
        ("board_reports", {"status": "in_progress"}),
        ("board_reports", {"approved_at": "2025-01-15T12:00:00"}),
        ("treasury_reports", {"reconciliation_status": "completed"}),
        ("risk_monitoring", {"status": "completed", "resolved_at": "2025-01-15T12:00:00"}),
        ("support_tickets", {"status": "closed"}),
        ("support_tickets", {"first_response_time": "2025-01-15T12:00:00"}),
        ("security_incidents", {"status": "resolved"}),
        ("security_incidents", {"contained_at": "2025-01-15T12:00:00"}),
        ("security_incidents", {"resolved_at": "2025-01-15T12:00:00"}),
        ("security_alerts", {"status": "resolved"}),
        ("invoices", {"status": "paid"}),
        ("invoices", {"paid_amount": "80.00", "paid_at": "2025-01-15T12:00:00"}),
        ("affiliate_tracking", {"payment_status": "paid"}),
        ("affiliate_tracking", {"commission_earned": "40.00", "commission_paid": "10.00"}),
        ("affiliate_tracking", {"paid_at": "2025-01-15T12:00:00"}),
        ("staff_directory", {"status": "terminated"}),
    ])
    def test_preset_workflow_state_is_rejected(self, entity_type, overrides, payload):
        result = validate_insert(entity_type, payload(entity_type, **overrides))
        assert not result.ok
        assert result.record is None
        owned = {name for name in overrides if get_insert_schema(entity_type).fields[name].workflow}
        assert owned
        assert {(name, "workflow_owned") for name in owned} <= codes(result)

    @pytest.mark.parametrize("entity_type", sorted(StateTransitionService.VALIDATOR_REGISTRY))
    def test_status_field_only_accepts_the_initial_state(self, entity_type):
        validator = StateTransitionService.VALIDATOR_REGISTRY[entity_type]
        spec = get_insert_schema(entity_type).fields[validator.STATUS_FIELD]
        initial = next(iter(validator.VALID_TRANSITIONS))
        assert spec.workflow
        assert spec.initial_value == initial.value

        later_states = [state.value for state in validator.VALID_TRANSITIONS if state != initial]
        for state in later_states:
            result = get_insert_schema(entity_type).validate({validator.STATUS_FIELD: state})
            assert (validator.STATUS_FIELD, "workflow_owned") in codes(result)

    def test_initial_values_may_be_spelled_out(self, payload):
        record = validate_insert(
            "kyc_workflows",
            payload("kyc_workflows", status="pending", current_stage="email", kyc_level=0,
                    verification_results={}, aml_flags=[]),
        ).unwrap()
        assert record["status"] == "pending"
        assert record["kyc_level"] == 0

    def test_zero_commission_paid_is_the_initial_value(self, payload):
        record = validate_insert(
            "affiliate_tracking", payload("affiliate_tracking", commission_paid="0.00"),
        ).unwrap()
        assert record["commission_paid"] == Decimal("0")

    def test_service_managed_fields_stay_settable(self, payload):
        record = validate_insert(
            "security_incidents",
            payload("security_incidents", detected_at="2025-01-15T11:00:00", risk_level="critical",
                    escalation_level=1),
        ).unwrap()
        assert record["risk_level"] == "critical"


class TestUpdateValidation:

    def test_plain_field_change_is_accepted(self):
        result = get_insert_schema("kyc_workflows").validate_update(
            {"assignedReviewer": "analyst-3"}, {"user_id": "user-100"},
        )
        assert result.record == {"assigned_reviewer": "analyst-3"}

    def test_workflow_fields_are_refused(self):
        result = get_insert_schema("kyc_workflows").validate_update(
            {"status": "completed", "kyc_level": 3}, {},
        )
        assert {("status", "workflow_owned"), ("kyc_level", "workflow_owned")} <= codes(result)

    def test_key_and_server_managed_fields_are_refused(self):
        result = get_insert_schema("board_reports").validate_update(
            {"id": "x", "created_at": "2025-01-15T12:00:00"}, {},
        )
        assert {("id", "not_updatable"), ("created_at", "not_updatable")} <= codes(result)

    def test_empty_update_is_rejected(self):
        result = get_insert_schema("board_reports").validate_update({}, {})
        assert codes(result) == {("$", "empty")}

    def test_unknown_field_is_rejected(self):
        result = get_insert_schema("board_reports").validate_update({"shoe_size": 9}, {})
        assert ("shoe_size", "unknown_field") in codes(result)

    def test_values_are_coerced(self):
        result = get_insert_schema("invoices").validate_update(
            {"due_date": "2025-03-01T00:00:00Z"}, {"amount": Decimal("10"), "total_amount": Decimal("10")},
        )
        assert result.record["due_date"] == datetime(2025, 3, 1)

    def test_incident_detection_moved_after_containment(self):
        current = {"detected_at": datetime(2025, 1, 15, 11), "contained_at": datetime(2025, 1, 15, 12)}
        result = get_insert_schema("security_incidents").validate_update(
            {"detected_at": "2025-01-15T13:00:00"}, current,
        )
        assert ("contained_at", "invariant") in codes(result)

    def test_invoice_total_cut_below_paid_amount(self):
        current = {"amount": Decimal("50.00"), "total_amount": Decimal("100.00"), "paid_amount": Decimal("80.00")}
        result = get_insert_schema("invoices").validate_update(
            {"amount": "60.00", "total_amount": "60.00"}, current,
        )
        assert ("paid_amount", "invariant") in codes(result)

    def test_commission_earned_cut_below_paid(self):
        current = {"commission_earned": Decimal("50.00"), "commission_paid": Decimal("40.00")}
        result = get_insert_schema("affiliate_tracking").validate_update(
            {"commission_earned": "30.00"}, current,
        )
        assert ("commission_paid", "invariant") in codes(result)


class TestSchemaDescription:

    def test_describe_lists_enum_values_and_requiredness(self):
        description = get_insert_schema("support-tickets").describe()
        assert description["entity_type"] == "support_tickets"
        assert description["fields"]["status"]["enum"] == ["open", "pending", "resolved", "closed"]
        assert description["fields"]["subject"]["required"] is True
        assert description["fields"]["assigned_to"]["required"] is False

    def test_to_snake_case(self):
        assert to_snake_case("tradingVolume30d") == "trading_volume_30d"
        assert to_snake_case("already_snake") == "already_snake"
