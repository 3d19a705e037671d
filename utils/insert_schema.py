"""
Insert Schema Generation
========================

Builds one insert validator per BMS table straight from the SQLAlchemy column
metadata: required-ness from nullability and defaults, closed value sets from
``info["enum"]``, NUMERIC(p, s) bounds from the column type, integer ranges
from ``info["min"]``/``info["max"]`` and JSON shapes from ``info["shape"]``.

Validation is all-or-nothing: a payload either yields a normalized record or
a list of field-level violations, never a partially accepted record.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import Boolean, DateTime, Integer, JSON, Numeric, String, Text

from models import ENTITY_MODELS, normalize_entity_type
from utils.datetime_helpers import parse_datetime, to_iso
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import UnknownEntityTypeError, ValidationError

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[a-zA-Z])(?=[0-9])")


def to_snake_case(key: str) -> str:
    """kycLevel -> kyc_level, tradingVolume30d -> trading_volume_30d"""
    return _CAMEL_BOUNDARY.sub("_", key).lower()


@dataclass(frozen=True)
class FieldViolation:
    field: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


@dataclass
class ValidationResult:
    """Either ok with a normalized ``record`` or failed with ``violations``"""

    entity_type: str
    record: Optional[Dict[str, Any]] = None
    violations: List[FieldViolation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    def unwrap(self) -> Dict[str, Any]:
        if self.violations:
            raise ValidationError(
                f"{self.entity_type} payload failed validation with {len(self.violations)} violation(s)",
                self.violations,
            )
        return self.record


class _Invalid(Exception):
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class FieldSpec:
    """Validation rules for one column, derived from its metadata"""

    name: str
    kind: str
    required: bool
    nullable: bool
    enum_values: Optional[Tuple[str, ...]] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    max_length: Optional[int] = None
    min_value: Optional[Any] = None
    max_value: Optional[Any] = None
    exclusive_min: bool = False
    shape: Optional[str] = None
    is_uuid: bool = False
    workflow: bool = False
    initial_value: Any = None
    updatable: bool = True

    @classmethod
    def from_column(cls, column) -> "FieldSpec":
        info = column.info
        column_type = column.type

        if isinstance(column_type, Boolean):
            kind = "boolean"
        elif isinstance(column_type, Integer):
            kind = "integer"
        elif isinstance(column_type, Numeric):
            kind = "decimal"
        elif isinstance(column_type, DateTime):
            kind = "datetime"
        elif isinstance(column_type, JSON):
            kind = "json"
        elif isinstance(column_type, (String, Text)):
            kind = "string"
        else:
            raise TypeError(f"Unsupported column type {column_type!r} on {column.name}")

        has_default = column.default is not None or column.server_default is not None
        required = not column.nullable and not has_default and not column.primary_key

        shape = info.get("shape") or ("dict" if kind == "json" else None)
        if column.default is None:
            initial_value = None
        elif column.default.is_scalar:
            initial_value = column.default.arg
        elif kind == "json":
            initial_value = [] if shape == "list" else {}
        else:
            initial_value = None

        workflow = bool(info.get("workflow"))
        updatable = not (
            workflow
            or column.primary_key
            or column.server_default is not None
            or info.get("write_once")
        )

        enum_cls = info.get("enum")
        return cls(
            name=column.key,
            kind=kind,
            required=required,
            nullable=column.nullable,
            enum_values=tuple(m.value for m in enum_cls) if enum_cls else None,
            precision=getattr(column_type, "precision", None) if kind == "decimal" else None,
            scale=getattr(column_type, "scale", None) if kind == "decimal" else None,
            max_length=getattr(column_type, "length", None) if kind == "string" else None,
            min_value=info.get("min"),
            max_value=info.get("max"),
            exclusive_min=bool(info.get("exclusive_min")),
            shape=shape,
            is_uuid=bool(info.get("uuid")) or column.primary_key,
            workflow=workflow,
            initial_value=initial_value,
            updatable=updatable,
        )

    def coerce(self, value: Any) -> Any:
        """Return the normalized value or raise _Invalid"""
        if value is None:
            if self.nullable:
                return None
            raise _Invalid("null_not_allowed", f"{self.name} may not be null")

        coercer = getattr(self, f"_coerce_{self.kind}")
        return coercer(value)

    def _check_range(self, value) -> None:
        if self.min_value is not None:
            too_low = value <= self.min_value if self.exclusive_min else value < self.min_value
            if too_low:
                bound = "greater than" if self.exclusive_min else "at least"
                raise _Invalid("out_of_range", f"{self.name} must be {bound} {self.min_value}")
        if self.max_value is not None and value > self.max_value:
            raise _Invalid("out_of_range", f"{self.name} must be at most {self.max_value}")

    def _coerce_string(self, value: Any) -> str:
        if isinstance(value, Enum):
            value = value.value
        if not isinstance(value, str):
            raise _Invalid("invalid_type", f"{self.name} must be a string")

        if self.enum_values is not None:
            if value not in self.enum_values:
                raise _Invalid(
                    "invalid_enum",
                    f"{self.name} must be one of {', '.join(self.enum_values)}; got {value!r}",
                )
            return value

        if self.required and not value.strip():
            raise _Invalid("empty", f"{self.name} must be a non-empty string")
        if self.max_length is not None and len(value) > self.max_length:
            raise _Invalid("too_long", f"{self.name} exceeds {self.max_length} characters")
        if self.is_uuid:
            try:
                return str(uuid.UUID(value))
            except ValueError:
                raise _Invalid("invalid_format", f"{self.name} must be a UUID")
        return value

    def _coerce_integer(self, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Invalid("invalid_type", f"{self.name} must be an integer")
        self._check_range(value)
        return value

    def _coerce_decimal(self, value: Any) -> Decimal:
        try:
            amount = MonetaryDecimal.to_decimal(value, self.name)
        except ValueError:
            raise _Invalid("invalid_type", f"{self.name} must be a decimal number")

        exceeded = MonetaryDecimal.check_precision(amount, self.precision, self.scale)
        if exceeded == "scale":
            raise _Invalid("scale", f"{self.name} allows at most {self.scale} decimal places")
        if exceeded == "precision":
            raise _Invalid(
                "precision",
                f"{self.name} exceeds NUMERIC({self.precision}, {self.scale}) integer digits",
            )
        self._check_range(amount)
        return amount

    def _coerce_boolean(self, value: Any) -> bool:
        if not isinstance(value, bool):
            raise _Invalid("invalid_type", f"{self.name} must be a boolean")
        return value

    def _coerce_datetime(self, value: Any) -> datetime:
        if not isinstance(value, (str, datetime)):
            raise _Invalid("invalid_type", f"{self.name} must be an ISO-8601 datetime")
        try:
            return parse_datetime(value)
        except ValueError:
            raise _Invalid("invalid_type", f"{self.name} must be an ISO-8601 datetime")

    def _coerce_json(self, value: Any) -> Any:
        expected = list if self.shape == "list" else dict
        if not isinstance(value, expected):
            raise _Invalid("invalid_type", f"{self.name} must be a JSON {self.shape}")
        return value

    def describe(self) -> Dict[str, Any]:
        data = {"type": self.kind, "required": self.required, "nullable": self.nullable}
        if self.enum_values:
            data["enum"] = list(self.enum_values)
        if self.kind == "decimal":
            data["precision"] = self.precision
            data["scale"] = self.scale
        if self.min_value is not None:
            data["min"] = str(self.min_value) if isinstance(self.min_value, Decimal) else self.min_value
        if self.max_value is not None:
            data["max"] = self.max_value
        if self.shape:
            data["shape"] = self.shape
        if self.workflow:
            data["workflow"] = True
        elif not self.updatable:
            data["updatable"] = False
        return data


CrossFieldRule = Callable[[Mapping[str, Any]], List[FieldViolation]]


# ----------------------------------------------------------------------------
# Cross-field rules, applied to inserts and to the merged row on update
# ----------------------------------------------------------------------------

def _compliance_due_date(record: Mapping[str, Any]) -> List[FieldViolation]:
    # every regulatory report type carries a filing deadline
    if record.get("due_date") is None:
        return [FieldViolation(
            "due_date", "required",
            f"due_date is required for {record.get('report_type')} reports",
        )]
    return []


def _affiliate_commission(record: Mapping[str, Any]) -> List[FieldViolation]:
    earned = record.get("commission_earned") or Decimal("0")
    paid = record.get("commission_paid") or Decimal("0")
    if paid > earned:
        return [FieldViolation(
            "commission_paid", "invariant",
            f"commission_paid {paid} exceeds commission_earned {earned}",
        )]
    return []


def _incident_timestamps(record: Mapping[str, Any]) -> List[FieldViolation]:
    violations = []
    ordered = ("detected_at", "contained_at", "resolved_at")
    previous_name, previous = None, None
    for name in ordered:
        current = record.get(name)
        if current is None:
            continue
        if previous is not None and current < previous:
            violations.append(FieldViolation(
                name, "invariant", f"{name} must not precede {previous_name}",
            ))
        previous_name, previous = name, current
    return violations


def _invoice_totals(record: Mapping[str, Any]) -> List[FieldViolation]:
    violations = []
    amount = record.get("amount")
    total = record.get("total_amount")
    if amount is not None and total is not None and total < amount:
        violations.append(FieldViolation(
            "total_amount", "invariant", "total_amount must be at least amount",
        ))
    paid = record.get("paid_amount")
    if paid is not None and total is not None and paid > total:
        violations.append(FieldViolation(
            "paid_amount", "invariant", "paid_amount must not exceed total_amount",
        ))
    return violations


def _order_size_bounds(record: Mapping[str, Any]) -> List[FieldViolation]:
    low, high = record.get("min_order_size"), record.get("max_order_size")
    if low is not None and high is not None and low > high:
        return [FieldViolation("max_order_size", "invariant", "max_order_size must be at least min_order_size")]
    return []


CROSS_FIELD_RULES: Dict[str, List[CrossFieldRule]] = {
    "compliance_reports": [_compliance_due_date],
    "affiliate_tracking": [_affiliate_commission],
    "security_incidents": [_incident_timestamps],
    "invoices": [_invoice_totals],
    "trading_pair_controls": [_order_size_bounds],
}


class InsertSchema:
    """Insert validator generated from one model's table metadata"""

    def __init__(self, entity_type: str, fields: Dict[str, FieldSpec],
                 rules: Optional[List[CrossFieldRule]] = None):
        self.entity_type = entity_type
        self.fields = fields
        self.rules = list(rules or [])

    @classmethod
    def from_model(cls, model) -> "InsertSchema":
        fields = {}
        for column in model.__table__.columns:
            if column.info.get("internal"):
                continue
            fields[column.key] = FieldSpec.from_column(column)
        entity_type = model.__tablename__
        return cls(entity_type, fields, CROSS_FIELD_RULES.get(entity_type))

    @property
    def required_fields(self) -> List[str]:
        return [name for name, spec in self.fields.items() if spec.required]

    def _normalize_keys(self, payload: Mapping[str, Any],
                        violations: List[FieldViolation]) -> Dict[str, Any]:
        normalized = {}
        for key, value in payload.items():
            name = key if key in self.fields else to_snake_case(key)
            if name not in self.fields:
                violations.append(FieldViolation(key, "unknown_field", f"{key} is not a field of {self.entity_type}"))
                continue
            if name in normalized:
                violations.append(FieldViolation(key, "duplicate_field", f"{name} supplied more than once"))
                continue
            normalized[name] = value
        return normalized

    def validate(self, payload: Any) -> ValidationResult:
        if not isinstance(payload, Mapping):
            return ValidationResult(
                self.entity_type,
                violations=[FieldViolation("$", "invalid_type", "payload must be a JSON object")],
            )

        violations: List[FieldViolation] = []
        values = self._normalize_keys(payload, violations)

        for name in self.required_fields:
            if name not in values:
                violations.append(FieldViolation(name, "required", f"{name} is required"))

        record: Dict[str, Any] = {}
        for name, value in values.items():
            spec = self.fields[name]
            try:
                coerced = spec.coerce(value)
            except _Invalid as invalid:
                violations.append(FieldViolation(name, invalid.code, invalid.message))
                continue
            # New rows start at the beginning of their workflow
            if spec.workflow and coerced != spec.initial_value:
                violations.append(FieldViolation(
                    name, "workflow_owned",
                    f"{name} is managed by the {self.entity_type} workflow and cannot be set on insert",
                ))
                continue
            record[name] = coerced

        # Cross-field rules only see fully typed records
        if not violations:
            for rule in self.rules:
                violations.extend(rule(record))

        if violations:
            logger.info(
                f"❌ INSERT_VALIDATION: {self.entity_type} rejected "
                f"({', '.join(f'{v.field}:{v.code}' for v in violations)})"
            )
            return ValidationResult(self.entity_type, violations=violations)

        return ValidationResult(self.entity_type, record=record)

    def validate_update(self, changes: Any, current: Mapping[str, Any]) -> ValidationResult:
        """
        Validate a partial update against the row's ``current`` column values.

        Only plain data fields may change: workflow-owned, write-once, key and
        server-managed columns are refused. Cross-field rules run on the row
        as it would look after the update.
        """
        if not isinstance(changes, Mapping):
            return ValidationResult(
                self.entity_type,
                violations=[FieldViolation("$", "invalid_type", "payload must be a JSON object")],
            )

        violations: List[FieldViolation] = []
        values = self._normalize_keys(changes, violations)
        if not values and not violations:
            violations.append(FieldViolation("$", "empty", "an update must change at least one field"))

        record: Dict[str, Any] = {}
        for name, value in values.items():
            spec = self.fields[name]
            if spec.workflow:
                violations.append(FieldViolation(
                    name, "workflow_owned", f"{name} is managed by the {self.entity_type} workflow",
                ))
                continue
            if not spec.updatable:
                violations.append(FieldViolation(name, "not_updatable", f"{name} cannot be changed"))
                continue
            try:
                record[name] = spec.coerce(value)
            except _Invalid as invalid:
                violations.append(FieldViolation(name, invalid.code, invalid.message))

        if not violations:
            merged = {**current, **record}
            for rule in self.rules:
                violations.extend(rule(merged))

        if violations:
            logger.info(
                f"❌ UPDATE_VALIDATION: {self.entity_type} rejected "
                f"({', '.join(f'{v.field}:{v.code}' for v in violations)})"
            )
            return ValidationResult(self.entity_type, violations=violations)

        return ValidationResult(self.entity_type, record=record)

    def describe(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "fields": {name: spec.describe() for name, spec in self.fields.items()},
        }


@lru_cache(maxsize=None)
def _schema_for(table_name: str) -> InsertSchema:
    return InsertSchema.from_model(ENTITY_MODELS[table_name])


def get_insert_schema(entity_type: str) -> InsertSchema:
    table_name = normalize_entity_type(entity_type)
    if table_name not in ENTITY_MODELS:
        raise UnknownEntityTypeError(entity_type)
    return _schema_for(table_name)


def validate_insert(entity_type: str, payload: Any) -> ValidationResult:
    """Validate an insert payload for ``entity_type`` against its generated schema"""
    return get_insert_schema(entity_type).validate(payload)


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, datetime):
        return to_iso(value)
    return value


def to_json_payload(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Serialize a validated record to JSON-safe values (decimals as strings)"""
    return {key: _json_value(value) for key, value in record.items()}


def serialize_row(row) -> Dict[str, Any]:
    """Serialize an ORM row, every column included, for API responses"""
    return {
        column.key: _json_value(getattr(row, column.key))
        for column in row.__table__.columns
    }
