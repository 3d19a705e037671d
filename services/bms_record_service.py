"""
BMS Record Service
Validated inserts and partial updates, lookups and soft deactivation for every BMS entity type
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import Boolean, Integer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import ENTITY_MODELS, get_model, normalize_entity_type
from services.state_transition_service import StateTransitionService
from utils.atomic_transactions import atomic_transaction, lock_entity
from utils.datetime_helpers import parse_datetime
from utils.exception_handler import (
    EntityNotFoundError,
    InvariantViolationError,
    UnknownEntityTypeError,
    ValidationError,
)
from utils.insert_schema import FieldViolation, get_insert_schema, validate_insert

logger = logging.getLogger(__name__)

# Deactivation target per entity, for tables without an is_active flag
DEACTIVATION_STATUS: Dict[str, tuple] = {
    "staff_directory": ("status", "inactive"),
    "affiliate_tracking": ("payment_status", "cancelled"),
}

# Column the dateFrom/dateTo range applies to, when not created_at
DATE_RANGE_COLUMN: Dict[str, str] = {
    "treasury_reports": "report_date",
}

MAX_PAGE_SIZE = 500


def _model_or_raise(entity_type: str):
    model = get_model(entity_type)
    if model is None:
        raise UnknownEntityTypeError(entity_type)
    return model


def _check_references(session: Session, model, record: Mapping[str, Any]) -> None:
    """Every foreign key in the record must point at an existing parent row"""
    violations = []
    for column in model.__table__.columns:
        value = record.get(column.key)
        if value is None:
            continue
        for foreign_key in column.foreign_keys:
            parent_table = foreign_key.column.table.name
            parent_model = ENTITY_MODELS[parent_table]
            if session.get(parent_model, value) is None:
                violations.append(FieldViolation(
                    column.key, "unknown_reference", f"{parent_table} {value} does not exist",
                ))
    if violations:
        raise ValidationError(
            f"{model.__tablename__} payload references missing records", violations
        )


def require_actor(field_name: str, actor_id: Any) -> str:
    """Staff identifiers on mutating calls must be non-empty strings"""
    if not isinstance(actor_id, str) or not actor_id.strip():
        raise ValidationError(
            f"{field_name} is required",
            [FieldViolation(field_name, "empty", f"{field_name} must be a non-empty string")],
        )
    return actor_id.strip()


def _filter_value(column, value: Any) -> Any:
    """Query-string filters arrive as text; coerce them to the column type"""
    if not isinstance(value, str):
        return value
    if isinstance(column.type, Boolean):
        return value.strip().lower() in ("1", "true", "yes")
    if isinstance(column.type, Integer):
        try:
            return int(value)
        except ValueError:
            raise ValidationError(
                f"Invalid filter value for {column.key}",
                [FieldViolation(column.key, "invalid_type", f"{column.key} must be an integer")],
            )
    return value


def _range_bound(param: str, value: Any) -> datetime:
    if isinstance(value, (str, datetime)):
        try:
            return parse_datetime(value)
        except ValueError:
            pass
    raise ValidationError(
        f"Invalid {param} value {value!r}",
        [FieldViolation(param, "invalid_type", f"{param} must be an ISO-8601 datetime")],
    )


class BMSRecordService:
    """Generic CRUD-without-delete over the BMS tables"""

    @classmethod
    def create_record(cls, session: Session, entity_type: str, payload: Mapping[str, Any]):
        """
        Validate ``payload`` against the generated insert schema and insert it.

        Nothing is written unless the whole record is valid.
        """
        model = _model_or_raise(entity_type)
        record = validate_insert(entity_type, payload).unwrap()

        try:
            with atomic_transaction(session) as tx_session:
                _check_references(tx_session, model, record)
                row = model(**record)
                tx_session.add(row)
                tx_session.flush()
        except IntegrityError as e:
            raise InvariantViolationError(
                f"{model.__tablename__} insert violates a database constraint: {e.orig}"
            ) from e

        logger.info(f"✅ RECORD_CREATED: {model.__tablename__} {row.id}")
        return row

    @classmethod
    def get_record(cls, session: Session, entity_type: str, entity_id: str):
        model = _model_or_raise(entity_type)
        row = session.get(model, entity_id)
        if row is None:
            raise EntityNotFoundError(model.__tablename__, entity_id)
        return row

    @classmethod
    def update_record(cls, session: Session, entity_type: str, entity_id: str, changes: Mapping[str, Any]):
        """
        Apply a partial update of plain data fields to one row.

        Workflow-owned columns only move through their workflow operations;
        the merged row must still satisfy the entity's cross-field rules.
        """
        model = _model_or_raise(entity_type)
        schema = get_insert_schema(entity_type)

        try:
            with atomic_transaction(session) as tx_session:
                row = lock_entity(tx_session, model, entity_id)
                current = {name: getattr(row, name) for name in schema.fields}
                record = schema.validate_update(changes, current).unwrap()
                _check_references(tx_session, model, record)
                for name, value in record.items():
                    setattr(row, name, value)
                tx_session.flush()
        except IntegrityError as e:
            raise InvariantViolationError(
                f"{model.__tablename__} update violates a database constraint: {e.orig}"
            ) from e

        logger.info(f"✏️ RECORD_UPDATED: {model.__tablename__} {entity_id} fields={sorted(record)}")
        return row

    @classmethod
    def list_records(
        cls,
        session: Session,
        entity_type: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 100,
        offset: int = 0,
        date_from: Any = None,
        date_to: Any = None,
    ) -> List[Any]:
        """
        List rows filtered by exact column equality, newest first.

        Unknown filter columns are rejected rather than silently ignored.
        ``date_from``/``date_to`` bound the entity's date column inclusively
        (``report_date`` for treasury reports, ``created_at`` elsewhere).
        """
        model = _model_or_raise(entity_type)
        columns = model.__table__.columns
        query = session.query(model)

        for name, value in (filters or {}).items():
            if name not in columns:
                raise ValidationError(
                    f"Cannot filter {model.__tablename__} by {name}",
                    [FieldViolation(name, "unknown_field", f"{name} is not a field of {model.__tablename__}")],
                )
            query = query.filter(columns[name] == _filter_value(columns[name], value))

        date_column = columns.get(DATE_RANGE_COLUMN.get(model.__tablename__, "created_at"))
        if date_column is not None:
            if date_from is not None:
                query = query.filter(date_column >= _range_bound("dateFrom", date_from))
            if date_to is not None:
                query = query.filter(date_column <= _range_bound("dateTo", date_to))

        if "created_at" in columns:
            query = query.order_by(columns["created_at"].desc(), columns["id"])

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        return query.offset(max(offset, 0)).limit(limit).all()

    @classmethod
    def deactivate_record(cls, session: Session, entity_type: str, entity_id: str):
        """Soft delete: clear is_active or move to the entity's inactive status"""
        model = _model_or_raise(entity_type)
        table_name = normalize_entity_type(entity_type)
        columns = model.__table__.columns

        with atomic_transaction(session) as tx_session:
            row = lock_entity(tx_session, model, entity_id)
            if "is_active" in columns:
                row.is_active = False
            elif table_name in DEACTIVATION_STATUS:
                field_name, target = DEACTIVATION_STATUS[table_name]
                if getattr(row, field_name) != target:
                    StateTransitionService.transition(row, target)
            else:
                raise InvariantViolationError(
                    f"{table_name} rows have no soft-delete state; they are retained as records"
                )

        logger.info(f"🗃️ RECORD_DEACTIVATED: {table_name} {entity_id}")
        return row
