"""
Write-once column guards.

Columns flagged with ``info={"write_once": True}`` (e.g. compliance_reports.filed_at)
may go from NULL to a value exactly once. Any later assignment of a different
value raises ImmutableFieldError before the change ever reaches the database.
"""

import logging
from typing import List, Tuple

from sqlalchemy import event
from sqlalchemy.orm import attributes

from models import ENTITY_MODELS
from utils.exception_handler import ImmutableFieldError

logger = logging.getLogger(__name__)

_registered = False


def _unset(value) -> bool:
    return value is None or value is attributes.NO_VALUE or value is attributes.NEVER_SET


def write_once_columns() -> List[Tuple[type, str]]:
    found = []
    for model in ENTITY_MODELS.values():
        for column in model.__table__.columns:
            if column.info.get("write_once"):
                found.append((model, column.key))
    return found


def _make_guard(entity_type: str, field_name: str):
    def guard(target, value, oldvalue, initiator):
        if _unset(oldvalue) or value == oldvalue:
            return value
        logger.warning(
            f"🚫 IMMUTABLE_FIELD: rejected change of {entity_type}.{field_name} "
            f"on {getattr(target, 'id', None)} ({oldvalue} -> {value})"
        )
        raise ImmutableFieldError(entity_type, field_name)

    return guard


def register_immutable_field_guards() -> int:
    """Attach the guard to every write-once column; safe to call more than once"""
    global _registered
    if _registered:
        return 0

    count = 0
    for model, field_name in write_once_columns():
        event.listen(
            getattr(model, field_name),
            "set",
            _make_guard(model.__tablename__, field_name),
            active_history=True,
            retval=True,
        )
        count += 1

    _registered = True
    logger.info(f"✅ IMMUTABLE_FIELDS: guarding {count} write-once column(s)")
    return count
