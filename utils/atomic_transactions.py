"""Atomic transaction utilities for BMS workflow and approval operations"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional, Type

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import SQLAlchemyError, OperationalError

from database import SessionLocal
from models import Base, get_model
from utils.exception_handler import (
    ConcurrentModificationError,
    EntityNotFoundError,
    UnknownEntityTypeError,
)

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    With no session a new one is opened, committed and closed. With a provided
    session the transaction depth is tracked so nested blocks defer the commit
    to the outermost one. A lost update detected through a version column is
    re-raised as ConcurrentModificationError.
    """
    session_provided = session is not None
    if not session_provided:
        session = SessionLocal()
        logger.debug("Created new sync session for atomic transaction")

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    try:
        setattr(session, "_atomic_transaction_depth", transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")
        else:
            logger.debug(
                f"Nested sync transaction completed (depth: {transaction_depth + 1}), deferring commit to outermost"
            )

    except StaleDataError as e:
        session.rollback()
        logger.warning(f"⚠️ CONCURRENT_MODIFICATION: transaction rolled back: {e}")
        raise ConcurrentModificationError(
            "Record was modified by another transaction; reload and retry"
        ) from e
    except Exception as e:
        # Always rollback on error, regardless of nesting
        session.rollback()
        logger.error(f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))
        if not session_provided:
            session.close()


def lock_entity(session: Session, model: Type[Base], entity_id: str) -> Any:
    """
    Load one row with SELECT ... FOR UPDATE.

    Raises EntityNotFoundError if the row does not exist.
    """
    try:
        entity = (
            session.query(model)
            .filter(model.id == entity_id)
            .with_for_update()
            .first()
        )
    except OperationalError as e:
        if "deadlock detected" in str(e).lower() or "lock_timeout" in str(e).lower():
            logger.warning(f"🔒 LOCK_CONTENTION: {model.__tablename__} {entity_id}: {e}")
            raise ConcurrentModificationError(
                f"{model.__tablename__} {entity_id} is locked by another transaction"
            ) from e
        raise
    except SQLAlchemyError as e:
        logger.error(f"Database error locking {model.__tablename__} {entity_id}: {e}")
        raise

    if entity is None:
        raise EntityNotFoundError(model.__tablename__, entity_id)

    logger.debug(f"🔒 Locked {model.__tablename__} {entity_id}")
    return entity


@contextmanager
def locked_entity(
    entity_type: str, entity_id: str, session: Session
) -> Generator[Any, None, None]:
    """
    Open an atomic transaction and yield the row-locked entity.

    Usage:
        with locked_entity("wallet_operations", op_id, session) as op:
            op.current_approvals += 1
    """
    model = get_model(entity_type)
    if model is None:
        raise UnknownEntityTypeError(entity_type)

    with atomic_transaction(session) as tx_session:
        yield lock_entity(tx_session, model, entity_id)
