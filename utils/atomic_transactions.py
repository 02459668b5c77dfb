"""Atomic transaction utilities for settlement operations"""

import logging
import time
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError

import database
from utils.exception_handler import InfrastructureError, NotFoundError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.

    Without a session, a new one is opened, committed on success, rolled back
    on any error and closed. With a provided session, nesting depth is tracked
    and only the outermost block commits.
    """
    if session is None:
        session = database.SessionLocal()
        logger.debug("Created new session for atomic transaction")
        try:
            yield session
            session.commit()
            logger.debug("Atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Transaction rolled back due to error: {type(e).__name__}: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    setattr(session, '_atomic_transaction_depth', transaction_depth + 1)
    try:
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost transaction committed successfully")
    except Exception as e:
        # Always rollback on error, regardless of nesting
        if transaction_depth == 0:
            session.rollback()
            logger.error(f"Transaction rolled back due to error: {type(e).__name__}: {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def _lock_escrow(session: Session, escrow_id: int, max_retries: int, timeout_seconds: int):
    from models import EscrowTransaction

    start_time = time.time()
    retry_count = 0
    while True:
        if time.time() - start_time > timeout_seconds:
            raise InfrastructureError(f"Lock acquisition timeout for escrow {escrow_id} after {timeout_seconds}s")
        try:
            # populate_existing refreshes any stale copy already in the identity map
            stmt = (
                select(EscrowTransaction)
                .where(EscrowTransaction.id == escrow_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            return session.execute(stmt).scalar_one_or_none()
        except OperationalError as e:
            message = str(e).lower()
            if "deadlock detected" not in message and "lock_timeout" not in message:
                raise
            retry_count += 1
            if retry_count >= max_retries:
                logger.error(f"Max retries exceeded for escrow {escrow_id} deadlock")
                raise
            backoff_time = 0.1 * (2 ** retry_count)
            logger.warning(
                f"Deadlock detected for escrow {escrow_id}, retrying "
                f"({retry_count}/{max_retries}) after {backoff_time}s"
            )
            session.rollback()
            time.sleep(backoff_time)


@contextmanager
def locked_escrow_operation(escrow_id: int, session: Session, timeout_seconds: int = 30, max_retries: int = 3):
    """
    Context manager yielding the escrow row locked for update.

    Mutations on one escrow are serialized by this lock plus the optimistic
    version column on EscrowTransaction. Different escrows never block each other.
    """
    escrow = _lock_escrow(session, escrow_id, max_retries, timeout_seconds)
    if escrow is None:
        raise NotFoundError("escrow", escrow_id)

    # Entries and dispute rows may be stale in the identity map as well
    for entry in escrow.entries:
        session.refresh(entry)
    if escrow.dispute is not None:
        session.refresh(escrow.dispute)

    logger.debug(f"Successfully acquired lock for escrow {escrow_id}")
    yield escrow

