"""Atomic transaction utilities for ledger mutations and admin actions"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Optional, TypeVar, Generator
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import OperationalError, IntegrityError

from config import Config
from database import SessionLocal, handle_database_error
from utils.optimistic_locking import OptimisticLockingError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Conflicts that mean "someone else committed first": re-read and try again
CONFLICT_ERRORS = (OptimisticLockingError, StaleDataError, IntegrityError)


class TransactionRetryExhaustedError(Exception):
    """Raised when a transaction keeps conflicting after every retry"""
    pass


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[sessionmaker] = None,
) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    With a provided session, nesting depth is tracked and only the outermost block
    commits. Without one, a fresh session is opened, committed and closed.
    """
    if session is None:
        new_session = (session_factory or SessionLocal)()
        try:
            yield new_session
            new_session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            new_session.rollback()
            logger.debug(f"Sync transaction rolled back due to error: {e}")
            raise
        finally:
            new_session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")

    except Exception as e:
        session.rollback()
        logger.debug(f"Sync transaction rolled back (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def run_in_transaction(
    work: Callable[[Session], T],
    session_factory: Optional[sessionmaker] = None,
    max_retries: Optional[int] = None,
    operation: str = "transaction",
    backoff_seconds: float = 0.05,
) -> T:
    """
    Run ``work(session)`` in a fresh transaction, retrying on optimistic conflicts.

    Every attempt gets a new session so reads inside ``work`` observe the state the
    competing writer committed. ``work`` must therefore be free of side effects outside
    the session. Business errors raised by ``work`` propagate immediately.
    """
    retries = Config.TRANSACTION_MAX_RETRIES if max_retries is None else max_retries
    attempt = 0

    while True:
        attempt += 1
        try:
            with atomic_transaction(session_factory=session_factory) as session:
                return work(session)
        except CONFLICT_ERRORS as e:
            if attempt > retries:
                logger.error(f"❌ {operation}: conflict persisted after {attempt} attempts: {e}")
                raise TransactionRetryExhaustedError(
                    f"{operation} could not commit after {attempt} attempts"
                ) from e
            logger.info(f"🔄 {operation}: concurrent update detected, retrying (attempt {attempt + 1}/{retries + 1})")
        except OperationalError as e:
            if attempt > retries or not handle_database_error(e):
                raise
            logger.info(f"🔄 {operation}: transient database error, retrying (attempt {attempt + 1}/{retries + 1})")

        time.sleep(backoff_seconds * attempt)
