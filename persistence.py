"""Single-commit unit of work with bounded optimistic retry."""

import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from errors import ConcurrentModificationConflict
from models import db


logger = logging.getLogger(__name__)

T = TypeVar('T')


def atomic(operation: Callable[[], T], retries: int = 3) -> T:
    """Run ``operation`` and commit once.

    ``operation`` must load everything it mutates itself, because a retry
    starts from a rolled-back session.  A version mismatch on flush
    (``StaleDataError``) or a unique-index collision (``IntegrityError``,
    e.g. two first-use wallet inserts or two captures of one transaction id)
    means another writer got there first; the operation is rerun up to
    ``retries`` more times before ``ConcurrentModificationConflict`` is
    raised.  Any other exception rolls back and propagates unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = operation()
            db.session.commit()
            return result
        except (StaleDataError, IntegrityError) as exc:
            db.session.rollback()
            if attempt > retries:
                logger.warning('Giving up after %d conflicting attempts: %s', attempt, exc)
                raise ConcurrentModificationConflict(
                    'The record was modified concurrently, please retry') from exc
            logger.warning('Concurrent modification detected (attempt %d), retrying', attempt)
        except Exception:
            db.session.rollback()
            raise
