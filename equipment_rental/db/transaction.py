from __future__ import annotations

import logging
import os
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from services.errors import TransactionConflict


T = TypeVar("T")

TRANSACTION_MAX_ATTEMPTS = int(os.environ.get("TRANSACTION_MAX_ATTEMPTS") or "5")
TX_LOGGER = logging.getLogger("equipment_rental.transactions")


def run_transaction(db: Session, work: Callable[[Session], T], *, label: str = "transaction", max_attempts: int | None = None) -> T:
    """Run ``work`` and commit it as one unit.

    ``work`` must do every read it depends on itself, since a conflicting
    commit rolls the session back and the whole callable runs again against
    fresh rows. Any other exception rolls back and propagates unchanged.
    """
    attempts = max(1, max_attempts or TRANSACTION_MAX_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            result = work(db)
            db.commit()
            return result
        except (StaleDataError, OperationalError) as exc:
            db.rollback()
            TX_LOGGER.warning("%s conflicted attempt=%s/%s error=%s", label, attempt, attempts, exc)
        except Exception:
            db.rollback()
            raise
    raise TransactionConflict(f"{label} could not be committed after {attempts} attempts; please retry.")
