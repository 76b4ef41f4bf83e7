"""
Transaction boundary for mutating service operations.

Usage:
    with atomic(ctx):
        ...  # flushes, inserts, updates

Commits on success and rolls back on any exception, which is re-raised.
Nested ``atomic`` blocks join the outermost transaction, so public service
operations can call each other without committing halfway.

Concurrency failures are normalised to ``VersionConflictError``:
  - IntegrityError:  a unique constraint (version number, step state,
                      draft, patch sequence) was hit by a concurrent writer
  - StaleDataError:  an ApplicationStepState row changed under us
                      (optimistic ``lock_version`` check)
"""

import logging
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from appflow.core.exceptions import VersionConflictError
from appflow.models import db

logger = logging.getLogger(__name__)

_DEPTH_KEY = "appflow_atomic_depth"


def _apply_statement_timeout(timeout_ms):
    if not timeout_ms:
        return
    if db.session.get_bind().dialect.name != "postgresql":
        return
    db.session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))


@contextmanager
def atomic(ctx=None):
    """Run the enclosed block as one transaction (see module docstring)."""
    info = db.session.info
    depth = info.get(_DEPTH_KEY, 0)
    if depth:
        info[_DEPTH_KEY] = depth + 1
        try:
            yield db.session
        finally:
            info[_DEPTH_KEY] = depth
        return

    timeout_ms = getattr(ctx, "timeout_ms", None) or current_app.config.get("STATEMENT_TIMEOUT_MS")
    info[_DEPTH_KEY] = 1
    try:
        _apply_statement_timeout(timeout_ms)
        yield db.session
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Unique constraint conflict, transaction rolled back: %s", exc.orig)
        raise VersionConflictError("Concurrent write conflict; retry the request") from exc
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale row detected, transaction rolled back: %s", exc)
        raise VersionConflictError("Step state changed concurrently; retry the request") from exc
    except Exception:
        db.session.rollback()
        raise
    finally:
        info[_DEPTH_KEY] = 0
