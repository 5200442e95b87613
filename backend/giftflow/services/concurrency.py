# Overview: Row locking, retry and compare-and-set helpers shared by the order services.

from __future__ import annotations

import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking to a guard counter or order read.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; version_id columns still
    surface lost updates there as StaleDataError.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation, retrying deadlocks and optimistic-lock conflicts.

    The session is rolled back before each retry so func() always starts
    from fresh state.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def compare_and_set(model, row_id, *, where, values: dict) -> bool:
    """
    Single conditional UPDATE: apply values only while every `where`
    criterion still holds. Returns True when this caller won the row.

    The row's version_id is bumped so concurrent ORM writers holding the old
    version fail with StaleDataError instead of overwriting.
    """
    values = dict(values)
    if hasattr(model, "version_id"):
        values[model.version_id] = model.version_id + 1
    rowcount = (
        db.session.query(model)
        .filter(model.id == row_id, *where)
        .update(values, synchronize_session=False)
    )
    return rowcount == 1


def get_or_create(model, *, defaults: dict | None = None, **lookup):
    """
    Fetch a row by unique lookup, creating and committing it when absent.

    A concurrent insert of the same key makes our commit fail; roll back and
    re-read the winner's row.
    """
    instance = db.session.query(model).filter_by(**lookup).one_or_none()
    if instance is not None:
        return instance
    params = dict(lookup)
    params.update(defaults or {})
    instance = model(**params)
    db.session.add(instance)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        instance = db.session.query(model).filter_by(**lookup).one()
    return instance
