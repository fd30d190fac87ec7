"""DB-backed lease so only one instance runs the reconciliation sweeper."""
from __future__ import annotations

import os
import socket
from datetime import timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import db
from app.models.scheduler_lock import SchedulerLock
from app.utils.time import ensure_utc, utcnow

LOCK_NAME = "reconciliation-sweeper"
LOCK_TTL_SECONDS = 300


def _session(db_session: Session | None = None) -> tuple[Session, bool]:
    if db_session is not None:
        return db_session, False
    return db.get_sessionmaker()(), True


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
) -> bool:
    """Take the lock if it is free, expired or already ours.

    Both paths are single atomic statements: a unique insert for a missing
    row, and a conditional update for an expired or self-owned one.
    """

    session, should_close = _session(db_session)
    owner = _owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)

    try:
        result = session.execute(
            update(SchedulerLock)
            .where(
                SchedulerLock.name == name,
                (SchedulerLock.owner == owner)
                | SchedulerLock.expires_at.is_(None)
                | (SchedulerLock.expires_at <= now),
            )
            .values(owner=owner, acquired_at=now, expires_at=expires, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            session.commit()
            return True
        session.rollback()

        try:
            session.add(SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
    finally:
        if should_close:
            session.close()


def refresh_scheduler_lock(
    name: str = LOCK_NAME, *, ttl_seconds: int = LOCK_TTL_SECONDS, db_session: Session | None = None
) -> bool:
    """Extend our lease; returns False when another instance took it over."""

    session, should_close = _session(db_session)
    now = utcnow()
    try:
        result = session.execute(
            update(SchedulerLock)
            .where(SchedulerLock.name == name, SchedulerLock.owner == _owner_id())
            .values(expires_at=now + timedelta(seconds=ttl_seconds), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1
    finally:
        if should_close:
            session.close()


def release_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> None:
    """Release the scheduler lock if held by this runner."""

    session, should_close = _session(db_session)
    try:
        session.execute(
            delete(SchedulerLock)
            .where(SchedulerLock.name == name, SchedulerLock.owner == _owner_id())
            .execution_options(synchronize_session=False)
        )
        session.commit()
    finally:
        if should_close:
            session.close()


def describe_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> dict[str, object]:
    """Return a lightweight description of the current scheduler lock state."""

    session, should_close = _session(db_session)
    try:
        lock = session.execute(
            select(SchedulerLock).where(SchedulerLock.name == name).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if lock is None:
            return {"status": "none", "owner": None, "present": False}

        now = utcnow()
        acquired_at = ensure_utc(lock.acquired_at)
        expires_at = ensure_utc(lock.expires_at)
        expires_in = (expires_at - now).total_seconds() if expires_at else None
        return {
            "status": "owned_by_self" if lock.owner == _owner_id() else "owned_by_other",
            "owner": lock.owner,
            "present": True,
            "age_seconds": (now - acquired_at).total_seconds() if acquired_at else None,
            "expires_in_seconds": expires_in,
            "stale": expires_in is not None and expires_in < 0,
        }
    finally:
        if should_close:
            session.close()


__all__ = [
    "LOCK_NAME",
    "LOCK_TTL_SECONDS",
    "describe_scheduler_lock",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
    "try_acquire_scheduler_lock",
]
