"""Timer lifecycle.

A user has at most one running entry. The ``ActiveTimer`` row is the only
place that decides which one: every start, stop and resume swaps it with a
conditional write in the same transaction as the entry changes, so two
concurrent starts cannot both succeed.
"""
import logging
from datetime import datetime

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from models import ActiveTimer, TimeEntry, utcnow
from timecalc import ONE_SECOND, as_utc

logger = logging.getLogger(__name__)


class TimerConflict(Exception):
    """Another request changed the running timer first."""


class NoRunningTimer(Exception):
    pass


def current_timer(session: Session, user_id: str) -> TimeEntry | None:
    pointer = session.get(ActiveTimer, user_id)
    if pointer is None:
        return None
    return session.get(TimeEntry, pointer.entry_id)


def close_entry(entry: TimeEntry, now: datetime) -> None:
    """Stop a running entry, adding the elapsed time to its stored duration."""
    elapsed = (as_utc(now) - as_utc(entry.start_time)) // ONE_SECOND
    entry.duration = (entry.duration or 0) + max(elapsed, 0)
    entry.end_time = now
    entry.is_running = False
    entry.updated_at = now


def _swap_pointer(session: Session, user_id: str, expected: str | None, new: str | None) -> None:
    """Move the user's active-timer pointer from ``expected`` to ``new``.

    ``None`` on either side means "no running timer".
    """
    if expected is None:
        if new is not None:
            session.add(ActiveTimer(user_id=user_id, entry_id=new))
            # Primary key on user_id rejects a concurrent insert
            session.flush()
        return

    condition = (ActiveTimer.user_id == user_id) & (ActiveTimer.entry_id == expected)
    if new is None:
        stmt = delete(ActiveTimer).where(condition)
    else:
        stmt = update(ActiveTimer).where(condition).values(entry_id=new, updated_at=utcnow())
    result = session.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        raise TimerConflict(f"Running timer for {user_id} changed concurrently")


def _commit_swap(session: Session, user_id: str, expected: str | None, new: str | None) -> None:
    try:
        _swap_pointer(session, user_id, expected, new)
        session.commit()
    except (IntegrityError, TimerConflict) as e:
        session.rollback()
        logger.warning(f"Timer conflict for user {user_id}: {e}")
        raise TimerConflict(str(e)) from e
    session.expire_all()


def _stop_current(session: Session, user_id: str, now: datetime) -> str | None:
    """Close the running entry (if any) without committing; returns its id."""
    pointer = session.get(ActiveTimer, user_id)
    if pointer is None:
        return None
    running = session.get(TimeEntry, pointer.entry_id)
    if running is not None and running.is_running:
        close_entry(running, now)
        session.add(running)
    return pointer.entry_id


def start_timer(
    session: Session,
    user_id: str,
    project_id: str,
    task: str = "",
    tags: list[str] | None = None,
    now: datetime | None = None,
) -> TimeEntry:
    """Start a new running entry, stopping the current one first."""
    now = now or utcnow()
    expected = _stop_current(session, user_id, now)

    entry = TimeEntry(
        user_id=user_id,
        project_id=project_id,
        task=task,
        tags=list(tags or []),
        start_time=now,
        end_time=None,
        duration=0,
        is_running=True,
    )
    session.add(entry)
    session.flush()
    entry_id = entry.id

    _commit_swap(session, user_id, expected, entry_id)
    logger.info(f"Started timer {entry_id} for user {user_id} (stopped: {expected})")
    return session.get(TimeEntry, entry_id)


def stop_timer(session: Session, user_id: str, now: datetime | None = None) -> TimeEntry:
    now = now or utcnow()
    expected = _stop_current(session, user_id, now)
    if expected is None:
        raise NoRunningTimer(f"No running timer for user {user_id}")

    _commit_swap(session, user_id, expected, None)
    logger.info(f"Stopped timer {expected} for user {user_id}")
    return session.get(TimeEntry, expected)


def resume_entry(session: Session, user_id: str, entry: TimeEntry, now: datetime | None = None) -> TimeEntry:
    """Restart a closed entry, keeping the duration it already accumulated."""
    if entry.is_running:
        return entry
    now = now or utcnow()
    entry_id = entry.id
    expected = _stop_current(session, user_id, now)

    entry.start_time = now
    entry.end_time = None
    entry.is_running = True
    entry.updated_at = now
    session.add(entry)

    _commit_swap(session, user_id, expected, entry_id)
    logger.info(f"Resumed entry {entry_id} for user {user_id}")
    return session.get(TimeEntry, entry_id)


def release_pointer(session: Session, user_id: str, entry_id: str) -> None:
    """Drop the active-timer pointer if it still points at ``entry_id``."""
    session.execute(
        delete(ActiveTimer)
        .where((ActiveTimer.user_id == user_id) & (ActiveTimer.entry_id == entry_id))
        .execution_options(synchronize_session=False)
    )
