"""Submission status vocabulary, legal transitions and derived scheduling."""

from __future__ import annotations

import datetime as dt
from enum import Enum

from .errors import InvalidTransitionError

ARCHIVE_TRANSITION_DAYS = 30
DELETION_DAYS = 180


class SubmissionStatus(str, Enum):
    PENDING = "PENDING"
    PENDING_ARCHIVE = "PENDING_ARCHIVE"
    COMPLETED = "COMPLETED"
    ARCHIVE_FAILED = "ARCHIVE_FAILED"
    ARCHIVE_QUEUE_FAILED = "ARCHIVE_QUEUE_FAILED"
    DELETED = "DELETED"


_FORWARD: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.PENDING_ARCHIVE}),
    SubmissionStatus.PENDING_ARCHIVE: frozenset(
        {
            SubmissionStatus.PENDING_ARCHIVE,
            SubmissionStatus.COMPLETED,
            SubmissionStatus.ARCHIVE_FAILED,
            SubmissionStatus.ARCHIVE_QUEUE_FAILED,
        }
    ),
    # a failed submission can be completed again, which re-queues the archive job
    SubmissionStatus.ARCHIVE_FAILED: frozenset(
        {SubmissionStatus.ARCHIVE_FAILED, SubmissionStatus.PENDING_ARCHIVE, SubmissionStatus.COMPLETED}
    ),
    # the enqueue call can fail after the broker accepted the message
    SubmissionStatus.ARCHIVE_QUEUE_FAILED: frozenset(
        {SubmissionStatus.PENDING_ARCHIVE, SubmissionStatus.COMPLETED, SubmissionStatus.ARCHIVE_FAILED}
    ),
    SubmissionStatus.COMPLETED: frozenset(),
    SubmissionStatus.DELETED: frozenset(),
}

# statuses in which an archive job may still write to the record
ARCHIVABLE_STATUSES = frozenset(
    {SubmissionStatus.PENDING_ARCHIVE, SubmissionStatus.ARCHIVE_FAILED, SubmissionStatus.ARCHIVE_QUEUE_FAILED}
)


def can_transition(current: SubmissionStatus | str, target: SubmissionStatus | str) -> bool:
    current = SubmissionStatus(current)
    target = SubmissionStatus(target)
    if target is SubmissionStatus.DELETED:
        return current is not SubmissionStatus.DELETED
    return target in _FORWARD[current]


def ensure_transition(current: SubmissionStatus | str, target: SubmissionStatus | str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(SubmissionStatus(current).value, SubmissionStatus(target).value)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_iso(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _schedule_base(completed_at: str | None, created_at: str | None) -> dt.datetime | None:
    return parse_iso(completed_at or created_at)


def archive_transition_at(completed_at: str | None, created_at: str | None) -> str | None:
    """When storage tiering moves the files to cold storage. Informational only."""
    base = _schedule_base(completed_at, created_at)
    if base is None:
        return None
    return to_iso(base + dt.timedelta(days=ARCHIVE_TRANSITION_DAYS))


def deletion_at(completed_at: str | None, created_at: str | None) -> str | None:
    """When the storage retention policy purges the files. Informational only."""
    base = _schedule_base(completed_at, created_at)
    if base is None:
        return None
    return to_iso(base + dt.timedelta(days=DELETION_DAYS))
