from __future__ import annotations

import datetime as dt
import logging
import secrets
from typing import Callable, Iterable

from .clients import NotificationSender
from .emails import build_viewed_email, course_display_name
from .errors import ExpiredError, NotFoundError
from .lifecycle import parse_iso, to_iso, utcnow
from .repository import SubmissionStore
from .schemas import FileRecord, RedirectTarget, SubmissionRecord
from .storage import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_DAYS = 28
DOWNLOAD_LINK_TTL_SECONDS = 900


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def _unique_token(used: set[str]) -> str:
    token = generate_token()
    while token in used:
        token = generate_token()
    return token


def default_expiry(now: dt.datetime, ttl_days: int = DEFAULT_TOKEN_TTL_DAYS) -> str:
    return to_iso(now + dt.timedelta(days=ttl_days))


def assign_missing_tokens(
    files: Iterable[FileRecord],
    now: dt.datetime,
    ttl_days: int = DEFAULT_TOKEN_TTL_DAYS,
) -> tuple[list[FileRecord], bool]:
    """Give every file a token and an expiry, keeping the ones it already has.

    Returns the new list and whether anything changed. Existing tokens are
    never regenerated, so a redelivered job hands out the same links.
    """
    expiry = default_expiry(now, ttl_days)
    used: set[str] = set()
    result = []
    changed = False

    for f in files:
        token = f.download_token
        if not token or token in used:
            token = _unique_token(used)
            changed = True
        expires_at = f.expires_at
        if not expires_at:
            expires_at = expiry
            changed = True
        used.add(token)
        result.append(f.model_copy(update={"download_token": token, "expires_at": expires_at}))

    return result, changed


def download_url(base_url: str, submission_id: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/downloads/{submission_id}/{token}"


def is_expired(expires_at: str | None, now: dt.datetime) -> bool:
    expiry = parse_iso(expires_at)
    return expiry is None or now > expiry


class DownloadTokenService:
    """Turns a per-file download token into a short-lived retrieval URL."""

    def __init__(
        self,
        submissions: SubmissionStore,
        objects: ObjectStore,
        notifier: NotificationSender | None = None,
        link_ttl_seconds: int = DOWNLOAD_LINK_TTL_SECONDS,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.submissions = submissions
        self.objects = objects
        self.notifier = notifier
        self.link_ttl_seconds = link_ttl_seconds
        self.clock = clock

    def resolve(self, submission_id: str, token: str) -> RedirectTarget:
        record = self.submissions.get(submission_id)
        if record is None:
            raise NotFoundError("Submission not found")

        matched = next((f for f in record.files if f.download_token == token), None)
        if matched is None:
            raise NotFoundError("File not found for token")

        now = self.clock()
        if is_expired(matched.expires_at, now):
            raise ExpiredError("Download link has expired")

        location = self.objects.presign_get(matched.object_key, self.link_ttl_seconds)
        self._record_access(record, now)

        return RedirectTarget(
            location=location,
            object_key=matched.object_key,
            file_name=matched.file_name,
            expires_in=self.link_ttl_seconds,
        )

    def _record_access(self, record: SubmissionRecord, now: dt.datetime) -> None:
        accessed_at = to_iso(now)
        first_access = record.first_accessed_at is None
        fields = {
            "last_accessed_at": accessed_at,
            "access_count": (record.access_count or 0) + 1,
        }
        if first_access:
            fields["first_accessed_at"] = accessed_at

        try:
            self.submissions.update(record.submission_id, fields)
        except Exception:
            logger.exception("Failed to record download access", extra={"submission_id": record.submission_id})
            return

        if first_access:
            self._notify_viewed(record, accessed_at)

    def _notify_viewed(self, record: SubmissionRecord, viewed_at: str) -> None:
        if self.notifier is None or not record.student_email:
            return
        content = build_viewed_email(
            course_display_name(record.course_id, record.course_name),
            viewed_at,
            student_name=record.student_name,
        )
        try:
            self.notifier.send([record.student_email], content.subject, content.html)
        except Exception:
            logger.exception("Failed to send work viewed email", extra={"submission_id": record.submission_id})
