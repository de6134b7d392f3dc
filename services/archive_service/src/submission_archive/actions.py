from __future__ import annotations

import datetime as dt
import logging
from typing import Callable

from .clients import NotificationSender
from .emails import EmailLink, build_educator_email, course_display_name
from .errors import ConflictError, GoneError, NotFoundError, ServiceUnavailable
from .lifecycle import SubmissionStatus, ensure_transition, parse_iso, to_iso, utcnow
from .queueing import JobQueue
from .repository import CourseLookup, SubmissionStore
from .schemas import ArchiveJob, CompleteUploadRequest, SubmissionRecord, normalize_emails
from .storage import ObjectStore
from .tokens import download_url

logger = logging.getLogger(__name__)

UNKNOWN_ADMIN = "unknown-admin"


def resolve_actor(actor: str | None) -> str:
    return actor.strip() if actor and actor.strip() else UNKNOWN_ADMIN


class SubmissionActions:
    """Upload completion and the admin operations on a submission."""

    def __init__(
        self,
        submissions: SubmissionStore,
        objects: ObjectStore,
        queue: JobQueue,
        notifier: NotificationSender | None = None,
        courses: CourseLookup | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.submissions = submissions
        self.objects = objects
        self.queue = queue
        self.notifier = notifier
        self.courses = courses
        self.clock = clock

    def _load(self, submission_id: str) -> SubmissionRecord:
        record = self.submissions.get(submission_id)
        if record is None:
            raise NotFoundError("Submission not found")
        return record

    def complete_upload(
        self,
        submission_id: str,
        request: CompleteUploadRequest,
        download_base_url: str,
    ) -> SubmissionStatus:
        """Mark the upload complete and queue the archive job.

        If the job cannot be queued the submission is left in
        ``ARCHIVE_QUEUE_FAILED`` instead of ``PENDING_ARCHIVE`` and the
        error is re-raised.
        """
        record = self._load(submission_id)
        if record.status is SubmissionStatus.DELETED:
            raise GoneError("Submission has been deleted")
        if record.status is SubmissionStatus.COMPLETED:
            return record.status
        ensure_transition(record.status, SubmissionStatus.PENDING_ARCHIVE)

        requested_at = to_iso(self.clock())
        fields = {
            "status": SubmissionStatus.PENDING_ARCHIVE,
            "archive_requested_at": requested_at,
            "updated_at": requested_at,
            "download_base_url": download_base_url,
        }
        if request.comment:
            fields["comment"] = request.comment
        if request.student_email:
            fields["student_email"] = request.student_email
        if request.student_name:
            fields["student_name"] = request.student_name
        if request.educator_emails is not None:
            fields["educator_emails"] = normalize_emails(request.educator_emails)
        self.submissions.update(submission_id, fields, remove=["last_error"])

        job = ArchiveJob(submission_id=submission_id, requested_at=requested_at, download_base_url=download_base_url)
        try:
            self.queue.enqueue(job)
        except Exception as e:
            logger.exception("Failed to enqueue archive job", extra={"submission_id": submission_id})
            try:
                self.submissions.update(
                    submission_id,
                    {
                        "status": SubmissionStatus.ARCHIVE_QUEUE_FAILED,
                        "last_error": f"Failed to enqueue archive job: {e}",
                        "updated_at": to_iso(self.clock()),
                    },
                )
            except Exception:
                logger.exception("Failed to record enqueue failure", extra={"submission_id": submission_id})
            raise

        logger.info("Archive job queued", extra={"submission_id": submission_id})
        return SubmissionStatus.PENDING_ARCHIVE

    def delete_submission(self, submission_id: str, actor: str | None) -> bool:
        """Purge the stored objects and mark the submission deleted.

        Metadata is kept for audit. Returns False when it was already deleted.
        """
        record = self._load(submission_id)
        if record.deleted_at or record.status is SubmissionStatus.DELETED:
            return False
        ensure_transition(record.status, SubmissionStatus.DELETED)

        keys = [f.object_key for f in record.files]
        if keys:
            self.objects.delete(keys)

        now = to_iso(self.clock())
        self.submissions.update(
            submission_id,
            {
                "status": SubmissionStatus.DELETED,
                "deleted_at": now,
                "deleted_by": resolve_actor(actor),
                "updated_at": now,
                "files": [],
            },
            remove=["last_error"],
        )
        logger.info("Submission deleted", extra={"submission_id": submission_id, "objects": len(keys)})
        return True

    def remind_submission(self, submission_id: str, actor: str | None) -> int:
        """Re-send the educator email with the current download links.

        Returns the reminder count after this reminder.
        """
        record = self._load(submission_id)
        if record.deleted_at or record.status is SubmissionStatus.DELETED:
            raise GoneError("Submission has been deleted")
        if not record.files:
            raise ConflictError("No files available for reminder")

        base_url = record.download_base_url
        if not base_url:
            raise ConflictError("Download links are unavailable for this submission")

        course = None
        if self.courses is not None:
            try:
                course = self.courses.get(record.course_id)
            except Exception:
                logger.exception("Failed to fetch course details for reminder", extra={"submission_id": submission_id})

        educators = list(record.educator_emails)
        if not educators and record.course_educator_email:
            educators = [record.course_educator_email]
        if not educators and course and course.educator_email:
            educators = [course.educator_email]
        if not educators:
            raise ConflictError("No educator email addresses found for this submission")

        links = [
            EmailLink(label=f.label, href=download_url(base_url, submission_id, f.download_token))
            for f in record.files
            if f.download_token
        ]
        if not links:
            raise ConflictError("Download links are unavailable for this submission")

        now = self.clock()
        created = parse_iso(record.created_at)
        days_since = max(0, (now - created).days) if created else 0
        course_name = record.course_name or (course.course_name if course else None)

        content = build_educator_email(
            course_display_name(record.course_id, course_name),
            record.course_id,
            record.completed_at or record.created_at,
            links,
            educator_name=record.course_educator_name or (course.educator_name if course else None),
            student_name=record.student_name,
            student_id=record.student_id,
            student_email=record.student_email,
            comment=record.comment,
            reminder_days=days_since,
        )

        if self.notifier is None:
            raise ServiceUnavailable("Email configuration missing")
        try:
            self.notifier.send(educators, content.subject, content.html)
        except Exception as e:
            logger.exception("Failed to send educator reminder email", extra={"submission_id": submission_id})
            raise ServiceUnavailable(f"Failed to send reminder email: {e}") from e

        reminder_count = (record.reminder_count or 0) + 1
        stamp = to_iso(now)
        try:
            self.submissions.update(
                submission_id,
                {
                    "last_reminder_at": stamp,
                    "last_reminder_by": resolve_actor(actor),
                    "updated_at": stamp,
                    "reminder_count": reminder_count,
                },
            )
        except Exception:
            logger.exception("Failed to record reminder metadata", extra={"submission_id": submission_id})
        return reminder_count
