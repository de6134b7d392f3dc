"""Archive worker: turns a completed upload into its final downloadable form.

Jobs arrive at least once. ``process`` either returns or raises; the queue
runtime owns redelivery, backoff and dead-lettering. Reprocessing is safe:
completed submissions are skipped, existing download tokens are reused and
deleting originals that are already gone is not an error. Status writes
only land while the submission is still awaiting archiving, so an overlapping
delivery or an admin delete is never overwritten.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable

from .archive import ZIP_CONTENT_TYPE, create_zip_archive
from .clients import NotificationSender
from .emails import EmailLink, build_educator_email, build_student_email, course_display_name
from .errors import ConflictError, ValidationError
from .lifecycle import ARCHIVABLE_STATUSES, SubmissionStatus, can_transition, to_iso, utcnow
from .repository import CourseLookup, SubmissionStore
from .schemas import ArchiveJob, CourseDetails, FileRecord, SubmissionRecord
from .storage import CHUNK_SIZE, ObjectStore
from .tokens import DEFAULT_TOKEN_TTL_DAYS, assign_missing_tokens, default_expiry, download_url, generate_token

logger = logging.getLogger(__name__)

NO_FILES_ERROR = "No files available for archiving"
MAX_ERROR_LENGTH = 500


class ArchiveWorker:
    def __init__(
        self,
        submissions: SubmissionStore,
        objects: ObjectStore,
        notifier: NotificationSender | None = None,
        courses: CourseLookup | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
        token_ttl_days: int = DEFAULT_TOKEN_TTL_DAYS,
        archive_prefix: str = "archives",
        chunk_size: int = CHUNK_SIZE,
        pipe_chunks: int = 16,
        reply_to_fallback: str = "no-reply@example.com",
    ):
        self.submissions = submissions
        self.objects = objects
        self.notifier = notifier
        self.courses = courses
        self.clock = clock
        self.token_ttl_days = token_ttl_days
        self.archive_prefix = archive_prefix.strip("/")
        self.chunk_size = chunk_size
        self.pipe_chunks = pipe_chunks
        self.reply_to_fallback = reply_to_fallback

    def process(self, job: ArchiveJob | str) -> None:
        if isinstance(job, str):
            job = ArchiveJob(submission_id=job)
        submission_id = job.submission_id
        context = {"submission_id": submission_id}
        stage = "load submission"

        try:
            record = self.submissions.get(submission_id)
            if record is None:
                logger.warning("Submission not found when processing archive job", extra=context)
                return

            if record.status is SubmissionStatus.COMPLETED:
                logger.info("Submission already completed, skipping archive processing", extra=context)
                return
            if not can_transition(record.status, SubmissionStatus.COMPLETED):
                logger.warning(
                    "Submission is not awaiting archiving, dropping job",
                    extra={**context, "status": record.status.value},
                )
                return

            if not record.files:
                logger.warning("Submission has no files for archiving", extra=context)
                stage = "record failure"
                self.submissions.update(
                    submission_id,
                    {
                        "status": SubmissionStatus.ARCHIVE_FAILED,
                        "last_error": NO_FILES_ERROR,
                        "updated_at": to_iso(self.clock()),
                    },
                    expected_status=ARCHIVABLE_STATUSES,
                )
                return

            now = self.clock()
            files, files_need_update = assign_missing_tokens(record.files, now, self.token_ttl_days)
            final_files = files
            archive_key = None

            if len(files) > 1:
                archive_key = f"{self.archive_prefix}/{submission_id}-{int(now.timestamp() * 1000)}.zip"
                stage = "create archive"
                size = create_zip_archive(
                    self.objects,
                    submission_id,
                    files,
                    archive_key,
                    chunk_size=self.chunk_size,
                    max_chunks=self.pipe_chunks,
                )

                stage = "delete originals"
                self.objects.delete([f.object_key for f in files])

                final_files = [
                    FileRecord(
                        object_key=archive_key,
                        file_name=f"{submission_id}.zip",
                        content_type=ZIP_CONTENT_TYPE,
                        size=size,
                        download_token=generate_token(),
                        expires_at=default_expiry(now, self.token_ttl_days),
                    )
                ]
                files_need_update = True

            stage = "update submission"
            completed_at = to_iso(self.clock())
            fields = {
                "status": SubmissionStatus.COMPLETED,
                "completed_at": completed_at,
                "updated_at": completed_at,
            }
            if files_need_update:
                fields["files"] = final_files
            try:
                self.submissions.update(
                    submission_id, fields, remove=["last_error"], expected_status=ARCHIVABLE_STATUSES
                )
            except ConflictError:
                # another delivery completed it, or an admin deleted it meanwhile
                logger.info("Submission changed during archive processing, discarding result", extra=context)
                self._discard_archive(submission_id, archive_key)
                return

        except ValidationError as e:
            # malformed data will not get better on redelivery
            logger.error("Archive job rejected: %s", e, extra=context)
            self._mark_failed(submission_id, str(e))
            return
        except Exception as e:
            logger.exception("Archive processing failed", extra={**context, "stage": stage})
            if self._mark_failed(submission_id, f"Archive processing failed during {stage}: {e}"):
                raise
            return

        logger.info("Submission archived", extra={**context, "files": len(final_files)})
        try:
            self._notify(record, final_files, completed_at, job.download_base_url)
        except Exception:
            logger.exception("Failed to send archive notifications", extra=context)

    def _mark_failed(self, submission_id: str, reason: str) -> bool:
        """Record an archive failure.

        Returns False when the submission has already left the archiving
        states (completed by another delivery or deleted), in which case the
        failure is not written.
        """
        try:
            self.submissions.update(
                submission_id,
                {
                    "status": SubmissionStatus.ARCHIVE_FAILED,
                    "last_error": reason[:MAX_ERROR_LENGTH],
                    "updated_at": to_iso(self.clock()),
                },
                expected_status=ARCHIVABLE_STATUSES,
            )
        except ConflictError:
            logger.info("Submission no longer awaiting archiving, failure not recorded", extra={"submission_id": submission_id})
            return False
        except Exception:
            logger.exception("Failed to update submission after archive failure", extra={"submission_id": submission_id})
        return True

    def _discard_archive(self, submission_id: str, archive_key: str | None) -> None:
        if archive_key is None:
            return
        try:
            current = self.submissions.get(submission_id)
            if current is not None and any(f.object_key == archive_key for f in current.files):
                return
            self.objects.delete([archive_key])
        except Exception:
            logger.exception(
                "Failed to remove superseded archive",
                extra={"submission_id": submission_id, "archive_key": archive_key},
            )

    def _lookup_course(self, course_id: str) -> CourseDetails | None:
        if self.courses is None or not course_id:
            return None
        try:
            return self.courses.get(course_id)
        except Exception:
            logger.exception(
                "Failed to fetch course details for archive notification",
                extra={"course_id": course_id},
            )
            return None

    def _notify(
        self,
        record: SubmissionRecord,
        files: list[FileRecord],
        completed_at: str,
        job_base_url: str | None,
    ) -> None:
        submission_id = record.submission_id
        base_url = job_base_url or record.download_base_url
        if not base_url:
            logger.warning(
                "Skipping notification emails because download base URL is unavailable",
                extra={"submission_id": submission_id},
            )
            return
        if self.notifier is None:
            return

        links = [EmailLink(label=f.label, href=download_url(base_url, submission_id, f.download_token)) for f in files]
        course = self._lookup_course(record.course_id)
        course_name = course.course_name if course and course.course_name else record.course_name
        display_name = course_display_name(record.course_id, course_name)

        educators = list(record.educator_emails)
        if not educators and course and course.educator_email:
            educators = [course.educator_email]
        if not educators and record.course_educator_email:
            educators = [record.course_educator_email]

        if record.student_email:
            content = build_student_email(display_name, completed_at, links, student_name=record.student_name)
            try:
                self.notifier.send([record.student_email], content.subject, content.html)
            except Exception:
                logger.exception("Failed to send archive completion email to student", extra={"submission_id": submission_id})

        if educators:
            content = build_educator_email(
                display_name,
                record.course_id,
                completed_at,
                links,
                educator_name=course.educator_name if course else record.course_educator_name,
                student_name=record.student_name,
                student_id=record.student_id,
                student_email=record.student_email,
                comment=record.comment,
            )
            try:
                self.notifier.send(
                    educators,
                    content.subject,
                    content.html,
                    reply_to=[record.student_email or self.reply_to_fallback],
                )
            except Exception:
                logger.exception("Failed to send archive completion email to educator", extra={"submission_id": submission_id})
