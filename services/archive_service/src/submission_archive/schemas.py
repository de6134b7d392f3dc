from __future__ import annotations

import math
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError
from .lifecycle import SubmissionStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_item(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class FileRecord(CamelModel):
    object_key: str
    file_name: str | None = None
    content_type: str | None = None
    size: int | None = None
    download_token: str | None = None
    expires_at: str | None = None

    @property
    def label(self) -> str:
        return self.file_name or self.object_key


class SubmissionRecord(CamelModel):
    submission_id: str
    course_id: str
    created_at: str
    status: SubmissionStatus = SubmissionStatus.PENDING

    course_name: str | None = None
    course_educator_name: str | None = None
    course_educator_email: str | None = None
    educator_emails: list[str] = Field(default_factory=list)

    student_id: str | None = None
    student_name: str | None = None
    student_email: str | None = None
    comment: str | None = None

    files: list[FileRecord] = Field(default_factory=list)

    updated_at: str | None = None
    archive_requested_at: str | None = None
    completed_at: str | None = None
    first_accessed_at: str | None = None
    last_accessed_at: str | None = None
    access_count: int | None = None
    last_reminder_at: str | None = None
    last_reminder_by: str | None = None
    reminder_count: int | None = None
    last_error: str | None = None
    deleted_at: str | None = None
    deleted_by: str | None = None
    download_base_url: str | None = None

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "SubmissionRecord":
        """Build a record from a raw stored item.

        Rejects items missing ``submissionId``, ``courseId`` or ``createdAt``
        and unknown status values. File entries without an ``objectKey`` are
        dropped rather than failing the whole record.
        """
        submission_id = _optional_str(item.get("submissionId"))
        course_id = _optional_str(item.get("courseId"))
        created_at = _optional_str(item.get("createdAt"))

        if not submission_id:
            raise ValidationError("Submission record is missing submissionId")
        if not course_id:
            raise ValidationError("Submission record is missing courseId")
        if not created_at:
            raise ValidationError("Submission record is missing createdAt")

        status = _optional_str(item.get("status")) or SubmissionStatus.PENDING.value
        if status not in SubmissionStatus.__members__:
            raise ValidationError(f"Submission record has unknown status {status!r}")

        raw_files = item.get("files")
        files = []
        for entry in raw_files if isinstance(raw_files, list) else []:
            parsed = _file_from_item(entry)
            if parsed is not None:
                files.append(parsed)

        data = {
            "submissionId": submission_id,
            "courseId": course_id,
            "createdAt": created_at,
            "status": status,
            "educatorEmails": normalize_emails(item.get("educatorEmails")),
            "files": files,
            "accessCount": _optional_int(item.get("accessCount")),
            "reminderCount": _optional_int(item.get("reminderCount")),
        }
        for key in (
            "courseName",
            "courseEducatorName",
            "courseEducatorEmail",
            "studentId",
            "studentName",
            "studentEmail",
            "comment",
            "updatedAt",
            "archiveRequestedAt",
            "completedAt",
            "firstAccessedAt",
            "lastAccessedAt",
            "lastReminderAt",
            "lastReminderBy",
            "lastError",
            "deletedAt",
            "deletedBy",
            "downloadBaseUrl",
        ):
            data[key] = _optional_str(item.get(key))

        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Submission record {submission_id} is invalid: {e}") from e


class ArchiveJob(CamelModel):
    submission_id: str
    requested_at: str | None = None
    download_base_url: str | None = None

    @classmethod
    def from_message(cls, body: Mapping[str, Any]) -> "ArchiveJob":
        submission_id = _optional_str(body.get("submissionId"))
        if not submission_id:
            raise ValidationError("Archive job message is missing submissionId")
        return cls(
            submission_id=submission_id,
            requested_at=_optional_str(body.get("requestedAt")),
            download_base_url=_optional_str(body.get("downloadBaseUrl")),
        )


class CourseDetails(BaseModel):
    course_name: str | None = None
    educator_name: str | None = None
    educator_email: str | None = None


class RedirectTarget(BaseModel):
    location: str
    object_key: str
    file_name: str | None = None
    expires_in: int


class EmailContent(BaseModel):
    subject: str
    html: str


# ---------------------------------------------------------------------------
# HTTP payloads


class CompleteUploadRequest(CamelModel):
    comment: str | None = None
    student_email: str | None = None
    student_name: str | None = None
    educator_emails: list[str] | None = None


class FileSummary(CamelModel):
    file_name: str | None = None
    content_type: str | None = None
    size: int | None = None
    expires_at: str | None = None


class SubmissionStatusOut(CamelModel):
    submission_id: str
    status: SubmissionStatus
    course_id: str
    created_at: str
    updated_at: str | None = None
    archive_requested_at: str | None = None
    completed_at: str | None = None
    last_error: str | None = None
    files: list[FileSummary] = Field(default_factory=list)
    file_count: int = 0
    total_size: int = 0
    first_accessed_at: str | None = None
    last_accessed_at: str | None = None
    archive_transition_at: str | None = None
    deletion_at: str | None = None
    deleted_at: str | None = None


class SubmissionListItem(SubmissionStatusOut):
    course_name: str | None = None
    educator_name: str | None = None
    educator_emails: list[str] = Field(default_factory=list)
    student_id: str | None = None
    student_name: str | None = None
    student_email: str | None = None
    comment: str | None = None
    reminder_count: int = 0
    last_reminder_at: str | None = None


class SubmissionPage(CamelModel):
    items: list[SubmissionListItem] = Field(default_factory=list)
    page: int
    page_size: int
    total_pages: int
    total_count: int


class CompleteUploadResponse(CamelModel):
    submission_id: str
    status: SubmissionStatus


def normalize_emails(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        return []
    seen: list[str] = []
    for entry in value:
        email = entry.strip() if isinstance(entry, str) else ""
        if email and email not in seen:
            seen.append(email)
    return seen


def sum_file_sizes(files: list[FileRecord]) -> int:
    return sum(f.size for f in files if isinstance(f.size, int))


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return None


def _file_from_item(entry: Any) -> FileRecord | None:
    if not isinstance(entry, Mapping):
        return None
    object_key = _optional_str(entry.get("objectKey"))
    if not object_key:
        return None
    return FileRecord(
        object_key=object_key,
        file_name=_optional_str(entry.get("fileName")),
        content_type=_optional_str(entry.get("contentType")),
        size=_optional_int(entry.get("size")),
        download_token=_optional_str(entry.get("downloadToken")),
        expires_at=_optional_str(entry.get("expiresAt")),
    )
