"""Operator views of submissions: the status view and the admin listing."""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field

from .lifecycle import archive_transition_at, deletion_at, parse_iso
from .repository import SubmissionStore
from .schemas import (
    FileSummary,
    SubmissionListItem,
    SubmissionPage,
    SubmissionRecord,
    SubmissionStatusOut,
    sum_file_sizes,
)

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100

# sortField value -> SubmissionRecord attribute
_SORT_ATTRS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "completedAt": "completed_at",
    "lastAccessedAt": "last_accessed_at",
    "courseId": "course_id",
    "courseName": "course_name",
    "educatorName": "course_educator_name",
    "studentName": "student_name",
    "status": "status",
}
_DATE_SORTS = {"createdAt", "updatedAt", "completedAt", "lastAccessedAt"}
SORT_FIELDS = (*_SORT_ATTRS, "fileCount", "totalSize")


def status_view(record: SubmissionRecord) -> SubmissionStatusOut:
    return SubmissionStatusOut(
        submission_id=record.submission_id,
        status=record.status,
        course_id=record.course_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
        archive_requested_at=record.archive_requested_at,
        completed_at=record.completed_at,
        last_error=record.last_error,
        files=[
            FileSummary(file_name=f.label, content_type=f.content_type, size=f.size, expires_at=f.expires_at)
            for f in record.files
        ],
        file_count=len(record.files),
        total_size=sum_file_sizes(record.files),
        first_accessed_at=record.first_accessed_at,
        last_accessed_at=record.last_accessed_at,
        archive_transition_at=archive_transition_at(record.completed_at, record.created_at),
        deletion_at=deletion_at(record.completed_at, record.created_at),
        deleted_at=record.deleted_at,
    )


def list_item(record: SubmissionRecord) -> SubmissionListItem:
    return SubmissionListItem(
        **status_view(record).model_dump(),
        course_name=record.course_name,
        educator_name=record.course_educator_name,
        educator_emails=record.educator_emails,
        student_id=record.student_id,
        student_name=record.student_name,
        student_email=record.student_email,
        comment=record.comment,
        reminder_count=record.reminder_count or 0,
        last_reminder_at=record.last_reminder_at,
    )


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _to_int(value: str | None) -> int | None:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


@dataclass
class SubmissionQuery:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    search: str = ""
    statuses: list[str] = field(default_factory=list)
    course_ids: list[str] = field(default_factory=list)
    educator_emails: list[str] = field(default_factory=list)
    student: str = ""
    accessed: str = ""
    created_after: dt.datetime | None = None
    created_before: dt.datetime | None = None
    sort_field: str = "createdAt"
    descending: bool = True

    @classmethod
    def from_params(
        cls,
        page: str | None = None,
        page_size: str | None = None,
        search: str | None = None,
        status: str | None = None,
        course_id: str | None = None,
        educator_email: str | None = None,
        student: str | None = None,
        accessed: str | None = None,
        created_after: str | None = None,
        created_before: str | None = None,
        sort_field: str | None = None,
        sort_order: str | None = None,
    ) -> "SubmissionQuery":
        """Lenient parsing of the listing query string.

        Bad numbers fall back to the defaults, unknown sort fields sort by
        ``createdAt`` and anything but ``asc`` sorts descending.
        """
        requested_size = _to_int(page_size)
        requested_page = _to_int(page)
        return cls(
            page=requested_page if requested_page and requested_page > 0 else 1,
            page_size=min(max(requested_size, 1), MAX_PAGE_SIZE) if requested_size is not None else DEFAULT_PAGE_SIZE,
            search=(search or "").strip().lower(),
            statuses=[s.upper() for s in _split(status)],
            course_ids=[c.lower() for c in _split(course_id)],
            educator_emails=[e.lower() for e in _split(educator_email)],
            student=(student or "").strip().lower(),
            accessed=(accessed or "").strip().lower(),
            created_after=parse_iso(created_after),
            created_before=parse_iso(created_before),
            sort_field=sort_field if sort_field in SORT_FIELDS else "createdAt",
            descending=sort_order != "asc",
        )


def _matches(record: SubmissionRecord, query: SubmissionQuery) -> bool:
    if query.statuses and record.status.value not in query.statuses:
        return False
    if query.course_ids and record.course_id.lower() not in query.course_ids:
        return False
    if query.educator_emails and not any(e.lower() in query.educator_emails for e in record.educator_emails):
        return False

    if query.student:
        fields = [record.student_name, record.student_email, record.student_id]
        if not any(query.student in value.lower() for value in fields if value):
            return False

    created = parse_iso(record.created_at)
    if created is not None:
        if query.created_after and created < query.created_after:
            return False
        if query.created_before and created > query.created_before:
            return False

    if query.accessed == "viewed" and not record.last_accessed_at:
        return False
    if query.accessed == "not_viewed" and record.last_accessed_at:
        return False

    if not query.search:
        return True
    searchable = [
        record.submission_id,
        record.course_id,
        record.course_name,
        record.course_educator_name,
        record.student_name,
        record.student_email,
        record.student_id,
        record.status.value,
        record.comment,
        *(f.file_name for f in record.files),
    ]
    return any(query.search in value.lower() for value in searchable if value)


def _sort_key(record: SubmissionRecord, sort_field: str):
    if sort_field == "fileCount":
        return len(record.files)
    if sort_field == "totalSize":
        return sum_file_sizes(record.files)
    value = getattr(record, _SORT_ATTRS[sort_field])
    if sort_field in _DATE_SORTS:
        parsed = parse_iso(value)
        return parsed.timestamp() if parsed else -math.inf
    if sort_field == "status":
        return value.value.lower()
    return (value or "").lower()


def list_submissions(submissions: SubmissionStore, query: SubmissionQuery) -> SubmissionPage:
    """One page of the active submissions matching ``query``.

    A page past the end is clamped to the last page.
    """
    matched = [r for r in submissions.list_active() if _matches(r, query)]
    matched.sort(key=lambda r: _sort_key(r, query.sort_field), reverse=query.descending)

    total_count = len(matched)
    total_pages = max(1, math.ceil(total_count / query.page_size))
    page = min(query.page, total_pages)
    start = (page - 1) * query.page_size

    return SubmissionPage(
        items=[list_item(r) for r in matched[start : start + query.page_size]],
        page=page,
        page_size=query.page_size,
        total_pages=total_pages,
        total_count=total_count,
    )
