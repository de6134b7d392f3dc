from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Iterable, Mapping, Protocol

from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy import update as sql_update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import SessionLocal
from .errors import ConflictError, NotFoundError, TransientInfraError, ValidationError
from .lifecycle import SubmissionStatus
from .models import Course, Submission
from .schemas import CourseDetails, SubmissionRecord

logger = logging.getLogger(__name__)

_COLUMNS = frozenset(c.key for c in Submission.__table__.columns)


class SubmissionStore(Protocol):
    def get(self, submission_id: str) -> SubmissionRecord | None: ...

    def list_active(self) -> list[SubmissionRecord]: ...

    def update(
        self,
        submission_id: str,
        fields: Mapping[str, Any],
        remove: Iterable[str] = (),
        expected_status: Iterable[SubmissionStatus] | None = None,
    ) -> None: ...


class CourseLookup(Protocol):
    def get(self, course_id: str) -> CourseDetails | None: ...


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, mode="json")
    if isinstance(value, (list, tuple)):
        return [_column_value(v) for v in value]
    return value


def _row_to_item(row: Submission) -> dict[str, Any]:
    return {to_camel(name): getattr(row, name) for name in _COLUMNS}


class SqlSubmissionStore:
    """Submission records in the ``submissions`` table.

    Field names passed to ``update`` are the snake_case attribute names of
    ``SubmissionRecord``; ``files`` is always written as a whole list.
    """

    def __init__(self, session_factory: sessionmaker[Session] = SessionLocal):
        self._session_factory = session_factory

    def get(self, submission_id: str) -> SubmissionRecord | None:
        try:
            with self._session_factory() as db:
                row = db.get(Submission, submission_id)
                item = _row_to_item(row) if row else None
        except SQLAlchemyError as e:
            raise TransientInfraError(f"Failed to load submission {submission_id}: {e}") from e
        if item is None:
            return None
        return SubmissionRecord.from_item(item)

    def insert(self, record: SubmissionRecord) -> None:
        values = {name: _column_value(getattr(record, name)) for name in _COLUMNS}
        try:
            with self._session_factory() as db:
                db.add(Submission(**values))
                db.commit()
        except SQLAlchemyError as e:
            raise TransientInfraError(f"Failed to store submission {record.submission_id}: {e}") from e

    def list_active(self) -> list[SubmissionRecord]:
        """All submissions not deleted by an admin, oldest first.

        Rows that fail validation are skipped with a warning.
        """
        stmt = select(Submission).where(Submission.deleted_at.is_(None)).order_by(Submission.created_at)
        try:
            with self._session_factory() as db:
                items = [_row_to_item(row) for row in db.scalars(stmt)]
        except SQLAlchemyError as e:
            raise TransientInfraError(f"Failed to list submissions: {e}") from e

        records = []
        for item in items:
            try:
                records.append(SubmissionRecord.from_item(item))
            except ValidationError as e:
                logger.warning("Skipping malformed submission record: %s", e, extra={"submission_id": item.get("submissionId")})
        return records

    def update(
        self,
        submission_id: str,
        fields: Mapping[str, Any],
        remove: Iterable[str] = (),
        expected_status: Iterable[SubmissionStatus] | None = None,
    ) -> None:
        """Apply a partial update in one statement.

        With ``expected_status`` the row is only written while its status is
        one of those values; otherwise ``ConflictError`` is raised and nothing
        changes.
        """
        remove = list(remove)
        unknown = (set(fields) | set(remove)) - _COLUMNS
        if unknown:
            raise ValidationError(f"Unknown submission fields: {sorted(unknown)}")
        if "submission_id" in fields or "submission_id" in remove:
            raise ValidationError("submissionId cannot be changed")
        values = {name: _column_value(value) for name, value in fields.items()}
        values.update({name: None for name in remove})
        if not values:
            raise ValidationError("Nothing to update")

        stmt = sql_update(Submission).where(Submission.submission_id == submission_id)
        if expected_status is not None:
            allowed = sorted(SubmissionStatus(s).value for s in expected_status)
            stmt = stmt.where(Submission.status.in_(allowed))

        try:
            with self._session_factory() as db:
                result = db.execute(stmt.values(**values))
                if result.rowcount == 0:
                    row = db.get(Submission, submission_id)
                    if row is None:
                        raise NotFoundError(f"Submission {submission_id} not found")
                    raise ConflictError(f"Submission {submission_id} is {row.status}, not updated")
                db.commit()
        except SQLAlchemyError as e:
            raise TransientInfraError(f"Failed to update submission {submission_id}: {e}") from e


class SqlCourseLookup:
    def __init__(self, session_factory: sessionmaker[Session] = SessionLocal):
        self._session_factory = session_factory

    def get(self, course_id: str) -> CourseDetails | None:
        try:
            with self._session_factory() as db:
                row = db.get(Course, course_id)
                if not row:
                    return None
                return CourseDetails(
                    course_name=row.course_name,
                    educator_name=row.educator_name,
                    educator_email=row.educator_email,
                )
        except SQLAlchemyError as e:
            raise TransientInfraError(f"Failed to load course {course_id}: {e}") from e
