import datetime as dt
from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base


class Submission(Base):
    __tablename__ = "submissions"

    submission_id: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING", index=True)
    course_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    course_name: Mapped[str | None] = mapped_column(String, nullable=True)
    course_educator_name: Mapped[str | None] = mapped_column(String, nullable=True)
    course_educator_email: Mapped[str | None] = mapped_column(String, nullable=True)
    educator_emails: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    student_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    student_name: Mapped[str | None] = mapped_column(String, nullable=True)
    student_email: Mapped[str | None] = mapped_column(String, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    # list of file dicts, always replaced as a whole
    files: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # ISO8601 strings, same as the job messages and the API
    created_at: Mapped[str] = mapped_column(String, nullable=False, index=True)
    updated_at: Mapped[str | None] = mapped_column(String, nullable=True)
    archive_requested_at: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_at: Mapped[str | None] = mapped_column(String, nullable=True)
    first_accessed_at: Mapped[str | None] = mapped_column(String, nullable=True)
    last_accessed_at: Mapped[str | None] = mapped_column(String, nullable=True)
    access_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    last_reminder_at: Mapped[str | None] = mapped_column(String, nullable=True)
    last_reminder_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reminder_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[str | None] = mapped_column(String, nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    download_base_url: Mapped[str | None] = mapped_column(String, nullable=True)


class Course(Base):
    __tablename__ = "courses"

    course_code: Mapped[str] = mapped_column(String, primary_key=True)
    course_name: Mapped[str | None] = mapped_column(String, nullable=True)
    educator_name: Mapped[str | None] = mapped_column(String, nullable=True)
    educator_email: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=lambda: dt.datetime.utcnow(), nullable=False)
