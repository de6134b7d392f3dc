"""HTML email bodies for submission notifications, rendered from templates/."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .lifecycle import parse_iso
from .schemas import EmailContent

TEMPLATES_DIR = Path(__file__).parent / "templates"
LINK_TTL_DAYS = 28
LINK_TTL_NOTE = "Download links remain active for 28 days. Please save any files you need before they expire."


@dataclass
class EmailLink:
    label: str
    href: str


def format_timestamp(iso_timestamp: str) -> str:
    parsed = parse_iso(iso_timestamp)
    if parsed is None:
        return iso_timestamp
    return parsed.strftime("%d/%m/%Y %H:%M:%S UTC")


_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)
_env.filters["timestamp"] = format_timestamp


def _render(template: str, **context) -> str:
    return _env.get_template(template).render(**context)


def build_student_email(
    course_display_name: str,
    completed_at: str,
    files: list[EmailLink],
    student_name: str | None = None,
) -> EmailContent:
    html = _render(
        "student_receipt.html",
        heading="We received your files",
        course=course_display_name,
        completed_at=completed_at,
        links=files,
        student_name=student_name,
        ttl_days=LINK_TTL_DAYS,
    )
    return EmailContent(subject=f"Assignment received - {course_display_name}", html=html)


def build_educator_email(
    course_display_name: str,
    course_code: str,
    completed_at: str,
    files: list[EmailLink],
    educator_name: str | None = None,
    student_name: str | None = None,
    student_id: str | None = None,
    student_email: str | None = None,
    comment: str | None = None,
    reminder_days: int | None = None,
) -> EmailContent:
    who = student_name or student_email or student_id or "Student"
    if reminder_days is None:
        subject = f"[{course_code}] - Assignment Upload by {who}"
        heading = "New student submission"
    else:
        subject = f"[{course_code}] - Reminder: submission by {who} ({reminder_days} days ago)"
        heading = "Submission awaiting review"

    html = _render(
        "educator_submission.html",
        heading=heading,
        course=course_display_name,
        footer=LINK_TTL_NOTE,
        completed_at=completed_at,
        links=files,
        educator_name=educator_name,
        student_name=student_name,
        student_id=student_id,
        student_email=student_email,
        comment=comment,
    )
    return EmailContent(subject=subject, html=html)


def build_viewed_email(course_display_name: str, viewed_at: str, student_name: str | None = None) -> EmailContent:
    html = _render(
        "work_viewed.html",
        heading="Your work has been viewed",
        course=course_display_name,
        viewed_at=viewed_at,
        student_name=student_name,
    )
    return EmailContent(subject=f"Your work has been viewed - {course_display_name}", html=html)


def course_display_name(course_id: str | None, course_name: str | None) -> str:
    if course_name and course_id:
        return f"{course_name} ({course_id})"
    return course_id or "Unknown course"
