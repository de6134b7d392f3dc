import datetime as dt
import io

import pytest

from submission_archive.errors import ConflictError
from submission_archive.lifecycle import SubmissionStatus, to_iso
from submission_archive.schemas import FileRecord, SubmissionRecord

NOW = dt.datetime(2026, 3, 2, 9, 30, tzinfo=dt.timezone.utc)


class FakeObjectStore:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.calls: list[tuple[str, object]] = []
        self.fail_put = False
        self.fail_delete = False
        self.report_size = True

    def get(self, key):
        self.calls.append(("get", key))
        if key not in self.objects:
            raise FileNotFoundError(key)
        return io.BytesIO(self.objects[key])

    def put(self, key, stream, content_type=None):
        self.calls.append(("put", key))
        if self.fail_put:
            stream.read(10)
            raise ConnectionError("upload failed")
        data = bytearray()
        while True:
            chunk = stream.read(64 * 1024)
            if not chunk:
                break
            data.extend(chunk)
        self.objects[key] = bytes(data)
        return len(data)

    def delete(self, keys):
        keys = list(keys)
        self.calls.append(("delete", keys))
        if self.fail_delete:
            raise ConnectionError("delete failed")
        for key in keys:
            self.objects.pop(key, None)

    def head_size(self, key):
        self.calls.append(("head", key))
        if not self.report_size or key not in self.objects:
            return None
        return len(self.objects[key])

    def presign_get(self, key, ttl_seconds):
        self.calls.append(("presign", key))
        return f"https://objects.test/{key}?ttl={ttl_seconds}"


class FakeSubmissionStore:
    def __init__(self):
        self.records: dict[str, SubmissionRecord] = {}
        self.updates: list[tuple[str, dict, list]] = []
        self.fail_updates = 0

    def add(self, record: SubmissionRecord) -> SubmissionRecord:
        self.records[record.submission_id] = record
        return record

    def get(self, submission_id):
        return self.records.get(submission_id)

    def list_active(self):
        return [r for r in self.records.values() if not r.deleted_at]

    def update(self, submission_id, fields, remove=(), expected_status=None):
        remove = list(remove)
        self.updates.append((submission_id, dict(fields), remove))
        if self.fail_updates:
            self.fail_updates -= 1
            raise ConnectionError("record store unavailable")
        if expected_status is not None and self.records[submission_id].status not in set(expected_status):
            raise ConflictError(f"{submission_id} is {self.records[submission_id].status.value}")
        changes = dict(fields)
        changes.update({name: None for name in remove})
        self.records[submission_id] = self.records[submission_id].model_copy(update=changes)


class FakeNotifier:
    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False

    def send(self, recipients, subject, html_body, reply_to=None):
        if self.fail:
            raise ConnectionError("relay down")
        self.sent.append({"to": list(recipients), "subject": subject, "html": html_body, "reply_to": reply_to})


class FakeCourses:
    def __init__(self, courses=None, fail=False):
        self.courses = courses or {}
        self.fail = fail

    def get(self, course_id):
        if self.fail:
            raise ConnectionError("course table unavailable")
        return self.courses.get(course_id)


class FakeQueue:
    def __init__(self):
        self.jobs = []
        self.fail = False

    def enqueue(self, job):
        if self.fail:
            raise ConnectionError("queue unavailable")
        self.jobs.append(job)


def make_record(submission_id="sub-1", files=(), **overrides) -> SubmissionRecord:
    values = {
        "submission_id": submission_id,
        "course_id": "CS101",
        "created_at": to_iso(NOW - dt.timedelta(hours=1)),
        "status": SubmissionStatus.PENDING_ARCHIVE,
        "student_id": "s-42",
        "student_name": "Ada",
        "student_email": "ada@example.com",
        "educator_emails": ["teacher@example.com"],
        "files": list(files),
        "download_base_url": "https://api.example.com",
    }
    values.update(overrides)
    return SubmissionRecord(**values)


def upload(objects: FakeObjectStore, submission_id: str, name: str, data: bytes) -> FileRecord:
    key = f"uploads/{submission_id}/{name}"
    objects.objects[key] = data
    return FileRecord(object_key=key, file_name=name, content_type="text/plain", size=len(data))


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def objects():
    return FakeObjectStore()


@pytest.fixture
def submissions():
    return FakeSubmissionStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def courses():
    return FakeCourses({})


@pytest.fixture
def job_queue():
    return FakeQueue()
