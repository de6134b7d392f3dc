import datetime as dt

import pytest

from conftest import NOW, make_record
from submission_archive.errors import ExpiredError, NotFoundError
from submission_archive.lifecycle import SubmissionStatus, to_iso
from submission_archive.schemas import FileRecord
from submission_archive.tokens import DownloadTokenService, assign_missing_tokens, download_url, is_expired


def _file(key, token=None, expires_at=None):
    return FileRecord(object_key=key, file_name=key.rsplit("/", 1)[-1], download_token=token, expires_at=expires_at)


class TestAssignMissingTokens:
    def test_assigns_tokens_and_default_expiry(self):
        files, changed = assign_missing_tokens([_file("a"), _file("b")], NOW)

        assert changed is True
        assert all(f.download_token for f in files)
        assert {f.expires_at for f in files} == {to_iso(NOW + dt.timedelta(days=28))}

    def test_tokens_are_unique_within_submission(self):
        files, _ = assign_missing_tokens([_file(str(i)) for i in range(50)], NOW)

        assert len({f.download_token for f in files}) == 50

    def test_existing_values_are_kept(self):
        existing = [_file("a", "tok-a", "2026-05-01T00:00:00.000Z"), _file("b", "tok-b", "2026-05-02T00:00:00.000Z")]

        files, changed = assign_missing_tokens(existing, NOW)

        assert changed is False
        assert files == existing

    def test_missing_expiry_only_fills_expiry(self):
        files, changed = assign_missing_tokens([_file("a", "tok-a")], NOW)

        assert changed is True
        assert files[0].download_token == "tok-a"
        assert files[0].expires_at is not None

    def test_duplicate_token_is_replaced(self):
        files, changed = assign_missing_tokens([_file("a", "same", "x"), _file("b", "same", "x")], NOW)

        assert changed is True
        assert files[0].download_token == "same"
        assert files[1].download_token != "same"


def test_download_url_format():
    assert download_url("https://api.example.com/", "sub-1", "tok") == "https://api.example.com/downloads/sub-1/tok"


def test_missing_or_bad_expiry_counts_as_expired():
    assert is_expired(None, NOW)
    assert is_expired("not a date", NOW)
    assert not is_expired(to_iso(NOW), NOW)


@pytest.fixture
def service(submissions, objects, notifier, clock):
    return DownloadTokenService(submissions, objects, notifier, clock=clock)


@pytest.fixture
def completed(submissions):
    files = [_file("archives/sub-1-1.zip", "tok-1", to_iso(NOW + dt.timedelta(days=3)))]
    return submissions.add(make_record(files=files, status=SubmissionStatus.COMPLETED))


def test_resolve_returns_short_lived_redirect(service, completed):
    target = service.resolve("sub-1", "tok-1")

    assert target.location == "https://objects.test/archives/sub-1-1.zip?ttl=900"
    assert target.expires_in == 900
    assert target.object_key == "archives/sub-1-1.zip"


def test_unknown_submission_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.resolve("missing", "tok-1")


def test_unknown_token_is_not_found(service, completed):
    with pytest.raises(NotFoundError):
        service.resolve("sub-1", "tok-unknown")


def test_token_resolved_after_expiry_is_expired_not_missing(submissions, objects, notifier):
    assigned_at = NOW
    files, _ = assign_missing_tokens([_file("uploads/sub-1/a.txt")], assigned_at)
    submissions.add(make_record(files=files, status=SubmissionStatus.COMPLETED))
    later = DownloadTokenService(submissions, objects, notifier, clock=lambda: assigned_at + dt.timedelta(days=29))

    with pytest.raises(ExpiredError):
        later.resolve("sub-1", files[0].download_token)

    assert "uploads/sub-1/a.txt" not in [c[1] for c in objects.calls if c[0] == "presign"]
    assert submissions.updates == []


def test_first_access_is_recorded_and_notified_once(service, submissions, notifier, completed):
    service.resolve("sub-1", "tok-1")
    service.resolve("sub-1", "tok-1")

    record = submissions.get("sub-1")
    assert record.first_accessed_at == to_iso(NOW)
    assert record.last_accessed_at == to_iso(NOW)
    assert record.access_count == 2
    assert len(notifier.sent) == 1
    assert notifier.sent[0]["to"] == ["ada@example.com"]
    assert "viewed" in notifier.sent[0]["subject"]


def test_bookkeeping_failures_do_not_block_redirect(service, submissions, notifier, completed):
    submissions.fail_updates = 1

    target = service.resolve("sub-1", "tok-1")

    assert target.location
    assert notifier.sent == []


def test_notification_failure_does_not_block_redirect(service, submissions, notifier, completed):
    notifier.fail = True

    assert service.resolve("sub-1", "tok-1").location
    assert submissions.get("sub-1").first_accessed_at is not None
