import io
import threading
import zipfile

import pytest

from conftest import FakeObjectStore, upload
from submission_archive.archive import ArchiveStreamError, BoundedPipe, archive_entry_names, create_zip_archive
from submission_archive.schemas import FileRecord


def _names(*names):
    return [FileRecord(object_key=f"k/{i}", file_name=n) for i, n in enumerate(names)]


class TestEntryNames:
    def test_flat_names_are_kept(self):
        assert archive_entry_names("sub-1", _names("a.txt", "b.txt")) == ["a.txt", "b.txt"]

    def test_any_nested_name_prefixes_all(self):
        assert archive_entry_names("sub-1", _names("a.txt", "dir/b.txt")) == ["sub-1/a.txt", "sub-1/dir/b.txt"]

    def test_object_key_used_when_name_missing(self):
        files = [FileRecord(object_key="uploads/x/a.txt"), FileRecord(object_key="flat", file_name="b.txt")]

        assert archive_entry_names("sub-1", files) == ["sub-1/uploads/x/a.txt", "sub-1/b.txt"]


class TestBoundedPipe:
    def test_reader_sees_writes_in_order(self):
        pipe = BoundedPipe(max_chunks=2)

        def produce():
            for i in range(20):
                pipe.write(bytes([i]) * 3)
            pipe.close()

        thread = threading.Thread(target=produce)
        thread.start()
        data = pipe.read()
        thread.join()

        assert data == b"".join(bytes([i]) * 3 for i in range(20))
        assert pipe.read(5) == b""

    def test_sized_reads(self):
        pipe = BoundedPipe(max_chunks=4)
        pipe.write(b"hello ")
        pipe.write(b"world")
        pipe.close()

        assert pipe.read(3) == b"hel"
        assert pipe.read(100) == b"lo world"
        assert pipe.read(1) == b""

    def test_producer_error_surfaces_on_read(self):
        pipe = BoundedPipe()
        pipe.write(b"partial")
        pipe.close(error=OSError("disk gone"))

        with pytest.raises(ArchiveStreamError):
            pipe.read()

    def test_abort_unblocks_writer(self):
        pipe = BoundedPipe(max_chunks=1)
        pipe.write(b"fills the buffer")
        pipe.abort()

        with pytest.raises(BrokenPipeError):
            pipe.write(b"more")


def test_archive_contains_every_file():
    objects = FakeObjectStore()
    files = [upload(objects, "sub-1", "a.txt", b"alpha" * 1000), upload(objects, "sub-1", "b.bin", bytes(range(256)) * 50)]

    size = create_zip_archive(objects, "sub-1", files, "archives/sub-1-1.zip", chunk_size=1024, max_chunks=2)

    payload = objects.objects["archives/sub-1-1.zip"]
    assert size == len(payload)
    with zipfile.ZipFile(io.BytesIO(payload)) as archive:
        assert archive.testzip() is None
        assert archive.read("a.txt") == b"alpha" * 1000
        assert archive.read("b.bin") == bytes(range(256)) * 50


def test_put_size_used_when_head_unavailable():
    objects = FakeObjectStore()
    objects.report_size = False
    files = [upload(objects, "sub-1", "a.txt", b"a"), upload(objects, "sub-1", "b.txt", b"b")]

    size = create_zip_archive(objects, "sub-1", files, "archives/x.zip")

    assert size == len(objects.objects["archives/x.zip"])


def test_source_failure_is_reraised():
    objects = FakeObjectStore()
    files = [upload(objects, "sub-1", "a.txt", b"a"), FileRecord(object_key="missing", file_name="b.txt")]

    with pytest.raises(FileNotFoundError):
        create_zip_archive(objects, "sub-1", files, "archives/x.zip")

    assert "archives/x.zip" not in objects.objects
