"""Streaming zip creation straight into the object store.

The zip writer runs in a producer thread and writes into a ``BoundedPipe``;
``ObjectStore.put`` reads the other end on the calling thread. At most
``max_chunks`` chunks are buffered, so peak memory does not depend on the
size of the archive and the upload paces the reads from the source objects.
"""

from __future__ import annotations

import logging
import queue
import shutil
import threading
import zipfile
from typing import Sequence

from .schemas import FileRecord, sum_file_sizes
from .storage import CHUNK_SIZE, ObjectStore

logger = logging.getLogger(__name__)

ZIP_CONTENT_TYPE = "application/zip"

_EOF = object()
_POLL_SECONDS = 0.1


class ArchiveStreamError(RuntimeError):
    """The zip producer failed while the upload was reading from the pipe."""


class BoundedPipe:
    """A one-way in-memory pipe between a writer thread and a reader.

    The writer side exposes ``write``/``flush`` (enough for ``zipfile`` to
    treat it as an unseekable stream), the reader side exposes ``read``.
    """

    def __init__(self, max_chunks: int = 16):
        self._chunks: queue.Queue = queue.Queue(maxsize=max_chunks)
        self._aborted = threading.Event()
        self._error: BaseException | None = None
        self._pending = b""
        self._eof = False

    # writer side

    def write(self, data) -> int:
        if not data:
            return 0
        chunk = bytes(data)
        self._put(chunk)
        return len(chunk)

    def flush(self) -> None:
        pass

    def close(self, error: BaseException | None = None) -> None:
        self._error = error
        try:
            self._put(_EOF)
        except BrokenPipeError:
            pass

    def _put(self, item) -> None:
        while True:
            if self._aborted.is_set():
                raise BrokenPipeError("Archive upload was aborted")
            try:
                self._chunks.put(item, timeout=_POLL_SECONDS)
                return
            except queue.Full:
                continue

    # reader side

    def abort(self) -> None:
        self._aborted.set()

    def read(self, size: int | None = -1) -> bytes:
        while not self._eof and (size is None or size < 0 or len(self._pending) < size):
            item = self._chunks.get()
            if item is _EOF:
                self._eof = True
                if self._error is not None:
                    raise ArchiveStreamError(f"Archive producer failed: {self._error}")
                break
            self._pending += item

        if size is None or size < 0:
            data, self._pending = self._pending, b""
        else:
            data, self._pending = self._pending[:size], self._pending[size:]
        return data


def archive_entry_names(submission_id: str, files: Sequence[FileRecord]) -> list[str]:
    """Entry names for the archive.

    When any original name contains ``/`` (a folder upload) every entry is
    prefixed with ``{submission_id}/`` so the archive unpacks into one folder;
    flat uploads keep their bare names.
    """
    names = [f.label for f in files]
    if any("/" in name for name in names):
        return [f"{submission_id}/{name}" for name in names]
    return names


def write_zip_entries(
    sink,
    objects: ObjectStore,
    entries: Sequence[tuple[str, str]],
    chunk_size: int = CHUNK_SIZE,
) -> None:
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for object_key, entry_name in entries:
            source = objects.get(object_key)
            try:
                with archive.open(entry_name, mode="w", force_zip64=True) as dest:
                    shutil.copyfileobj(source, dest, chunk_size)
            finally:
                source.close()


def create_zip_archive(
    objects: ObjectStore,
    submission_id: str,
    files: Sequence[FileRecord],
    archive_key: str,
    chunk_size: int = CHUNK_SIZE,
    max_chunks: int = 16,
) -> int:
    """Zip ``files`` into ``archive_key`` and return the archive size.

    The size is read back from the store; if the store cannot report it the
    size confirmed by ``put`` is used, then the sum of the original sizes.
    """
    entries = list(zip((f.object_key for f in files), archive_entry_names(submission_id, files)))
    pipe = BoundedPipe(max_chunks)
    failure: list[Exception] = []

    def produce() -> None:
        try:
            write_zip_entries(pipe, objects, entries, chunk_size)
        except Exception as e:
            failure.append(e)
            pipe.close(error=e)
        else:
            pipe.close()

    producer = threading.Thread(target=produce, name=f"zip-{submission_id}", daemon=True)
    producer.start()

    try:
        uploaded = objects.put(archive_key, pipe, content_type=ZIP_CONTENT_TYPE)
    except ArchiveStreamError:
        producer.join()
        raise failure[0]
    except Exception:
        pipe.abort()
        producer.join()
        raise
    # a store that stopped reading before EOF must not leave the producer blocked
    pipe.abort()
    producer.join()
    if failure:
        raise failure[0]

    size = objects.head_size(archive_key)
    if not size:
        logger.warning("Archive size unavailable from store", extra={"archive_key": archive_key})
        size = uploaded or sum_file_sizes(list(files))

    logger.info(
        "Archive uploaded",
        extra={"submission_id": submission_id, "archive_key": archive_key, "entries": len(entries), "size": size},
    )
    return size
