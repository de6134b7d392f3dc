from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import BinaryIO, Iterable, Protocol
from urllib.parse import quote, urlencode

from itsdangerous import BadSignature, URLSafeTimedSerializer

from .errors import ValidationError

CHUNK_SIZE = 1024 * 1024  # 1MB


class ObjectStore(Protocol):
    def get(self, key: str) -> BinaryIO: ...

    def put(self, key: str, stream: BinaryIO, content_type: str | None = None) -> int: ...

    def delete(self, keys: Iterable[str]) -> None: ...

    def head_size(self, key: str) -> int | None: ...

    def presign_get(self, key: str, ttl_seconds: int) -> str: ...


def copy_stream(source: BinaryIO, out: BinaryIO, chunk_size: int = CHUNK_SIZE) -> int:
    size = 0
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            break
        size += len(chunk)
        out.write(chunk)
    return size


class LocalObjectStore:
    """Object store on the local filesystem.

    Keys map to paths under ``root``. Writes go to a temp file first and are
    renamed into place, so readers never observe half-written objects.
    Retrieval URLs carry a signed, timestamped token and are served by
    ``GET /objects/{key}``.
    """

    def __init__(self, root: str | Path, base_url: str, secret: str, chunk_size: int = CHUNK_SIZE):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self._serializer = URLSafeTimedSerializer(secret, salt="object-download")
        self.chunk_size = chunk_size

    def path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or "\\" in key:
            raise ValidationError(f"Invalid object key: {key!r}")
        root = self.root.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise ValidationError(f"Invalid object key: {key!r}")
        return path

    def get(self, key: str) -> BinaryIO:
        path = self.path_for(key)
        if not path.is_file():
            raise FileNotFoundError(f"Object not found: {key}")
        return path.open("rb")

    def put(self, key: str, stream: BinaryIO, content_type: str | None = None) -> int:
        destination = self.path_for(key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp = destination.with_name(f".{destination.name}.{uuid.uuid4().hex}.part")

        try:
            with tmp.open("wb") as out:
                size = copy_stream(stream, out, self.chunk_size)
            os.replace(tmp, destination)
        finally:
            tmp.unlink(missing_ok=True)
        return size

    def delete(self, keys: Iterable[str]) -> None:
        for key in keys:
            # deleting an object that is already gone is fine (redelivered jobs)
            self.path_for(key).unlink(missing_ok=True)

    def head_size(self, key: str) -> int | None:
        path = self.path_for(key)
        if not path.is_file():
            return None
        return path.stat().st_size

    def presign_get(self, key: str, ttl_seconds: int) -> str:
        self.path_for(key)
        token = self._serializer.dumps({"key": key, "ttl": ttl_seconds})
        query = urlencode({"ttl": ttl_seconds, "token": token})
        return f"{self.base_url}/objects/{quote(key)}?{query}"

    def verify(self, key: str, ttl_seconds: int, token: str) -> None:
        """Raise ``itsdangerous.BadSignature`` (or ``SignatureExpired``) unless
        ``token`` was issued for ``key`` within the last ``ttl_seconds``."""
        payload = self._serializer.loads(token, max_age=ttl_seconds)
        if payload != {"key": key, "ttl": ttl_seconds}:
            raise BadSignature("Link was not issued for this object")
