from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Protocol

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class BlobStorage(Protocol):
    def upload(self, path: str, data: bytes, content_type: str, upsert: bool = False) -> str: ...

    def public_url(self, path: str) -> str: ...

    def remove(self, paths: Iterable[str]) -> list[str]: ...


class LocalBlobStorage:
    """Bucket-style blob store backed by a directory on disk."""

    def __init__(self, root: str | Path, bucket: str, public_base_url: str) -> None:
        self.bucket = bucket
        self.bucket_dir = (Path(root) / bucket).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.bucket_dir / path).resolve()
        if target == self.bucket_dir or self.bucket_dir not in target.parents:
            raise StorageError(f'invalid object path "{path}"')
        return target

    def upload(self, path: str, data: bytes, content_type: str, upsert: bool = False) -> str:
        target = self._resolve(path)
        if target.exists() and not upsert:
            raise StorageError(f'object "{path}" already exists')
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(f'upload of "{path}" failed: {exc}') from exc
        logger.debug("stored %s (%s, %d bytes)", path, content_type, len(data))
        return path

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{self.bucket}/{path}"

    def remove(self, paths: Iterable[str]) -> list[str]:
        removed = []
        for path in paths:
            target = self._resolve(path)
            try:
                target.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageError(f'remove of "{path}" failed: {exc}') from exc
            removed.append(path)
        return removed
