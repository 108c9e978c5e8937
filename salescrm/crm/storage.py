from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from fastapi import UploadFile

from salescrm.core.config import get_settings
from salescrm.crm.errors import FileRejectedError, StorageError

logger = logging.getLogger("salescrm.crm.files")

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass(slots=True)
class StoredFile:
    original_name: str
    storage_path: str
    mime_type: str
    size: int


def safe_file_name(name: str) -> str:
    base = PurePosixPath(name.replace("\\", "/")).name
    return _UNSAFE_NAME_RE.sub("_", base) or "file"


def _format_size(size: int) -> str:
    if size >= 1024 * 1024 and size % (1024 * 1024) == 0:
        return f"{size // (1024 * 1024)}MB"
    return f"{size} bytes"


def file_extension(name: str) -> str:
    parts = name.split(".")
    if len(parts) < 2:
        return ""
    return parts[-1].lower()


class LocalFileStorage:
    """Stores uploads under `<base_dir>/<object type>/<field id>/`.

    Storage paths handed back are relative to `base_dir` and always use `/`.
    """

    def __init__(self, base_dir: str | Path, *, max_bytes: int, allowed_extensions: list[str]) -> None:
        self.base_dir = Path(base_dir)
        self.max_bytes = max_bytes
        self.allowed_extensions = {extension.lower() for extension in allowed_extensions}

    def validate(self, name: str, size: int) -> str:
        if size > self.max_bytes:
            raise FileRejectedError(f"files must be at most {_format_size(self.max_bytes)}")
        extension = file_extension(name)
        if not extension or extension not in self.allowed_extensions:
            raise FileRejectedError("file extension is not allowed")
        return extension

    def save_file(self, upload: UploadFile, object_type: str, field_id: int) -> StoredFile:
        original_name = safe_file_name(upload.filename or "")
        upload.file.seek(0)
        content = upload.file.read()
        extension = self.validate(original_name, len(content))

        file_name = f"{int(time.time() * 1000)}-{uuid.uuid4()}.{extension}"
        relative = PurePosixPath(object_type.lower(), str(field_id), file_name)
        target = self.base_dir / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            logger.exception(
                "file_storage.write_failed",
                extra={"object_type": object_type, "field_id": field_id, "error": str(exc)},
            )
            raise StorageError() from exc

        return StoredFile(
            original_name=original_name,
            storage_path=str(relative),
            mime_type=upload.content_type or "application/octet-stream",
            size=len(content),
        )

    def read_file(self, storage_path: str) -> bytes:
        try:
            return self._resolve(storage_path).read_bytes()
        except FileNotFoundError as exc:
            raise StorageError("stored file is missing") from exc
        except OSError as exc:
            raise StorageError() from exc

    def delete_file(self, storage_path: str) -> None:
        try:
            self._resolve(storage_path).unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageError() from exc

    def _resolve(self, storage_path: str) -> Path:
        base = self.base_dir.resolve()
        target = (base / storage_path).resolve()
        if not target.is_relative_to(base):
            raise StorageError("invalid storage path")
        return target


def get_file_storage() -> LocalFileStorage:
    settings = get_settings()
    return LocalFileStorage(
        settings.upload_dir,
        max_bytes=settings.max_upload_bytes,
        allowed_extensions=settings.allowed_upload_extensions,
    )
