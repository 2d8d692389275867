"""
Object storage for uploaded media.

Incoming multipart files are first written to a temp directory; an
``Uploader`` then takes that local path and returns a public URL. The local
implementation moves files under the directory served at ``/static``.
"""
import logging
import os
import shutil
from abc import ABC, abstractmethod
from typing import List, Optional

from bson import ObjectId
from fastapi import Request, UploadFile

from config import Settings
from errors import UploadError, ValidationError

logger = logging.getLogger(__name__)


class Uploader(ABC):
    @abstractmethod
    def upload(self, local_path: str) -> str:
        """Publish the file at ``local_path`` and return its public URL.

        The local file is consumed either way. Raises ``UploadError`` on failure.
        """


class LocalUploader(Uploader):
    def __init__(self, root: str, url_prefix: str, folder: str = "media"):
        self.root = root
        self.url_prefix = url_prefix.rstrip("/")
        self.folder = folder
        os.makedirs(os.path.join(root, folder), exist_ok=True)

    def upload(self, local_path: str) -> str:
        if not local_path or not os.path.isfile(local_path):
            raise UploadError("Uploaded file is missing")
        ext = os.path.splitext(local_path)[1]
        filename = f"{ObjectId()}{ext}"
        try:
            shutil.move(local_path, os.path.join(self.root, self.folder, filename))
        except OSError as exc:
            logger.error("Moving %s into storage failed: %s", local_path, exc)
            discard(local_path)
            raise UploadError() from exc
        return f"{self.url_prefix}/{self.folder}/{filename}"


def discard(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to clean up %s: %s", path, exc)


def save_temp_upload(file: UploadFile, settings: Settings) -> str:
    """Write an incoming upload to the temp directory after type and size checks."""
    if (file.content_type or "").lower() not in settings.upload_content_type_set:
        raise ValidationError(f"Unsupported file type: {file.content_type}")
    os.makedirs(settings.temp_dir, exist_ok=True)
    ext = os.path.splitext(file.filename or "")[1]
    path = os.path.join(settings.temp_dir, f"{file.content_type.split('/')[0]}-{ObjectId()}{ext}")
    with open(path, "wb") as out:
        shutil.copyfileobj(file.file, out)
    if os.path.getsize(path) > settings.max_upload_size_bytes:
        discard(path)
        raise ValidationError(f"File exceeds the {settings.max_upload_size_mb} MB limit")
    return path


def upload_file(uploader: Uploader, file: UploadFile, settings: Settings) -> str:
    return upload_files(uploader, [file], settings)[0]


def upload_files(uploader: Uploader, files: List[UploadFile], settings: Settings) -> List[str]:
    """Upload several files, in order, once all of them have passed the intake checks.

    A rejected file means nothing reaches the uploader.
    """
    paths = []
    try:
        for file in files:
            paths.append(save_temp_upload(file, settings))
        return [uploader.upload(path) for path in paths]
    finally:
        for path in paths:
            discard(path)


def get_uploader(request: Request) -> Uploader:
    return request.app.state.uploader
