"""Image acquisition over HTTP or data URIs, and local staging file operations."""

from __future__ import annotations

import base64
import binascii
import logging
import re
import shutil
import time
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from urllib.parse import urlparse

import httpx

from image_studio.pipeline.error_normalizer import ProviderError
from image_studio.pipeline.models import ErrorCategory

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 30.0
DATA_URL_SOURCE = "data-url"
SUPPORTED_IMAGE_TYPES: frozenset[str] = frozenset(
    {"image/png", "image/jpeg", "image/jpg", "image/webp", "image/gif"},
)
_OCTET_STREAM = "application/octet-stream"
_KEEP_FILE = ".gitkeep"
_DATA_URL_PATTERN = re.compile(r"^data:([^;,]+)?(?:;base64)?,(.*)$", re.DOTALL)
_URL_EXTENSION_PATTERN = re.compile(r"\.([a-zA-Z0-9]+)$")
_CONTENT_TYPE_EXTENSIONS: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}
_URL_IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "webp", "gif"})


class ImageAcquisitionError(ProviderError):
    """Raised when an image cannot be downloaded or decoded."""


@dataclass(slots=True)
class AcquiredImage:
    """Image bytes with the content type and a description of their source."""

    buffer: bytes
    content_type: str
    source: str

    @property
    def size_bytes(self) -> int:
        return len(self.buffer)


@dataclass(slots=True)
class SavedFile:
    path: Path
    filename: str
    size_bytes: int


def is_data_url(value: str) -> bool:
    return value.startswith("data:")


def parse_data_url(data_url: str) -> tuple[bytes, str]:
    """Decode a base64 data URI into ``(buffer, content_type)``."""

    match = _DATA_URL_PATTERN.match(data_url)
    if match is None:
        raise ImageAcquisitionError(
            "Invalid data URL format",
            category=ErrorCategory.INVALID_INPUT,
        )
    content_type = match.group(1) or _OCTET_STREAM
    payload = match.group(2)
    if not payload:
        raise ImageAcquisitionError(
            "Data URL contains no data",
            category=ErrorCategory.INVALID_INPUT,
        )
    try:
        buffer = base64.b64decode(payload)
    except (binascii.Error, ValueError) as error:
        raise ImageAcquisitionError(
            f"Data URL contains invalid base64 data: {error}",
            category=ErrorCategory.INVALID_INPUT,
        ) from error
    if not buffer:
        raise ImageAcquisitionError(
            "Data URL decoded to empty buffer",
            category=ErrorCategory.INVALID_INPUT,
        )
    return buffer, content_type


def coerce_content_type(content_type: str) -> str:
    """Bare lower-cased type; octet-stream becomes png, other non-image types only warn."""

    base_type = content_type.split(";", 1)[0].strip().lower()
    if base_type == _OCTET_STREAM:
        return "image/png"
    if base_type not in SUPPORTED_IMAGE_TYPES:
        logger.warning("Unexpected content type: %s, proceeding anyway", content_type)
    return base_type


def extension_from_content_type(content_type: str) -> str:
    base_type = content_type.split(";", 1)[0].strip().lower()
    return _CONTENT_TYPE_EXTENSIONS.get(base_type, "png")


def extension_from_url(url: str, content_type: str | None = None) -> str:
    """Known image extension from the URL path, else from the content type, else png."""

    if not is_data_url(url):
        match = _URL_EXTENSION_PATTERN.search(urlparse(url).path)
        if match is not None and match.group(1).lower() in _URL_IMAGE_EXTENSIONS:
            return match.group(1).lower()
    if content_type:
        return extension_from_content_type(content_type)
    return "png"


class ImageStorage:
    """Acquires generated images and manages the local staging directory."""

    def __init__(
        self,
        *,
        staging_dir: Path,
        timeout_seconds: float = DOWNLOAD_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.staging_dir = staging_dir
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Accept": "image/*"},
            transport=transport,
            follow_redirects=True,
        )

    def acquire(self, source: str) -> AcquiredImage:
        """Return image bytes for an HTTP(S) URL or an inline data URI."""

        if is_data_url(source):
            buffer, content_type = parse_data_url(source)
            logger.debug(
                "Decoded %d bytes from data URL, content-type: %s",
                len(buffer),
                content_type,
            )
            return AcquiredImage(
                buffer=buffer,
                content_type=coerce_content_type(content_type),
                source=DATA_URL_SOURCE,
            )
        return self.download(source)

    def download(self, url: str) -> AcquiredImage:
        try:
            response = self._client.get(url)
        except httpx.TimeoutException as error:
            logger.warning("Timeout downloading image %s", _preview_url(url))
            raise ImageAcquisitionError(
                f"Image download timed out: {error}",
                category=ErrorCategory.TIMEOUT,
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error downloading image %s: %s", _preview_url(url), error)
            raise ImageAcquisitionError(
                f"Image download failed: {error}",
                category=ErrorCategory.NETWORK_ERROR,
            ) from error

        if not response.is_success:
            raise ImageAcquisitionError(
                f"Failed to download image: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type") or "image/png"
        buffer = response.content
        if not buffer:
            raise ImageAcquisitionError(
                "Downloaded image is empty (0 bytes)",
                category=ErrorCategory.PROVIDER_ERROR,
            )
        logger.debug("Downloaded %d bytes, content-type: %s", len(buffer), content_type)
        return AcquiredImage(
            buffer=buffer,
            content_type=coerce_content_type(content_type),
            source=url,
        )

    def local_path(self, filename: str) -> Path:
        return self.staging_dir / Path(filename).name

    def save(self, buffer: bytes, filename: str) -> SavedFile:
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        path = self.local_path(filename)
        path.write_bytes(buffer)
        logger.debug("Saved image to %s (%d bytes)", path, len(buffer))
        return SavedFile(path=path, filename=path.name, size_bytes=len(buffer))

    def read(self, filename: str) -> bytes:
        return self.local_path(filename).read_bytes()

    def exists(self, filename: str) -> bool:
        return self.local_path(filename).is_file()

    def delete(self, filename: str) -> None:
        """Best-effort removal; failures are logged, never raised."""

        path = self.local_path(filename)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as error:
            logger.warning("Failed to delete staged file %s: %s", path, error)

    def list_files(self) -> list[str]:
        if not self.staging_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.staging_dir.iterdir()
            if entry.is_file() and entry.name != _KEEP_FILE
        )

    def cleanup_old_files(self, *, max_age: timedelta = timedelta(hours=24)) -> int:
        """Delete staged files older than ``max_age``; return how many were removed."""

        if not self.staging_dir.is_dir():
            return 0
        cutoff = time.time() - max_age.total_seconds()
        deleted = 0
        for entry in self.staging_dir.iterdir():
            if entry.name == _KEEP_FILE or not entry.is_file():
                continue
            try:
                if entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    deleted += 1
                    logger.info("Cleaned up old staged file: %s", entry.name)
            except OSError as error:
                logger.warning("Error checking staged file %s: %s", entry.name, error)
        return deleted

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ImageStorage:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class MediaLibrary:
    """Durable asset file location; staged files are copied in by filename."""

    def __init__(self, media_dir: Path) -> None:
        self.media_dir = media_dir

    def store(self, staged: SavedFile) -> Path:
        """Copy a staged file in; a taken name gets a ``-N`` suffix before the extension."""

        self.media_dir.mkdir(parents=True, exist_ok=True)
        target = self.media_dir / staged.filename
        suffix = 1
        while target.exists():
            target = self.media_dir / f"{staged.path.stem}-{suffix}{staged.path.suffix}"
            suffix += 1
        shutil.copyfile(staged.path, target)
        return target


def _preview_url(url: str, limit: int = 100) -> str:
    if len(url) <= limit:
        return url
    return url[:limit] + "..."
