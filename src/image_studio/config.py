"""Runtime configuration for the image studio pipeline."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from image_studio.pipeline.models import AspectRatio


@dataclass(slots=True)
class StudioSettings:
    """Task decomposition and asset handling settings."""

    staging_dir: Path = Path(".image_studio/generates")
    media_dir: Path = Path(".image_studio/media")
    batch_warning_threshold: int = 500
    max_retry_attempts: int = 3
    default_aspect_ratio: AspectRatio = AspectRatio.SQUARE
    download_timeout_seconds: float = 30.0
    staging_max_age_hours: int = 24


@dataclass(slots=True)
class WorkerSettings:
    """Job queue worker settings."""

    worker_id: str = field(default_factory=lambda: _default_worker_id())
    poll_interval_seconds: float = 2.0
    retry_base_seconds: int = 5
    retry_max_seconds: int = 300
    lock_ttl_seconds: int = 600
    max_idle_polls: int = 1


@dataclass(slots=True)
class ProviderSettings:
    """Credentials and endpoints for external generation capabilities."""

    fal_api_key: str | None = None
    fal_base_url: str = "https://fal.run"
    google_ai_api_key: str | None = None
    google_ai_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_model: str = "gemini-1.5-pro"
    request_timeout_seconds: float = 120.0
    use_echo_generator: bool = False


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".image_studio.db")
    studio: StudioSettings = field(default_factory=StudioSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)
    sqlite_busy_timeout_ms: int = 5_000

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("IMAGE_STUDIO_DB_PATH", ".image_studio.db")),
            studio=StudioSettings(
                staging_dir=Path(
                    os.getenv("IMAGE_STUDIO_STAGING_DIR", ".image_studio/generates"),
                ),
                media_dir=Path(os.getenv("IMAGE_STUDIO_MEDIA_DIR", ".image_studio/media")),
                batch_warning_threshold=int(
                    os.getenv("IMAGE_STUDIO_BATCH_WARNING_THRESHOLD", "500"),
                ),
                max_retry_attempts=int(os.getenv("IMAGE_STUDIO_MAX_RETRY_ATTEMPTS", "3")),
                default_aspect_ratio=_env_aspect_ratio(
                    "IMAGE_STUDIO_DEFAULT_ASPECT_RATIO",
                    default=AspectRatio.SQUARE,
                ),
                download_timeout_seconds=float(
                    os.getenv("IMAGE_STUDIO_DOWNLOAD_TIMEOUT_SECONDS", "30.0"),
                ),
                staging_max_age_hours=int(
                    os.getenv("IMAGE_STUDIO_STAGING_MAX_AGE_HOURS", "24"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("IMAGE_STUDIO_WORKER_ID", _default_worker_id()),
                poll_interval_seconds=float(
                    os.getenv("IMAGE_STUDIO_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                retry_base_seconds=int(os.getenv("IMAGE_STUDIO_RETRY_BASE_SECONDS", "5")),
                retry_max_seconds=int(os.getenv("IMAGE_STUDIO_RETRY_MAX_SECONDS", "300")),
                lock_ttl_seconds=int(os.getenv("IMAGE_STUDIO_LOCK_TTL_SECONDS", "600")),
                max_idle_polls=int(os.getenv("IMAGE_STUDIO_WORKER_MAX_IDLE_POLLS", "1")),
            ),
            providers=ProviderSettings(
                fal_api_key=_env_optional("FAL_KEY"),
                fal_base_url=os.getenv("IMAGE_STUDIO_FAL_BASE_URL", "https://fal.run"),
                google_ai_api_key=_env_optional("GOOGLE_AI_API_KEY"),
                google_ai_base_url=os.getenv(
                    "IMAGE_STUDIO_GOOGLE_AI_BASE_URL",
                    "https://generativelanguage.googleapis.com/v1beta",
                ),
                openai_api_key=_env_optional("OPENAI_API_KEY"),
                openai_base_url=os.getenv(
                    "IMAGE_STUDIO_OPENAI_BASE_URL",
                    "https://api.openai.com/v1",
                ),
                gemini_model=os.getenv("IMAGE_STUDIO_GEMINI_MODEL", "gemini-1.5-pro"),
                request_timeout_seconds=float(
                    os.getenv("IMAGE_STUDIO_PROVIDER_TIMEOUT_SECONDS", "120.0"),
                ),
                use_echo_generator=_env_bool("IMAGE_STUDIO_USE_ECHO_GENERATOR", default=False),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("IMAGE_STUDIO_USER_ID", "default_user"),
                user_name=os.getenv("IMAGE_STUDIO_USER_NAME", "Default User"),
            ),
            sqlite_busy_timeout_ms=int(os.getenv("IMAGE_STUDIO_SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker or retry settings are unusable."""

        if self.studio.max_retry_attempts < 0:
            raise ValueError("IMAGE_STUDIO_MAX_RETRY_ATTEMPTS must be >= 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("IMAGE_STUDIO_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.retry_base_seconds <= 0:
            raise ValueError("IMAGE_STUDIO_RETRY_BASE_SECONDS must be > 0.")
        if self.worker.retry_max_seconds < self.worker.retry_base_seconds:
            raise ValueError(
                "IMAGE_STUDIO_RETRY_MAX_SECONDS must be >= IMAGE_STUDIO_RETRY_BASE_SECONDS.",
            )
        if self.worker.lock_ttl_seconds <= 0:
            raise ValueError("IMAGE_STUDIO_LOCK_TTL_SECONDS must be > 0.")
        if self.worker.max_idle_polls <= 0:
            raise ValueError("IMAGE_STUDIO_WORKER_MAX_IDLE_POLLS must be > 0.")
        if self.studio.download_timeout_seconds <= 0:
            raise ValueError("IMAGE_STUDIO_DOWNLOAD_TIMEOUT_SECONDS must be > 0.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_aspect_ratio(name: str, default: AspectRatio) -> AspectRatio:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return AspectRatio(value.strip())
    except ValueError as error:
        supported = ", ".join(ratio.value for ratio in AspectRatio)
        raise ValueError(
            f"Invalid aspect ratio for {name}: {value!r}. Expected one of: {supported}",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
