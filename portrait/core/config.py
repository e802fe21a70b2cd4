import os
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

load_dotenv()


def _public_base_url() -> str:
    return os.getenv("PUBLIC_BASE_URL") or os.getenv("RENDER_EXTERNAL_URL") or ""


class Settings(BaseModel):
    """Application settings loaded from environment: listen port, public base URL, storage root, transcode profile and binaries, stage timeouts and concurrency limits.
    Why available: Single source of configuration so the pipeline, the HTTP layer and scripts agree on paths, limits and timeouts."""
    port: int = int(os.getenv("PORT", "10000"))
    public_base_url: str = _public_base_url()
    storage_root: str = os.getenv("STORAGE_ROOT", os.path.join(os.getcwd(), "videos"))
    transcode_profile: str = os.getenv("TRANSCODE_PROFILE", "portrait_720")
    ffmpeg_binary: str = os.getenv("FFMPEG_BINARY", "ffmpeg")
    ffprobe_binary: str = os.getenv("FFPROBE_BINARY", "ffprobe")
    fetch_connect_timeout_seconds: int = int(os.getenv("FETCH_CONNECT_TIMEOUT_SECONDS", "10"))
    fetch_timeout_seconds: int = int(os.getenv("FETCH_TIMEOUT_SECONDS", "300"))
    transcode_timeout_seconds: int = int(os.getenv("TRANSCODE_TIMEOUT_SECONDS", "900"))
    max_concurrent_transcodes: int = int(os.getenv("MAX_CONCURRENT_TRANSCODES", "2"))
    max_download_mb: int = int(os.getenv("MAX_DOWNLOAD_MB", "0"))  # 0 = unlimited
    output_ttl_seconds: int = int(os.getenv("OUTPUT_TTL_SECONDS", "0"))  # 0 = keep forever
    sync_wait_timeout_seconds: int = int(os.getenv("SYNC_WAIT_TIMEOUT_SECONDS", "1500"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @field_validator(
        "port",
        "fetch_connect_timeout_seconds",
        "fetch_timeout_seconds",
        "transcode_timeout_seconds",
        "max_concurrent_transcodes",
        "sync_wait_timeout_seconds",
    )
    @classmethod
    def must_be_positive(cls, v):
        """Ensure port, timeouts and the transcode concurrency limit are positive integers. Prevents invalid config from env."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("max_download_mb", "output_ttl_seconds")
    @classmethod
    def must_not_be_negative(cls, v):
        """Allow 0 (disabled) but reject negative limits."""
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return (v or "").rstrip("/")


settings = Settings()
