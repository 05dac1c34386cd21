"""Configuration management for the render service."""

import os
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment variables."""

    # Paths
    TEMP_DIR: str = os.getenv("TEMP_DIR", "/app/temp")
    OUTPUT_DIR: str = os.getenv("OUTPUT_DIR", "/app/output")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Engine
    FFMPEG_BIN: str = os.getenv("FFMPEG_BIN", "ffmpeg")

    # Scheduling
    MAX_RUNNING: int = max(1, int(os.getenv("MAX_RUNNING", "1")))
    HEARTBEAT_INTERVAL: float = float(os.getenv("HEARTBEAT_INTERVAL", "10"))

    # Timeouts (seconds)
    FETCH_CONNECT_TIMEOUT: float = float(os.getenv("FETCH_CONNECT_TIMEOUT", "15"))
    FETCH_STALL_TIMEOUT: float = float(os.getenv("FETCH_STALL_TIMEOUT", "30"))
    TRANSCODE_TIMEOUT: float = float(os.getenv("TRANSCODE_TIMEOUT", "900"))
    # The job deadline must leave room for the primary run plus the fallback retry
    JOB_TIMEOUT: float = max(
        float(os.getenv("JOB_TIMEOUT", str(TRANSCODE_TIMEOUT * 2 + 300))),
        TRANSCODE_TIMEOUT * 2 + 1,
    )

    # Retention (seconds)
    OUTPUT_TTL: float = float(os.getenv("OUTPUT_TTL", "3600"))
    ERROR_TTL: float = float(os.getenv("ERROR_TTL", "600"))
    SWEEP_INTERVAL: float = float(os.getenv("SWEEP_INTERVAL", "60"))

    # Fallback pipeline
    FALLBACK_ENABLED: bool = _env_bool("FALLBACK_ENABLED", True)
    FALLBACK_CANVAS_SCALE: float = float(os.getenv("FALLBACK_CANVAS_SCALE", "0.6667"))
    FALLBACK_SUBTITLES: bool = _env_bool("FALLBACK_SUBTITLES", False)

    # Bound on engine output kept in job records
    DIAGNOSTIC_MAX_CHARS: int = int(os.getenv("DIAGNOSTIC_MAX_CHARS", "2000"))

    # CORS
    CORS_ORIGINS: list = [
        origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
    ]

    @classmethod
    def ensure_directories(cls):
        """Ensure required directories exist and clean temp directory."""
        import shutil
        import logging

        logger = logging.getLogger(__name__)

        # Clean temp directory on startup (remove orphaned files from previous runs)
        temp_path = Path(cls.TEMP_DIR)
        if temp_path.exists():
            try:
                for item in temp_path.iterdir():
                    if item.is_file():
                        item.unlink()
                        logger.info(f"Cleaned orphaned temp file: {item.name}")
                    elif item.is_dir():
                        shutil.rmtree(item)
                        logger.info(f"Cleaned orphaned temp directory: {item.name}")
                logger.info("Temp directory cleaned on startup")
            except Exception as e:
                logger.error(f"Error cleaning temp directory: {e}")

        # Outputs are left alone: they stay fetchable across restarts until they expire
        temp_path.mkdir(parents=True, exist_ok=True)
        Path(cls.OUTPUT_DIR).mkdir(parents=True, exist_ok=True)


settings = Settings()
