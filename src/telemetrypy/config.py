"""Runtime settings loaded from the environment.

Values come from environment variables, optionally seeded from a ``.env``
file in the working directory.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from telemetrypy.core.anomaly import DetectorConfig

PACKAGE_LOGGER = "telemetrypy"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    """Service settings.

    Attributes:
        db_path: SQLite database path, or ":memory:".
        default_limit: Result cap applied when a request names none.
        max_limit: Upper bound on any requested result cap.
        stream_batch_size: Samples per batch on the streaming endpoint.
        detection_fetch_limit: Maximum samples read per series for detection.
        log_level: Level name for the package logger.
    """

    db_path: str = "telemetry.db"
    default_limit: int = 1000
    max_limit: int = 50_000
    stream_batch_size: int = 1000
    detection_fetch_limit: int = 100_000
    log_level: str = "INFO"

    def detector_config(self, auto_correction: bool = False) -> DetectorConfig:
        return DetectorConfig(
            auto_correction=auto_correction,
            fetch_limit=self.detection_fetch_limit,
        )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def load_settings(env_file: str | Path | None = ".env") -> Settings:
    """Build Settings from the environment.

    Args:
        env_file: Optional dotenv file loaded first. Variables already set
            in the environment take precedence.

    Raises:
        ValueError: If a numeric variable is not a positive integer.
    """
    if env_file is not None and Path(env_file).exists():
        load_dotenv(env_file)

    return Settings(
        db_path=os.getenv("TELEMETRY_DB_PATH", "telemetry.db"),
        default_limit=_int_env("TELEMETRY_DEFAULT_LIMIT", 1000),
        max_limit=_int_env("TELEMETRY_MAX_LIMIT", 50_000),
        stream_batch_size=_int_env("TELEMETRY_STREAM_BATCH_SIZE", 1000),
        detection_fetch_limit=_int_env("TELEMETRY_DETECTION_FETCH_LIMIT", 100_000),
        log_level=os.getenv("TELEMETRY_LOG_LEVEL", "INFO").upper(),
    )


_handler: logging.Handler | None = None


def configure_logging(level: str | int = logging.INFO) -> logging.Logger:
    """Attach a single stream handler to the package logger.

    Calling this again only updates the level.
    """
    global _handler
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    if _handler is None:
        _handler = logging.StreamHandler()
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))
    if _handler not in logger.handlers:
        logger.addHandler(_handler)
    return logger
