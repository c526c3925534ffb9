import logging
import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

ENV_PREFIX = "DONORLINK_"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseModel):
    """Runtime configuration. Every field can be overridden from the environment."""

    match_radius_km: float = Field(default=50.0, gt=0)
    max_radius_km: float = Field(default=100.0, gt=0)
    notify_radius_km: float = Field(default=25.0, gt=0)
    typing_timeout_seconds: float = Field(default=1.0, gt=0)
    session_window_seconds: float = Field(default=30.0, gt=0)
    store_latency_seconds: float = Field(default=0.0, ge=0)
    load_sample_data: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from DONORLINK_* variables, e.g.
        DONORLINK_MATCH_RADIUS_KM=30. Unknown variables are ignored.
        """
        if environ is None:
            environ = os.environ
        values = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ:
                values[name] = environ[key]
        return cls.model_validate(values)

    def clamp_radius(self, radius_km: float | None) -> float:
        if radius_km is None or radius_km <= 0:
            return self.match_radius_km
        return min(radius_km, self.max_radius_km)


def configure_logging(level: str = "INFO") -> None:
    """Install a stream handler on the package logger once."""
    logger = logging.getLogger("donorlink")
    logger.setLevel(level.upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
