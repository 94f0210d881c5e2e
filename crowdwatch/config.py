"""
Settings: environment-driven service configuration.

Every knob has a default so the service starts with no environment at all;
without an inference endpoint the in-process DummyML model is used.
"""

import os
import logging
from typing import Optional, Mapping

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# Environment variable -> Settings field
ENV_FIELDS = {
    "PORT": "port",
    "ROBOFLOW_ENDPOINT": "inference_url",
    "ROBOFLOW_API_KEY": "inference_api_key",
    "INFERENCE_CONFIDENCE": "confidence",
    "INFERENCE_TIMEOUT": "inference_timeout",
    "MAX_CONCURRENT": "max_concurrency",
    "MAX_BACKLOG": "max_backlog",
    "ALERT_THRESHOLD": "alert_threshold",
    "ALERT_COOLDOWN": "alert_cooldown",
    "VIDEO_FRAME_RATE": "video_frame_rate",
    "MAX_UPLOAD_BYTES": "max_upload_bytes",
    "LOG_LEVEL": "log_level",
}


class Settings(BaseModel):
    port: int = 3000

    # Inference service
    inference_url: Optional[str] = None
    inference_api_key: Optional[str] = None
    confidence: float = Field(0.33, ge=0.0, le=1.0)
    inference_timeout: float = Field(30.0, gt=0)

    # Admission control
    max_concurrency: int = Field(2, ge=1)
    max_backlog: int = Field(60, ge=0)

    # Alerting
    alert_threshold: int = Field(15, ge=1)
    alert_cooldown: float = Field(300.0, ge=0)

    # Uploads
    video_frame_rate: int = Field(25, ge=1)
    max_upload_bytes: int = 50 * 1024 * 1024

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables (empty values are ignored)."""
        environ = os.environ if environ is None else environ
        values = {
            field: environ[name]
            for name, field in ENV_FIELDS.items()
            if environ.get(name)
        }
        return cls(**values)

    @property
    def use_remote_inference(self) -> bool:
        return bool(self.inference_url)

    def warn_if_incomplete(self):
        if not self.inference_url or not self.inference_api_key:
            logger.warning("[Settings] ROBOFLOW_ENDPOINT or ROBOFLOW_API_KEY missing, "
                           "inference will fall back to DummyML or fail")
