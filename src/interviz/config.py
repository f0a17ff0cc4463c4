"""Environment-based configuration for Interviz."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from INTERVIZ_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="INTERVIZ_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Model to load at startup (None = wait for POST /api/v1/model)
    model_metadata_url: str | None = None
    model_filename: str = "model.onnx"

    # Transport
    http_timeout: float = Field(default=30.0, gt=0)

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    inference_slot_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
