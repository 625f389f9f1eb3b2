# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Configuration management for Switchboard."""

import logging
import os
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Main application settings.

    Every field can be overridden with a ``SWITCHBOARD_``-prefixed
    environment variable, e.g. ``SWITCHBOARD_MODEL_NAME``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SWITCHBOARD_",
        env_file=".env" if not os.getenv("SWITCHBOARD_SKIP_ENV_FILE") else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Model provider (any OpenAI-compatible chat completions endpoint)
    model_provider: str = "together"
    model_base_url: str = "https://api.together.xyz/v1"
    model_name: str = "meta-llama/Meta-Llama-3.1-8B-Instruct-Turbo"
    model_api_key: Optional[str] = None
    model_temperature: float = 0.0
    model_max_tokens: int = 1024
    # Deadline for a single model call
    model_timeout: float = Field(default=60.0, gt=0)
    model_max_retries: int = Field(default=2, ge=0)

    # Engine
    max_steps: int = Field(default=50, ge=1)
    stage_timeout: Optional[float] = None
    fan_out_concurrency: int = Field(default=4, ge=1)

    # Thread store
    checkpoint_backend: Literal["memory", "sqlite"] = "memory"
    checkpoint_db_path: str = "~/.switchboard/checkpoints.db"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


def load_settings() -> Settings:
    """Load application settings.

    Returns:
        Settings instance
    """
    return Settings()


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging for the server and CLI entry points."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(os.path.expanduser(log_file)))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
