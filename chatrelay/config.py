from __future__ import annotations

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.core.auth import HMAC_ALGORITHMS

log = logging.getLogger("chatrelay.config")

DEFAULT_SECRET = "dev_secret"

# environment variable -> config field
ENV_OVERRIDES = {
    "CHAT_HOST": "host",
    "CHAT_PORT": "port",
    "JWT_SECRET": "jwt_secret",
    "CHAT_STORE_PATH": "store_path",
    "CHAT_RETENTION_SECONDS": "retention_seconds",
    "CHAT_SWEEP_INTERVAL_SECONDS": "sweep_interval_seconds",
    "CHAT_LOG_LEVEL": "log_level",
}


class RelayConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=4000, ge=0, le=65535)
    jwt_secret: str = Field(default=DEFAULT_SECRET, min_length=1)
    jwt_algorithms: List[str] = Field(default_factory=lambda: ["HS256"])
    jwt_leeway_seconds: float = Field(default=0, ge=0)
    store_path: Path = Path("data/chat.json")
    retention_seconds: float = Field(default=24 * 60 * 60, gt=0)
    sweep_interval_seconds: float = Field(default=10 * 60, gt=0)
    handshake_timeout_seconds: float = Field(default=10, gt=0)
    max_connections_per_identity: Optional[int] = Field(default=None, ge=1)
    outbound_queue_size: int = Field(default=256, ge=1)
    report_invalid_payloads: bool = False
    log_level: str = "INFO"

    model_config = ConfigDict(extra="forbid")

    @field_validator("jwt_algorithms")
    @classmethod
    def _known_algorithms(cls, value: List[str]) -> List[str]:
        unknown = [alg for alg in value if alg not in HMAC_ALGORITHMS]
        if unknown:
            raise ValueError(f"unsupported JWT algorithm(s): {', '.join(unknown)}")
        if not value:
            raise ValueError("at least one JWT algorithm is required")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def retention(self) -> timedelta:
        return timedelta(seconds=self.retention_seconds)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(seconds=self.sweep_interval_seconds)


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RelayConfig:
    """YAML file (optional) < environment overrides. Raises pydantic.ValidationError."""

    data: Dict[str, Any] = {}
    if path is not None:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"config file {path} must contain a mapping")

    environ = os.environ if env is None else env
    for name, field_name in ENV_OVERRIDES.items():
        if environ.get(name):
            data[field_name] = environ[name]

    config = RelayConfig.model_validate(data)
    if config.jwt_secret == DEFAULT_SECRET:
        log.warning("JWT secret is the development default; set JWT_SECRET in production")
    return config


__all__ = ["RelayConfig", "load_config", "ENV_OVERRIDES", "DEFAULT_SECRET"]
