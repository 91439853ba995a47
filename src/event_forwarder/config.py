from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

from loguru import logger
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ForwarderSettings(BaseSettings):
    """Runtime settings, read from FORWARDER_* environment variables or `.env`."""

    model_config = SettingsConfigDict(
        env_prefix="FORWARDER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Sink
    sink_url: str = "http://localhost:8888/events.log"
    session_sink_url: str = "http://localhost:8888/session"
    sink_ca: Optional[Path] = None
    sink_cert: Optional[Path] = None
    sink_key: Optional[Path] = None
    sink_timeout: float = 10.0
    sink_retries: int = 3
    sink_retry_delay: float = 0.5

    # Source
    source_dir: Path = Path("audit")
    follow: bool = False
    poll_interval: float = 1.0

    # Progress
    storage_dir: Path = Path("storage")
    start_time: Optional[datetime] = None

    # Session replay
    concurrency: int = 5
    skip_session_types: Annotated[frozenset[str], NoDecode] = frozenset({"print"})
    session_queue_size: Optional[int] = None
    session_backoff_base: float = 3.0
    session_backoff_max: float = 120.0
    session_max_retries: int = 5

    dry_run: bool = False
    metrics_port: Optional[int] = None

    @field_validator("skip_session_types", mode="before")
    def _split_types(cls, v):
        if isinstance(v, str):
            return frozenset(t.strip() for t in v.split(",") if t.strip())
        return v

    @field_validator("concurrency")
    def _positive(cls, v):
        if v <= 0:
            raise ValueError("concurrency must be > 0")
        return v

    @field_validator("start_time")
    def _utc(cls, v):
        if v is None:
            return v
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def has_client_cert(self) -> bool:
        return self.sink_cert is not None and self.sink_key is not None

    def dump(self) -> None:
        """Log the effective configuration."""
        for name, value in self.model_dump().items():
            if isinstance(value, frozenset):
                value = ",".join(sorted(value))
            logger.info(f"Config {name}={value}")


@lru_cache()
def get_settings() -> ForwarderSettings:
    return ForwarderSettings()
