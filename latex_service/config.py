"""latex-service configuration — loaded from .env via pydantic-settings."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

_MIB = 1024 * 1024


class LatexServiceSettings(BaseSettings):
    """All service configuration. Reads from .env file and environment variables."""

    # --- HTTP server ---
    host: str = Field(default="0.0.0.0", description="Bind address for uvicorn")
    port: int = Field(default=3001, description="Listen port")
    latex_service_api_key: str = Field(
        default="",
        description="Shared API key expected in X-API-Key. Empty disables auth.",
    )
    allowed_origins: str = Field(
        default="*",
        description="Comma-separated CORS origins, or '*'",
    )
    max_body_bytes: int = Field(default=50 * _MIB, description="Largest accepted request body")
    shutdown_drain_timeout: float = Field(
        default=25.0,
        description="Seconds to wait for in-flight requests before sweeping workspaces",
    )

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="console",
        description="Log format: 'console' for dev, 'json' for production",
    )

    # --- Workspaces ---
    work_root: str = Field(
        default=str(Path(tempfile.gettempdir()) / "latex-service"),
        description="Dedicated parent directory for ephemeral workspaces",
    )

    # --- Subprocess deadlines (seconds) ---
    compile_timeout: float = Field(default=180.0)
    git_compile_timeout: float = Field(default=300.0)
    thumbnail_timeout: float = Field(default=30.0)
    clone_timeout: float = Field(default=60.0)
    archive_clone_timeout: float = Field(default=180.0)
    git_metadata_timeout: float = Field(default=30.0)
    health_check_timeout: float = Field(default=5.0)
    kill_grace_period: float = Field(
        default=5.0,
        description="Seconds between SIGTERM and SIGKILL for a timed-out process",
    )
    max_output_bytes: int = Field(default=10 * _MIB, description="Per-stream capture cap")

    # --- Payload limits ---
    max_resources: int = Field(default=100)
    max_resource_bytes: int = Field(default=10 * _MIB)
    max_total_bytes: int = Field(default=50 * _MIB)
    max_repo_bytes: int = Field(default=50 * _MIB)
    max_repo_files: int = Field(default=500)
    max_repo_depth: int = Field(default=20)
    min_thumbnail_width: int = Field(default=1)
    max_thumbnail_width: int = Field(default=4000)
    default_thumbnail_width: int = Field(default=800)
    allowed_git_schemes: str = Field(
        default="https,http",
        description="Comma-separated URL schemes accepted for clone URLs",
    )

    # --- Rate limiting ---
    rate_limit_window: float = Field(default=60.0, description="Fixed window length in seconds")
    rate_limit_max_requests: int = Field(default=30, description="Requests per key per window")
    rate_limit_max_entries: int = Field(default=10000, description="Rate-limit cache capacity")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def git_schemes(self) -> frozenset[str]:
        return frozenset(s.strip().lower() for s in self.allowed_git_schemes.split(",") if s.strip())


@dataclass(frozen=True, slots=True)
class Limits:
    """Snapshot of the payload limits consumed by the validators."""

    max_resources: int = 100
    max_resource_bytes: int = 10 * _MIB
    max_total_bytes: int = 50 * _MIB
    max_repo_bytes: int = 50 * _MIB
    max_repo_files: int = 500
    max_repo_depth: int = 20
    min_thumbnail_width: int = 1
    max_thumbnail_width: int = 4000
    git_schemes: frozenset[str] = frozenset({"https", "http"})

    @classmethod
    def from_settings(cls, cfg: LatexServiceSettings) -> Limits:
        return cls(
            max_resources=cfg.max_resources,
            max_resource_bytes=cfg.max_resource_bytes,
            max_total_bytes=cfg.max_total_bytes,
            max_repo_bytes=cfg.max_repo_bytes,
            max_repo_files=cfg.max_repo_files,
            max_repo_depth=cfg.max_repo_depth,
            min_thumbnail_width=cfg.min_thumbnail_width,
            max_thumbnail_width=cfg.max_thumbnail_width,
            git_schemes=cfg.git_schemes,
        )


# Singleton: import this everywhere
settings = LatexServiceSettings()
