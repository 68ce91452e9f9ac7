"""Configuration loading for Conductor.

Reads ``conductor.yaml`` and applies environment overrides for deployment.
Pydantic models validate the schema.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

RestrictPr = Literal["none", "all", "branch", "fork"]


# ── Config Models ────────────────────────────────────────────────────────────


class ServerConfig(BaseModel):
    ui_uri: str = "http://localhost:4200"  # Build links: <ui_uri>/pipelines/<pid>/builds/<bid>

    @field_validator("ui_uri")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class WebhooksConfig(BaseModel):
    username: str  # Generic SCM user whose token is used when the actor has none
    ignore_commits_by: list[str] = Field(default_factory=list)
    default_restrict_pr: RestrictPr = "none"  # Used when a pipeline has no restrict-pr annotation


class ScmSettings(BaseModel):
    context: str = "github:github.com"
    display_name: str = "GitHub"
    api_url: str = "https://api.github.com"
    host: str = "github.com"
    config_path: str = "conductor.yaml"  # Pipeline definition file inside the repository
    webhook_secret: str | None = None


class AuthConfig(BaseModel):
    jwt_secret: str | None = None
    jwt_algorithm: str = "HS256"
    admins: list[str] = Field(default_factory=list)  # "<scm_context>:<username>"

    def is_admin(self, username: str, scm_context: str) -> bool:
        return f"{scm_context}:{username}" in self.admins


class NotificationsConfig(BaseModel):
    webhook_urls: list[str] = Field(default_factory=list)
    timeout: float = 10.0


class DatabaseConfig(BaseModel):
    path: str = ".conductor-data/conductor.db"


class ConductorConfig(BaseModel):
    """Top-level Conductor configuration (matches conductor.yaml)."""

    webhooks: WebhooksConfig
    server: ServerConfig = Field(default_factory=ServerConfig)
    scm: ScmSettings = Field(default_factory=ScmSettings)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(config_path: Path) -> ConductorConfig:
    """Load Conductor configuration from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If config validation fails.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Conductor config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = ConductorConfig(**raw)
    apply_env_overrides(config)

    logger.info("Loaded Conductor config from %s", config_path)
    return config


def apply_env_overrides(config: ConductorConfig) -> None:
    """Secrets and deployment paths come from the environment, not the file."""
    jwt_secret = os.environ.get("CONDUCTOR_JWT_SECRET")
    if jwt_secret:
        config.auth.jwt_secret = jwt_secret

    webhook_secret = os.environ.get("CONDUCTOR_WEBHOOK_SECRET")
    if webhook_secret:
        config.scm.webhook_secret = webhook_secret

    ui_uri = os.environ.get("CONDUCTOR_UI_URI")
    if ui_uri:
        config.server.ui_uri = ui_uri.rstrip("/")

    api_url = os.environ.get("CONDUCTOR_SCM_API_URL")
    if api_url:
        config.scm.api_url = api_url

    data_dir = os.environ.get("CONDUCTOR_DATA_DIR")
    if data_dir:
        config.database.path = str(Path(data_dir) / "conductor.db")
