"""prsite settings: one pydantic-settings model per config.yaml section.

Every section can also be set from the environment with its prefix
(PORTS_MIN_PORT, INSTANCES_LINK_DOMAIN, ...). Strings in config.yaml may
reference ``${VAR}``; unset variables are left untouched.

The GitHub token and webhook secret should not live in config.yaml. They
are read from GITHUB_TOKEN / WEBHOOK_SECRET or from the file named by
GITHUB_TOKEN_FILE / WEBHOOK_SECRET_FILE (Docker secrets).
"""

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_REF_RE = re.compile(r"\$\{(\w+)\}")

PLACEHOLDER_SECRETS = ("your-webhook-secret-here", "your-token-here")


class BotConfig(BaseSettings):
    """Identity the bot posts as (and ignores comments from)."""

    model_config = SettingsConfigDict(env_prefix="BOT_", extra="ignore")

    github_username: str | None = Field(
        default=None,
        description="Bot GitHub login; resolved from the token (GET /user) when empty",
    )


class GitHubConfig(BaseSettings):
    """GitHub REST endpoint, token and webhook delivery settings."""

    model_config = SettingsConfigDict(env_prefix="GITHUB_", extra="ignore")

    token: str | None = Field(default=None, description="Personal access or app token; prefer GITHUB_TOKEN")
    api_url: str = Field(default="https://api.github.com", description="REST API root (GitHub Enterprise: https://host/api/v3)")
    webhook_path: str = Field(default="/hook", description="Webhook URL path")
    webhook_secret: str = Field(default="", description="Shared secret for X-Hub-Signature-256")


class WebhookConfig(BaseSettings):
    """Address the webhook HTTP server binds to."""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_", extra="ignore")

    host: str = Field(default="0.0.0.0", description="Interface to listen on")
    port: int = Field(default=8000, ge=1, le=65535, description="Webhook listen port")


class PortsConfig(BaseSettings):
    """Port pool handed out to site instances."""

    model_config = SettingsConfigDict(env_prefix="PORTS_", extra="ignore")

    min_port: int = Field(default=9000, ge=1, le=65535, description="Lowest allocatable port")
    max_port: int = Field(default=9100, ge=1, le=65535, description="Highest allocatable port (inclusive)")
    max_consecutive: int | None = Field(
        default=None, ge=1, description="Max ports per allocation; unbounded when empty"
    )
    block_size: int = Field(default=1, ge=1, description="Ports assigned to each instance")

    @model_validator(mode="after")
    def _check_range(self) -> "PortsConfig":
        if self.min_port > self.max_port:
            raise ValueError(f"min_port {self.min_port} is greater than max_port {self.max_port}")
        if self.max_consecutive is not None and self.block_size > self.max_consecutive:
            raise ValueError(f"block_size {self.block_size} exceeds max_consecutive {self.max_consecutive}")
        return self


class InstancesConfig(BaseSettings):
    """Site instance settings."""

    model_config = SettingsConfigDict(env_prefix="INSTANCES_", extra="ignore")

    link_domain: str = Field(default="localhost", description="Domain used to build preview links")
    directory: str = Field(default="site_instances", description="Root directory for instance trees")
    open_hours: float = Field(default=48, ge=0, description="Idle hours before an instance is removed; 0 disables")
    reaper_interval_seconds: int = Field(default=300, ge=1, description="Idle reaper tick interval")
    pr_delay_ms: int = Field(
        default=15000,
        ge=0,
        description="Delay before pull_request events run (GitHub needs time to build the archive)",
    )
    command: list[str] = Field(default_factory=list, description="argv that starts a site; empty = extract only")
    command_timeout: int = Field(default=30, ge=1, description="Seconds to wait for a site process to stop")


class SchedulerConfig(BaseSettings):
    """Worker pool that runs due webhook handlers."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", extra="ignore")

    max_workers: int = Field(default=4, ge=1, description="Worker threads running due handlers")


class LoggingConfig(BaseSettings):
    """Root logger level and record format."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )


def _secret_from_env(name: str) -> str | None:
    """NAME from the environment, else the contents of the file NAME_FILE."""
    value = os.environ.get(name, "").strip()
    if value:
        return value
    file_path = os.environ.get(f"{name}_FILE")
    if file_path:
        return Path(file_path).read_text().strip() or None
    return None


def _configured(value: str | None) -> bool:
    return bool(value) and "${" not in value and value not in PLACEHOLDER_SECRETS


class AppConfig(BaseSettings):
    """All sections of config.yaml."""

    model_config = SettingsConfigDict(extra="ignore")

    bot: BotConfig = Field(default_factory=BotConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    ports: PortsConfig = Field(default_factory=PortsConfig)
    instances: InstancesConfig = Field(default_factory=InstancesConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def github_token_resolved(self) -> str | None:
        """github.token if set, else GITHUB_TOKEN / GITHUB_TOKEN_FILE."""
        if _configured(self.github.token):
            return self.github.token
        return _secret_from_env("GITHUB_TOKEN")

    @property
    def webhook_secret_resolved(self) -> str:
        """github.webhook_secret if set, else WEBHOOK_SECRET / WEBHOOK_SECRET_FILE."""
        if _configured(self.github.webhook_secret):
            return self.github.webhook_secret
        return _secret_from_env("WEBHOOK_SECRET") or ""


def expand_env(value: Any, environ: Mapping[str, str]) -> Any:
    """Expand ${VAR} references in every string of a parsed YAML tree.

    Bare $VAR is left alone so instance commands can use $PORT at run time.
    """
    if isinstance(value, str):
        return ENV_REF_RE.sub(lambda m: environ.get(m.group(1), m.group(0)), value)
    if isinstance(value, dict):
        return {k: expand_env(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v, environ) for v in value]
    return value


SECTIONS = {
    "bot": BotConfig,
    "github": GitHubConfig,
    "webhook": WebhookConfig,
    "ports": PortsConfig,
    "instances": InstancesConfig,
    "scheduler": SchedulerConfig,
    "logging": LoggingConfig,
}


def load_config(config_path: Path | None = None) -> AppConfig:
    """Read config.yaml (missing file: defaults plus environment)."""
    path = config_path or Path("config.yaml")
    if not path.is_file():
        return AppConfig()
    raw = expand_env(yaml.safe_load(path.read_text()) or {}, os.environ)
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping of sections")
    return AppConfig(**{name: model(**(raw.get(name) or {})) for name, model in SECTIONS.items()})
