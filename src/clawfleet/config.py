"""clawfleet settings: pydantic-settings over config.toml, .env and the environment.

Non-secret settings live in config.toml. Secrets (control-plane token,
encryption key) live in .env. Environment variables override both using
``__`` as the nested delimiter (e.g. ``REMOTE__TOKEN``). Secrets use
SecretStr so they stay masked in logs and reprs.

Precedence, strongest first: init kwargs, environment, .env, config.toml.

Usage::

    from clawfleet.config import get_settings

    s = get_settings()
    print(s.deploy.backend)
    print(s.local.network)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# config.toml sections
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Unknown keys are errors, so a misspelt option never silently defaults."""

    model_config = {"extra": "forbid"}


class DeployConfig(_StrictModel):
    # "remote", "local", or the name of a plugin-provided backend
    backend: str = "remote"
    image: str = "ghcr.io/openclaw/openclaw:latest"
    # Resource names are "<prefix>-<user id>"; one live instance per user.
    resource_prefix: str = "openclaw"

    @field_validator("backend")
    @classmethod
    def _backend_lower(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("resource_prefix")
    @classmethod
    def _prefix_not_empty(cls, v: str) -> str:
        v = v.strip().strip("-")
        if not v:
            raise ValueError("deploy.resource_prefix must not be empty")
        return v


class RemoteConfig(_StrictModel):
    api_url: str = "https://backboard.railway.app/graphql/v2"
    token: SecretStr | None = None
    project_id: str | None = None
    environment_id: str | None = None
    private_domain: str = "railway.internal"
    restart_policy: str = "ON_FAILURE"
    restart_max_retries: int = 10
    request_timeout: float = 30.0

    # "Updated too recently" / rate limit back-off
    cooldown_budget: float = 180.0
    cooldown_base_delay: float = 5.0
    cooldown_max_delay: float = 20.0

    # Generic 400 / "problem processing request"
    transient_retries: int = 3
    transient_delay: float = 2.0

    poll_interval: float = 3.0
    poll_timeout: float = 120.0


class LocalConfig(_StrictModel):
    network: str = "openclaw-network"
    data_dir: str | None = None  # None → <project>/data/instances
    memory_mb: int = 512
    cpus: float = 0.5
    stop_timeout: int = 5


class RuntimeConfig(_StrictModel):
    """The agent runtime image's own contract (paths, ports, binary)."""

    binary: str = "openclaw"
    config_dir: str = "/tmp/.openclaw"
    config_filename: str = "openclaw.json"
    default_workspace: str = "~/.openclaw/workspace"
    data_mount: str = "/home/node/.openclaw/data"
    gateway_port: int = 18789
    bridge_port: int = 18800
    canvas_port: int = 18793
    bridge_script: str | None = None  # override the packaged bridge-server.js

    @property
    def config_path(self) -> str:
        return f"{self.config_dir}/{self.config_filename}"


class PortsConfig(_StrictModel):
    base: int = 18790
    max_instances: int = 100


class ServiceConfig(_StrictModel):
    # Public URL of the service hosting the relay / memory endpoints.
    # Delegation and variable-lookup instructions are skipped without it.
    public_url: str | None = None


class SecretsConfig(_StrictModel):
    encryption_key: SecretStr | None = None


class LoggingConfig(_StrictModel):
    level: str = "INFO"


class PluginConfig(_StrictModel):
    enabled: bool = True


# ---------------------------------------------------------------------------
# Settings root
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    deploy: DeployConfig = DeployConfig()
    remote: RemoteConfig = RemoteConfig()
    local: LocalConfig = LocalConfig()
    runtime: RuntimeConfig = RuntimeConfig()
    ports: PortsConfig = PortsConfig()
    service: ServiceConfig = ServiceConfig()
    secrets: SecretsConfig = SecretsConfig()
    logging: LoggingConfig = LoggingConfig()
    plugins: dict[str, PluginConfig] = {}

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """init kwargs win, then the environment, .env, config.toml, secret files."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # Paths derived from the working directory

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def db_path(self) -> Path:
        return self.data_dir / "clawfleet.db"

    @cached_property
    def instances_dir(self) -> Path:
        """Host directory holding one sub-directory per local instance."""
        if self.local.data_dir:
            return Path(self.local.data_dir).expanduser().resolve()
        return self.data_dir / "instances"


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Settings loaded on first use, then shared by the whole process."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget the loaded Settings so the next get_settings() reloads them."""
    global _settings
    _settings = None
