"""Deployment provider contract and the behaviour both backends share.

Every lifecycle call writes exactly one deployment log entry, on success or
failure, through :meth:`BaseProvider._audit`. ``deploy`` is idempotent per
user: the previous instance and any orphaned backend resource carrying the
deterministic name are torn down before anything new is created.
"""

from __future__ import annotations

import re
import secrets
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import ClassVar, Protocol, runtime_checkable

from clawfleet.ai_providers import provider_env_var
from clawfleet.compiler import (
    CHANNEL_ENV_VARS,
    CompiledConfig,
    compile_config,
    filter_configured_channels,
)
from clawfleet.config import get_settings
from clawfleet.crypto import SecretBox, get_secret_box
from clawfleet.errors import ConfigValidationError, InstanceNotFoundError
from clawfleet.logger import bound_operation, logger
from clawfleet.overlay import MetaOverlay, merge_overlay, stored_overlay
from clawfleet.ports import PortAllocator
from clawfleet.state import (
    create_instance,
    delete_instance,
    get_full_config,
    get_gateway_token,
    get_instance,
    get_instance_for_user,
    log_deployment,
    save_configuration,
    set_full_config,
    set_instance_status,
    update_configuration,
)
from clawfleet.types import (
    DeploymentAction,
    DeploymentResult,
    DesiredConfiguration,
    Instance,
    InstanceStatus,
    LogStatus,
)


@runtime_checkable
class DeploymentProvider(Protocol):
    """What callers (CLI, synchronizer, host app) rely on."""

    name: str

    async def deploy(self, user_id: str, config: DesiredConfiguration) -> DeploymentResult: ...
    async def start(self, instance_id: str) -> None: ...
    async def stop(self, instance_id: str) -> None: ...
    async def restart(self, instance_id: str) -> None: ...
    async def destroy(self, instance_id: str) -> None: ...
    async def redeploy(self, instance_id: str) -> None: ...
    async def check_health(self, instance_id: str) -> bool: ...
    async def get_logs(self, instance_id: str, tail: int = 100) -> str: ...
    async def update_config(self, instance_id: str, config: DesiredConfiguration) -> None: ...
    async def get_service_url(self, instance_id: str) -> str | None: ...
    async def get_access_url(self, instance_id: str) -> str | None: ...


@dataclass
class Provisioned:
    """What a backend reports after creating the resource for a new instance."""

    container_id: str | None
    service_url: str | None
    access_url: str | None
    status: InstanceStatus = "DEPLOYING"
    log_status: LogStatus = "QUEUED"
    message: str = "Deployment queued"


@dataclass
class _Outcome:
    status: LogStatus = "SUCCESS"
    message: str | None = None


def generate_gateway_token() -> str:
    return secrets.token_hex(24)


def validate_secret_env(desired: DesiredConfiguration, env: dict[str, str]) -> None:
    """Refuse to create anything the runtime couldn't boot with."""
    errors: list[str] = []
    var = provider_env_var(desired.provider)
    if not env.get(var):
        errors.append(f"{var} is missing for provider {desired.provider}")
    if not desired.gateway_token:
        errors.append("gateway token is missing")
    for channel in filter_configured_channels(desired.channels):
        for env_name, _ in CHANNEL_ENV_VARS.get(channel.type.upper(), ()):
            if not env.get(env_name):
                errors.append(f"{env_name} is missing")
    if errors:
        raise ConfigValidationError(f"Invalid config/env: {'; '.join(errors)}")


_NAME_UNSAFE = re.compile(r"[^a-z0-9-]+")


class BaseProvider(ABC):
    name: ClassVar[str]

    def __init__(self, box: SecretBox | None = None) -> None:
        self._box = box

    @property
    def box(self) -> SecretBox:
        if self._box is None:
            self._box = get_secret_box()
        return self._box

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def resource_name(user_id: str) -> str:
        """Deterministic per-user resource name (the orphan-detection key)."""
        prefix = get_settings().deploy.resource_prefix
        slug = _NAME_UNSAFE.sub("-", user_id.lower()).strip("-")
        return f"{prefix}-{slug}"

    async def _require_instance(self, instance_id: str) -> Instance:
        instance = await get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    @asynccontextmanager
    async def _audit(self, instance_id: str, action: DeploymentAction) -> AsyncIterator[_Outcome]:
        """Write the single log entry for a lifecycle call.

        The body may set ``outcome.status`` / ``outcome.message``. Exceptions
        are logged as FAILED with their message and re-raised.
        """
        outcome = _Outcome()
        with bound_operation(backend=self.name, action=action, instance_id=instance_id):
            try:
                yield outcome
            except Exception as exc:
                logger.error("Lifecycle operation failed", error=str(exc))
                label = action.replace("_", " ").capitalize()
                await log_deployment(instance_id, action, "FAILED", f"{label} failed", str(exc))
                raise
            await log_deployment(instance_id, action, outcome.status, outcome.message)
            logger.info("Lifecycle operation completed", status=outcome.status)

    async def _ensure_gateway_token(self, instance_id: str, desired: DesiredConfiguration) -> str:
        """The stored token, generating and persisting one only if none exists."""
        stored = await get_gateway_token(instance_id, self.box)
        if stored:
            return stored
        token = desired.gateway_token or generate_gateway_token()
        await update_configuration(instance_id, self.box, gateway_token=token)
        return token

    async def _persist_compiled(self, instance_id: str, compiled: CompiledConfig) -> None:
        raw_overlay = stored_overlay(await get_full_config(instance_id))
        await set_full_config(instance_id, merge_overlay(compiled.runtime_config, raw_overlay))

    # ------------------------------------------------------------------
    # deploy (shared flow)
    # ------------------------------------------------------------------

    async def deploy(self, user_id: str, config: DesiredConfiguration) -> DeploymentResult:
        name = self.resource_name(user_id)
        await self._cleanup_existing(user_id)
        await self._cleanup_orphan(name)

        s = get_settings()
        allocator = PortAllocator(s.ports.base, s.ports.max_instances)
        instance = await create_instance(user_id, name, allocator)
        desired = replace(config, gateway_token=config.gateway_token or generate_gateway_token())
        logger.info(
            "Deploying instance",
            backend=self.name,
            instance_id=instance.id,
            user_id=user_id,
            resource=name,
            port=instance.port,
        )

        async with self._audit(instance.id, "DEPLOY") as outcome:
            try:
                await save_configuration(instance.id, desired, self.box)
                compiled = compile_config(desired)
                await set_full_config(
                    instance.id, merge_overlay(compiled.runtime_config, MetaOverlay())
                )
                validate_secret_env(desired, compiled.env)
                provisioned = await self._provision(instance, desired, compiled)
            except Exception:
                await set_instance_status(instance.id, "ERROR")
                raise
            outcome.status = provisioned.log_status
            outcome.message = provisioned.message

        return DeploymentResult(
            instance_id=instance.id,
            resource_id=provisioned.container_id,
            resource_name=name,
            port=instance.port,
            access_url=provisioned.access_url,
            status=provisioned.status,
            gateway_token=desired.gateway_token or "",
        )

    async def _cleanup_existing(self, user_id: str) -> None:
        existing = await get_instance_for_user(user_id)
        if existing is None:
            return
        error: str | None = None
        try:
            await self._teardown(existing)
        except Exception as exc:
            error = str(exc)
            logger.warning(
                "Teardown of previous instance failed (continuing)",
                instance_id=existing.id,
                error=error,
            )
        await delete_instance(existing.id)
        await log_deployment(
            existing.id,
            "CLEANUP",
            "SUCCESS",
            "Removed previous instance before redeploy",
            error,
        )

    async def _cleanup_orphan(self, name: str) -> None:
        try:
            await self._remove_orphan(name)
        except Exception as exc:
            logger.warning("Orphan cleanup failed (continuing)", resource=name, error=str(exc))

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    async def get_service_url(self, instance_id: str) -> str | None:
        instance = await get_instance(instance_id)
        return instance.service_url if instance else None

    async def get_access_url(self, instance_id: str) -> str | None:
        instance = await get_instance(instance_id)
        return instance.access_url if instance else None

    # ------------------------------------------------------------------
    # Backend-specific
    # ------------------------------------------------------------------

    @abstractmethod
    async def _provision(
        self, instance: Instance, desired: DesiredConfiguration, compiled: CompiledConfig
    ) -> Provisioned: ...

    @abstractmethod
    async def _teardown(self, instance: Instance) -> None:
        """Remove the backend resource of an instance that is being replaced."""

    @abstractmethod
    async def _remove_orphan(self, name: str) -> None:
        """Remove a backend resource with ``name`` that has no instance row."""
