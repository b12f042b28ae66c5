"""Remote backend: one hosted service per instance on the control plane.

The runtime config, gateway token and bridge script all travel as service
variables; the boot script itself is packed into the start command.
Every mutating control-plane call except ``create_service`` goes through
:func:`retry_control_plane`. Creation isn't retried: a duplicate service is
worse than a failed deploy, and the next deploy cleans up by name anyway.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from clawfleet.bridge import bridge_script_b64
from clawfleet.compiler import CompiledConfig, compile_config
from clawfleet.config import get_settings
from clawfleet.control_plane import ControlPlaneClient, retry_control_plane, wait_for_deployment
from clawfleet.deploy.base import BaseProvider, Provisioned
from clawfleet.errors import (
    ConfigValidationError,
    DeploymentFailedError,
    ResourceNotFoundError,
)
from clawfleet.logger import logger
from clawfleet.plugin.hookspecs import hookimpl
from clawfleet.reconcile import reconcile_status
from clawfleet.start_command import BRIDGE_ENV, CONFIG_ENV, GATEWAY_TOKEN_ENV, build_start_command
from clawfleet.state import delete_instance, set_instance_status, update_instance
from clawfleet.state.connection import _now
from clawfleet.types import DesiredConfiguration, Instance

# Service variables are capped by the platform; the config blob is the big one.
MAX_CONFIG_ENV_BYTES = 32 * 1024


class RemoteBackend(BaseProvider):
    name = "remote"

    def __init__(self, client: ControlPlaneClient | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._client = client

    @property
    def client(self) -> ControlPlaneClient:
        if self._client is None:
            self._client = ControlPlaneClient.from_settings()
        return self._client

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _runtime_env(self, compiled: CompiledConfig, gateway_token: str) -> dict[str, str]:
        runtime = get_settings().runtime
        config_json = compiled.to_json()
        if len(config_json.encode("utf-8")) > MAX_CONFIG_ENV_BYTES:
            raise ConfigValidationError(
                f"Invalid config/env: {CONFIG_ENV} exceeds {MAX_CONFIG_ENV_BYTES} bytes"
            )
        return {
            **compiled.env,
            "PORT": str(runtime.bridge_port),
            GATEWAY_TOKEN_ENV: gateway_token,
            CONFIG_ENV: config_json,
            BRIDGE_ENV: bridge_script_b64(),
        }

    def _start_command(self, desired: DesiredConfiguration) -> str:
        runtime = get_settings().runtime
        return build_start_command(
            agent_name=bool(desired.agent_name),
            system_prompt=bool(desired.system_prompt),
            binary=runtime.binary,
            config_path=runtime.config_path,
            workspace=desired.workspace or runtime.default_workspace,
        )

    def _service_url(self, name: str) -> str:
        s = get_settings()
        return f"http://{name}.{s.remote.private_domain}:{s.runtime.gateway_port}"

    async def _service_id(self, instance: Instance) -> str:
        """The stored service id, re-resolved by name and persisted if missing."""
        if instance.container_id:
            return instance.container_id
        found = await self.client.find_service_by_name(instance.container_name)
        if not found:
            raise ResourceNotFoundError(f"No remote service named {instance.container_name}")
        await update_instance(instance.id, container_id=found)
        logger.info(
            "Recovered missing service id",
            instance_id=instance.id,
            service_id=found,
        )
        instance.container_id = found
        return found

    async def _redeploy(self, service_id: str) -> None:
        await retry_control_plane(lambda: self.client.redeploy_service(service_id), "redeploy")

    # ------------------------------------------------------------------
    # Deploy hooks
    # ------------------------------------------------------------------

    async def _provision(
        self, instance: Instance, desired: DesiredConfiguration, compiled: CompiledConfig
    ) -> Provisioned:
        s = get_settings()
        env = self._runtime_env(compiled, desired.gateway_token or "")
        client = self.client

        service_id = await client.create_service(instance.container_name, s.deploy.image, env)
        await update_instance(instance.id, container_id=service_id)

        start_command = self._start_command(desired)
        await retry_control_plane(
            lambda: client.update_service_instance(
                service_id,
                start_command=start_command,
                restart_policy=s.remote.restart_policy,
                restart_max_retries=s.remote.restart_max_retries,
            ),
            "set start command",
        )

        access_url = None
        try:
            domain = await retry_control_plane(
                lambda: client.create_service_domain(service_id), "create domain"
            )
            access_url = f"https://{domain}"
        except Exception as exc:
            logger.warning(
                "Could not create public domain (continuing)",
                instance_id=instance.id,
                error=str(exc),
            )

        await self._redeploy(service_id)

        service_url = self._service_url(instance.container_name)
        await update_instance(instance.id, service_url=service_url, access_url=access_url)
        return Provisioned(
            container_id=service_id,
            service_url=service_url,
            access_url=access_url,
            status="DEPLOYING",
            log_status="QUEUED",
            message="Deployment queued",
        )

    async def _teardown(self, instance: Instance) -> None:
        service_id = instance.container_id or await self.client.find_service_by_name(
            instance.container_name
        )
        if service_id:
            await retry_control_plane(
                lambda: self.client.delete_service(service_id), "delete service"
            )

    async def _remove_orphan(self, name: str) -> None:
        service_id = await self.client.find_service_by_name(name)
        if service_id:
            logger.info("Removing orphaned service", resource=name, service_id=service_id)
            await retry_control_plane(
                lambda: self.client.delete_service(service_id), "delete service"
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, instance_id: str) -> None:
        async with self._audit(instance_id, "START") as outcome:
            instance = await self._require_instance(instance_id)
            await self._redeploy(await self._service_id(instance))
            await set_instance_status(instance_id, "RUNNING")
            outcome.message = "Service redeployed"

    async def stop(self, instance_id: str) -> None:
        async with self._audit(instance_id, "STOP") as outcome:
            instance = await self._require_instance(instance_id)
            service_id = await self._service_id(instance)
            deployment = await self.client.get_latest_deployment(service_id)
            if deployment is None:
                raise ResourceNotFoundError(f"No deployment to stop for {instance.container_name}")
            await retry_control_plane(
                lambda: self.client.remove_deployment(deployment.id), "remove deployment"
            )
            await set_instance_status(instance_id, "STOPPED")
            outcome.message = "Deployment removed"

    async def restart(self, instance_id: str) -> None:
        async with self._audit(instance_id, "RESTART") as outcome:
            instance = await self._require_instance(instance_id)
            service_id = await self._service_id(instance)
            await set_instance_status(instance_id, "RESTARTING")
            deployment = await self.client.get_latest_deployment(service_id)
            if deployment is not None and deployment.status.upper() == "SUCCESS":
                await retry_control_plane(
                    lambda: self.client.restart_deployment(deployment.id), "restart deployment"
                )
                outcome.message = "Deployment restarted"
            else:
                await self._redeploy(service_id)
                outcome.message = "No healthy deployment; redeployed"
            await set_instance_status(instance_id, "RUNNING")

    async def redeploy(self, instance_id: str) -> None:
        """Redeploy with the current bridge script. The gateway token is kept."""
        async with self._audit(instance_id, "REDEPLOY") as outcome:
            instance = await self._require_instance(instance_id)
            service_id = await self._service_id(instance)
            b64 = bridge_script_b64()
            await retry_control_plane(
                lambda: self.client.set_variables(service_id, {BRIDGE_ENV: b64}),
                "set variables",
            )
            await self._redeploy(service_id)
            await set_instance_status(instance_id, "DEPLOYING")
            outcome.message = "Redeploy triggered"

    async def destroy(self, instance_id: str) -> None:
        async with self._audit(instance_id, "DESTROY") as outcome:
            instance = await self._require_instance(instance_id)
            service_id = instance.container_id or await self.client.find_service_by_name(
                instance.container_name
            )
            if service_id:
                await retry_control_plane(
                    lambda: self.client.delete_service(service_id), "delete service"
                )
            else:
                logger.warning("No remote service found to delete", instance_id=instance_id)
            await delete_instance(instance_id)
            outcome.message = "Instance destroyed"

    async def update_config(self, instance_id: str, config: DesiredConfiguration) -> None:
        async with self._audit(instance_id, "CONFIG_UPDATE") as outcome:
            instance = await self._require_instance(instance_id)
            service_id = await self._service_id(instance)
            token = await self._ensure_gateway_token(instance_id, config)
            config = replace(config, gateway_token=token)
            compiled = compile_config(config)
            env = self._runtime_env(compiled, token)
            start_command = self._start_command(config)

            await retry_control_plane(
                lambda: self.client.set_variables(service_id, env), "set variables"
            )
            await retry_control_plane(
                lambda: self.client.update_service_instance(
                    service_id, start_command=start_command
                ),
                "set start command",
            )
            await self._redeploy(service_id)
            await set_instance_status(instance_id, "RESTARTING")
            outcome.message = "Configuration applied; redeploying"

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    async def check_health(self, instance_id: str) -> bool:
        try:
            instance = await self._require_instance(instance_id)
            service_id = await self._service_id(instance)
            deployment = await self.client.get_latest_deployment(service_id)
            status = reconcile_status(instance.status, deployment.status if deployment else None)
            await update_instance(instance_id, status=status, last_health_check=_now())
            return status == "RUNNING"
        except Exception as exc:
            logger.warning("Health check failed", instance_id=instance_id, error=str(exc))
            return False

    async def get_logs(self, instance_id: str, tail: int = 100) -> str:
        instance = await self._require_instance(instance_id)
        service_id = await self._service_id(instance)
        deployment = await self.client.get_latest_deployment(service_id)
        if deployment is None:
            return "No deployments found."
        lines = await self.client.get_logs(deployment.id, tail)
        return "\n".join(line.render() for line in lines)

    async def wait_until_ready(self, instance_id: str) -> str | None:
        """Block until the latest deployment settles. Returns the access URL."""
        instance = await self._require_instance(instance_id)
        service_id = await self._service_id(instance)
        try:
            url = await wait_for_deployment(self.client, service_id)
        except DeploymentFailedError:
            await set_instance_status(instance_id, "ERROR")
            raise
        access_url = instance.access_url
        if access_url is None and url:
            access_url = url if url.startswith("http") else f"https://{url}"
        await update_instance(instance_id, status="RUNNING", access_url=access_url)
        return access_url


class RemoteBackendPlugin:
    """Plugin providing the remote hosting backend."""

    @hookimpl
    def clawfleet_deployment_backend(self) -> Any | None:
        return RemoteBackend
