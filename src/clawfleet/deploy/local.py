"""Local backend: one Docker container per instance on a shared network.

Each instance gets ``<instances_dir>/<id>/config`` (mounted read-only) and
``<instances_dir>/<id>/data`` (mounted read-write). The config directory
holds the compiled runtime config, the boot script and a ``runtime.env``
file with the secrets. Secrets never appear on the ``docker run`` command
line; the boot script sources the env file instead.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
from dataclasses import replace
from pathlib import Path
from typing import Any

from clawfleet.bridge import write_bridge_script
from clawfleet.compiler import CompiledConfig, compile_config
from clawfleet.config import get_settings
from clawfleet.deploy.base import BaseProvider, Provisioned
from clawfleet.docker import (
    container_id,
    container_logs,
    container_state,
    ensure_network,
    remove_container,
    run_docker,
)
from clawfleet.logger import logger
from clawfleet.plugin.hookspecs import hookimpl
from clawfleet.reconcile import reconcile_status
from clawfleet.start_command import (
    BRIDGE_PATH,
    GATEWAY_TOKEN_ENV,
    build_start_script,
    render_env_file,
)
from clawfleet.state import delete_instance, set_instance_status, update_instance
from clawfleet.state.connection import _now
from clawfleet.types import DesiredConfiguration, Instance

# Where the per-instance config directory appears inside the container
CONFIG_MOUNT = "/etc/clawfleet"
ENV_FILENAME = "runtime.env"
SCRIPT_FILENAME = "start.sh"

# docker State.Status → backend status understood by reconcile_status
_CONTAINER_STATES = {
    "running": "success",
    "created": "deploying",
    "restarting": "deploying",
    "removing": "removing",
    "exited": "crashed",
    "dead": "crashed",
}


class LocalBackend(BaseProvider):
    name = "local"

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    @staticmethod
    def instance_dir(instance_id: str) -> Path:
        return get_settings().instances_dir / instance_id

    @staticmethod
    def _shared_bridge_path() -> Path:
        return get_settings().instances_dir / "shared" / "bridge-server.js"

    def _write_instance_files(
        self,
        instance_id: str,
        desired: DesiredConfiguration,
        compiled: CompiledConfig,
        gateway_token: str,
    ) -> None:
        runtime = get_settings().runtime
        root = self.instance_dir(instance_id)
        config_dir = root / "config"
        config_dir.mkdir(parents=True, exist_ok=True)
        (root / "data").mkdir(parents=True, exist_ok=True)
        # Mounted children keep their own modes; the parent keeps other host users out.
        os.chmod(root, 0o700)

        (config_dir / runtime.config_filename).write_text(
            json.dumps(compiled.runtime_config, indent=2, sort_keys=True), "utf-8"
        )

        env = {
            **compiled.env,
            "PORT": str(runtime.bridge_port),
            GATEWAY_TOKEN_ENV: gateway_token,
        }
        (config_dir / ENV_FILENAME).write_text(render_env_file(env), "utf-8")

        script = build_start_script(
            agent_name=bool(desired.agent_name),
            system_prompt=bool(desired.system_prompt),
            binary=runtime.binary,
            config_path=f"{CONFIG_MOUNT}/{runtime.config_filename}",
            workspace=desired.workspace or runtime.default_workspace,
            inline_config=False,
            env_file=f"{CONFIG_MOUNT}/{ENV_FILENAME}",
            bridge_from_env=False,
        )
        (config_dir / SCRIPT_FILENAME).write_text(script, "utf-8")
        write_bridge_script(self._shared_bridge_path())

    async def _remove_files(self, instance_id: str) -> None:
        await asyncio.to_thread(shutil.rmtree, self.instance_dir(instance_id), ignore_errors=True)

    def _run_args(self, instance: Instance) -> list[str]:
        s = get_settings()
        root = self.instance_dir(instance.id)
        return [
            "run",
            "-d",
            "--name",
            instance.container_name,
            "--network",
            s.local.network,
            "--restart",
            "unless-stopped",
            "--memory",
            f"{s.local.memory_mb}m",
            "--cpus",
            str(s.local.cpus),
            "-v",
            f"{root / 'config'}:{CONFIG_MOUNT}:ro",
            "-v",
            f"{root / 'data'}:{s.runtime.data_mount}",
            "-v",
            f"{self._shared_bridge_path()}:{BRIDGE_PATH}:ro",
            s.deploy.image,
            "/bin/sh",
            f"{CONFIG_MOUNT}/{SCRIPT_FILENAME}",
        ]

    async def _container_ref(self, instance: Instance) -> str:
        """Container id, re-resolved by name and persisted if the row lost it."""
        if instance.container_id:
            return instance.container_id
        found = await container_id(instance.container_name)
        if found:
            await update_instance(instance.id, container_id=found)
            logger.info("Recovered missing container id", instance_id=instance.id)
            instance.container_id = found
            return found
        return instance.container_name

    # ------------------------------------------------------------------
    # Deploy hooks
    # ------------------------------------------------------------------

    async def _provision(
        self, instance: Instance, desired: DesiredConfiguration, compiled: CompiledConfig
    ) -> Provisioned:
        s = get_settings()
        await asyncio.to_thread(
            self._write_instance_files, instance.id, desired, compiled, desired.gateway_token or ""
        )
        await ensure_network(s.local.network)
        result = await run_docker(*self._run_args(instance), timeout=120)
        cid = result.stdout.strip() or None

        service_url = f"http://{instance.container_name}:{s.runtime.gateway_port}"
        await update_instance(
            instance.id, container_id=cid, service_url=service_url, status="RUNNING"
        )
        return Provisioned(
            container_id=cid,
            service_url=service_url,
            access_url=None,
            status="RUNNING",
            log_status="SUCCESS",
            message="Container started",
        )

    async def _teardown(self, instance: Instance) -> None:
        await remove_container(instance.container_name)
        await self._remove_files(instance.id)

    async def _remove_orphan(self, name: str) -> None:
        if await container_state(name) is not None:
            logger.info("Removing orphaned container", resource=name)
            await remove_container(name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, instance_id: str) -> None:
        async with self._audit(instance_id, "START") as outcome:
            instance = await self._require_instance(instance_id)
            await run_docker("start", await self._container_ref(instance))
            await set_instance_status(instance_id, "RUNNING")
            outcome.message = "Container started"

    async def stop(self, instance_id: str) -> None:
        async with self._audit(instance_id, "STOP") as outcome:
            instance = await self._require_instance(instance_id)
            timeout = str(get_settings().local.stop_timeout)
            await run_docker("stop", "-t", timeout, await self._container_ref(instance))
            await set_instance_status(instance_id, "STOPPED")
            outcome.message = "Container stopped"

    async def restart(self, instance_id: str) -> None:
        async with self._audit(instance_id, "RESTART") as outcome:
            instance = await self._require_instance(instance_id)
            await set_instance_status(instance_id, "RESTARTING")
            await self._restart_container(instance)
            await set_instance_status(instance_id, "RUNNING")
            outcome.message = "Container restarted"

    async def _restart_container(self, instance: Instance) -> None:
        timeout = str(get_settings().local.stop_timeout)
        await run_docker("restart", "-t", timeout, await self._container_ref(instance), timeout=60)

    async def redeploy(self, instance_id: str) -> None:
        """Refresh the shared bridge script and restart. The gateway token is kept."""
        async with self._audit(instance_id, "REDEPLOY") as outcome:
            instance = await self._require_instance(instance_id)
            await asyncio.to_thread(write_bridge_script, self._shared_bridge_path())
            await self._restart_container(instance)
            await set_instance_status(instance_id, "RUNNING")
            outcome.message = "Container restarted with current bridge"

    async def destroy(self, instance_id: str) -> None:
        async with self._audit(instance_id, "DESTROY") as outcome:
            instance = await self._require_instance(instance_id)
            await remove_container(instance.container_name)
            await self._remove_files(instance_id)
            await delete_instance(instance_id)
            outcome.message = "Instance destroyed"

    async def update_config(self, instance_id: str, config: DesiredConfiguration) -> None:
        async with self._audit(instance_id, "CONFIG_UPDATE") as outcome:
            instance = await self._require_instance(instance_id)
            token = await self._ensure_gateway_token(instance_id, config)
            config = replace(config, gateway_token=token)
            compiled = compile_config(config)
            await asyncio.to_thread(
                self._write_instance_files, instance_id, config, compiled, token
            )
            await self._restart_container(instance)
            await set_instance_status(instance_id, "RUNNING")
            outcome.message = "Configuration applied; container restarted"

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    async def check_health(self, instance_id: str) -> bool:
        try:
            instance = await self._require_instance(instance_id)
            state = await container_state(instance.container_name)
            if instance.status == "STOPPED" and state in (None, "exited"):
                await update_instance(instance_id, last_health_check=_now())
                return False
            backend_status = _CONTAINER_STATES.get(state) if state else "crashed"
            status = reconcile_status(instance.status, backend_status)
            await update_instance(instance_id, status=status, last_health_check=_now())
            return state == "running"
        except Exception as exc:
            logger.warning("Health check failed", instance_id=instance_id, error=str(exc))
            return False

    async def get_logs(self, instance_id: str, tail: int = 100) -> str:
        instance = await self._require_instance(instance_id)
        return await container_logs(await self._container_ref(instance), tail)


class LocalBackendPlugin:
    """Plugin providing the local Docker backend."""

    @hookimpl
    def clawfleet_deployment_backend(self) -> Any | None:
        return LocalBackend
