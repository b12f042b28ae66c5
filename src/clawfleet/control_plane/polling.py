from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from clawfleet.config import get_settings
from clawfleet.control_plane.client import ControlPlaneClient
from clawfleet.errors import ControlPlaneError, DeploymentFailedError, DeploymentTimeoutError
from clawfleet.logger import logger

FAILURE_LOG_LINES = 30


async def wait_for_deployment(
    client: ControlPlaneClient,
    service_id: str,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str | None:
    """Poll until the latest deployment of ``service_id`` is terminal.

    Returns the deployment URL (or None) on SUCCESS. FAILED/CRASHED raise
    DeploymentFailedError with the last log lines attached.
    """
    cfg = get_settings().remote
    deadline = clock() + cfg.poll_timeout

    while clock() < deadline:
        deployment = await client.get_latest_deployment(service_id)
        if deployment is not None:
            logger.debug(
                "Deployment status",
                service_id=service_id,
                deployment_id=deployment.id,
                status=deployment.status,
            )
            status = deployment.status.upper()
            if status == "SUCCESS":
                return deployment.url
            if status in ("FAILED", "CRASHED"):
                try:
                    lines = await client.get_logs(deployment.id, FAILURE_LOG_LINES)
                    logs = [f"[{line.severity}] {line.message}" for line in lines]
                except ControlPlaneError as exc:
                    logger.warning("Could not fetch failure logs", error=str(exc))
                    logs = []
                raise DeploymentFailedError(status, logs)
        await sleep(cfg.poll_interval)

    raise DeploymentTimeoutError(
        f"Deployment of {service_id} timed out after {cfg.poll_timeout:.0f}s"
    )
