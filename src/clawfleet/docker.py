"""Thin async layer over the ``docker`` CLI for the local backend.

Each call shells out in a worker thread (``asyncio.to_thread``) so a slow
daemon never stalls the event loop. Secrets never go through here: the local
backend hands them to the container in a mounted env file.
"""

from __future__ import annotations

import asyncio
import subprocess
import time

from clawfleet.logger import logger

# docker inspect slower than this usually means the daemon is overloaded
_SLOW_INSPECT_MS = 500


def _docker(args: tuple[str, ...], check: bool, timeout: int) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["docker", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        check=check,
    )


async def run_docker(
    *args: str,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run ``docker <args>``; ``CalledProcessError`` on a non-zero exit when ``check``."""
    return await asyncio.to_thread(_docker, args, check, timeout)


async def ensure_network(name: str) -> None:
    existing = await run_docker("network", "inspect", name, check=False)
    if existing.returncode != 0:
        await run_docker("network", "create", "--driver", "bridge", name)
        logger.info("Docker network created", network=name)


async def _inspect(name: str, template: str) -> str | None:
    started = time.monotonic()
    result = await run_docker("inspect", "-f", template, name, check=False)
    took_ms = round((time.monotonic() - started) * 1000)
    if took_ms > _SLOW_INSPECT_MS:
        logger.warning("docker inspect was slow", container=name, took_ms=took_ms)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


async def container_state(name: str) -> str | None:
    """``State.Status`` (``running``, ``exited``, ...), or None if the container is absent."""
    return await _inspect(name, "{{.State.Status}}")


async def container_id(name: str) -> str | None:
    return await _inspect(name, "{{.Id}}")


async def remove_container(name: str) -> None:
    """``docker rm -f``. A missing container counts as removed; any other failure raises."""
    result = await run_docker("rm", "-f", name, check=False)
    if result.returncode != 0 and "no such container" not in result.stderr.lower():
        raise subprocess.CalledProcessError(
            result.returncode, result.args, result.stdout, result.stderr
        )


async def container_logs(name: str, tail: int) -> str:
    result = await run_docker("logs", "--timestamps", "--tail", str(tail), name)
    # the runtime writes most of its output to stderr
    return (result.stdout + result.stderr).strip()
