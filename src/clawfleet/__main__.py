"""Entry point for `python -m clawfleet` / `clawfleet`.

Subcommands:
    clawfleet deploy USER CONFIG.json [--wait]
    clawfleet start|stop|restart|redeploy|destroy INSTANCE
    clawfleet health INSTANCE
    clawfleet sync INSTANCE
    clawfleet status [INSTANCE]
    clawfleet logs INSTANCE [--tail N]
    clawfleet history INSTANCE [--limit N]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from clawfleet.errors import FleetError

_LIFECYCLE = ("start", "stop", "restart", "redeploy", "destroy")


async def _deploy(user_id: str, config_path: str, wait: bool) -> None:
    from clawfleet.deploy import get_provider
    from clawfleet.types import DesiredConfiguration

    raw = json.loads(Path(config_path).read_text("utf-8"))
    provider = get_provider()
    result = await provider.deploy(user_id, DesiredConfiguration.from_dict(raw))
    print(f"instance:  {result.instance_id}")
    print(f"resource:  {result.resource_name} ({result.resource_id or 'pending'})")
    print(f"port:      {result.port}")
    print(f"status:    {result.status}")
    print(f"token:     {result.gateway_token}")
    access_url = result.access_url
    wait_until_ready = getattr(provider, "wait_until_ready", None)
    if wait and wait_until_ready is not None:
        print("waiting for deployment...")
        access_url = await wait_until_ready(result.instance_id) or access_url
    if access_url:
        print(f"url:       {access_url}")


async def _lifecycle(action: str, instance_id: str) -> None:
    from clawfleet.deploy import get_provider

    await getattr(get_provider(), action)(instance_id)
    print(f"{action}: ok")


async def _health(instance_id: str) -> bool:
    from clawfleet.deploy import get_provider

    healthy = await get_provider().check_health(instance_id)
    print("healthy" if healthy else "unhealthy")
    return healthy


async def _sync(instance_id: str) -> None:
    from clawfleet.sync import ConfigSynchronizer

    await ConfigSynchronizer().rebuild_and_apply(instance_id)
    print("configuration applied")


async def _status(instance_id: str | None) -> None:
    from clawfleet.state import get_instance, list_instances

    if instance_id:
        instance = await get_instance(instance_id)
        instances = [instance] if instance else []
    else:
        instances = await list_instances()
    if not instances:
        print("no instances")
        return
    for inst in instances:
        print(
            f"{inst.id}  {inst.user_id:<20} {inst.status:<10} port={inst.port} "
            f"{inst.access_url or inst.service_url or '-'}"
        )


async def _logs(instance_id: str, tail: int) -> None:
    from clawfleet.deploy import get_provider

    print(await get_provider().get_logs(instance_id, tail))


async def _history(instance_id: str, limit: int) -> None:
    from clawfleet.state import get_deployment_logs

    for entry in await get_deployment_logs(instance_id, limit):
        line = f"{entry.timestamp}  {entry.action:<13} {entry.status:<7} {entry.message or ''}"
        if entry.error:
            line += f"  ({entry.error})"
        print(line)


async def _dispatch(args: argparse.Namespace) -> int:
    from clawfleet.config import get_settings
    from clawfleet.logger import set_level
    from clawfleet.state import close_database, init_database

    set_level(get_settings().logging.level)
    await init_database()
    try:
        match args.command:
            case "deploy":
                await _deploy(args.user_id, args.config, args.wait)
            case "health":
                return 0 if await _health(args.instance_id) else 1
            case "sync":
                await _sync(args.instance_id)
            case "status":
                await _status(args.instance_id)
            case "logs":
                await _logs(args.instance_id, args.tail)
            case "history":
                await _history(args.instance_id, args.limit)
            case action if action in _LIFECYCLE:
                await _lifecycle(action, args.instance_id)
        return 0
    finally:
        await close_database()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="clawfleet",
        description="Provision and operate per-user agent instances",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Deploy (or replace) the instance for a user")
    deploy.add_argument("user_id")
    deploy.add_argument("config", help="Path to a desired-configuration JSON file")
    deploy.add_argument(
        "--wait", action="store_true", help="Block until the remote deployment settles"
    )

    for action in _LIFECYCLE:
        p = sub.add_parser(action, help=f"{action.capitalize()} an instance")
        p.add_argument("instance_id")

    p = sub.add_parser("health", help="Check and reconcile instance health")
    p.add_argument("instance_id")
    p = sub.add_parser("sync", help="Rebuild the configuration from storage and apply it")
    p.add_argument("instance_id")
    p = sub.add_parser("status", help="Show stored instances")
    p.add_argument("instance_id", nargs="?")
    p = sub.add_parser("logs", help="Show runtime logs")
    p.add_argument("instance_id")
    p.add_argument("--tail", type=int, default=100)
    p = sub.add_parser("history", help="Show the deployment audit log")
    p.add_argument("instance_id")
    p.add_argument("--limit", type=int, default=50)

    args = parser.parse_args()
    try:
        code = asyncio.run(_dispatch(args))
    except FleetError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
