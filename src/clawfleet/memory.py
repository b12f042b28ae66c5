"""Long-term memory collaborator.

clawfleet does not store memories itself. A plugin implementing
``clawfleet_memory_service`` supplies a digest to prepend to the system
prompt and the per-instance key the agent uses to query memory search.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from clawfleet.logger import logger


@runtime_checkable
class MemoryService(Protocol):
    name: str

    async def build_digest(self, instance_id: str) -> str | None: ...

    async def get_api_key(self, instance_id: str) -> str | None: ...


def _is_valid_service(candidate: Any) -> bool:
    return all(
        [
            hasattr(candidate, "name"),
            callable(getattr(candidate, "build_digest", None)),
            callable(getattr(candidate, "get_api_key", None)),
        ]
    )


def get_memory_service() -> MemoryService | None:
    """Discover the memory plugin (first valid one wins)."""
    from clawfleet.plugin import get_plugin_manager

    try:
        provided = get_plugin_manager().hook.clawfleet_memory_service()
    except Exception:
        logger.exception("Failed to resolve memory plugins")
        return None

    for service in provided:
        if service is None:
            continue
        if not _is_valid_service(service):
            logger.warning(
                "Ignoring invalid memory plugin object",
                service_type=type(service).__name__,
            )
            continue
        logger.info("Memory service discovered", name=service.name)
        return service
    return None
