"""Deployment providers.

The active backend is chosen by ``deploy.backend`` among the classes that
plugins return from ``clawfleet_deployment_backend``. The built-in ones are
``remote`` (hosted control plane) and ``local`` (Docker).
"""

from __future__ import annotations

from typing import Any

from clawfleet.config import get_settings
from clawfleet.deploy.base import BaseProvider, DeploymentProvider, validate_secret_env
from clawfleet.errors import ConfigValidationError
from clawfleet.logger import logger

__all__ = [
    "BaseProvider",
    "DeploymentProvider",
    "get_provider",
    "reset_provider",
    "validate_secret_env",
]

_provider: DeploymentProvider | None = None


def _iter_backend_classes() -> dict[str, Any]:
    from clawfleet.plugin import get_plugin_manager

    backends: dict[str, Any] = {}
    for cls in get_plugin_manager().hook.clawfleet_deployment_backend():
        if cls is None:
            continue
        name = str(getattr(cls, "name", "")).lower().strip()
        if not name or not callable(cls):
            logger.warning("Ignoring invalid deployment backend", backend_type=repr(cls))
            continue
        if name in backends:
            logger.warning("Duplicate deployment backend ignored", backend=name)
            continue
        backends[name] = cls
    return backends


def get_provider() -> DeploymentProvider:
    """The configured backend, created on first use."""
    global _provider
    if _provider is None:
        wanted = get_settings().deploy.backend
        backends = _iter_backend_classes()
        cls = backends.get(wanted)
        if cls is None:
            raise ConfigValidationError(
                f"Unknown deployment backend {wanted!r} (available: {sorted(backends)})"
            )
        _provider = cls()
        logger.info("Deployment backend selected", backend=wanted)
    return _provider


def reset_provider() -> None:
    global _provider
    _provider = None
