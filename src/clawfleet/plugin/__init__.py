"""pluggy wiring for deployment backends and the memory collaborator.

The built-in ``remote`` and ``local`` backends go through the same hooks a
third-party package would, so ``[plugins.remote] enabled = false`` in
config.toml removes a backend exactly like uninstalling a plugin.

    from clawfleet.plugin import get_plugin_manager

    backend_classes = get_plugin_manager().hook.clawfleet_deployment_backend()
"""

from __future__ import annotations

import importlib

import pluggy

from clawfleet.config import Settings, get_settings
from clawfleet.logger import logger
from clawfleet.plugin.hookspecs import FleetSpec, hookimpl

__all__ = [
    "ENTRY_POINT_GROUP",
    "get_plugin_manager",
    "hookimpl",
]

ENTRY_POINT_GROUP = "clawfleet"

# config key -> "module:PluginClass"
_BUILTINS: dict[str, str] = {
    "remote": "clawfleet.deploy.remote:RemoteBackendPlugin",
    "local": "clawfleet.deploy.local:LocalBackendPlugin",
}


def _register_builtins(pm: pluggy.PluginManager, settings: Settings) -> None:
    for key, target in _BUILTINS.items():
        cfg = settings.plugins.get(key)
        if cfg is not None and not cfg.enabled:
            logger.info("Built-in backend disabled", plugin=key)
            continue
        module_name, _, class_name = target.partition(":")
        try:
            plugin_cls = getattr(importlib.import_module(module_name), class_name)
            pm.register(plugin_cls(), name=f"builtin-{key}")
        except Exception:
            logger.exception("Built-in plugin failed to load", plugin=key)


def _drop_class_objects(pm: pluggy.PluginManager) -> None:
    # An entry point naming a class instead of an instance registers the
    # class itself; its hooks would be called unbound.
    for plugin in list(pm.get_plugins()):
        if isinstance(plugin, type):
            name = pm.get_name(plugin) or plugin.__name__
            pm.unregister(plugin=plugin)
            logger.warning("Plugin registered a class, not an instance; ignored", plugin=name)


def get_plugin_manager() -> pluggy.PluginManager:
    pm = pluggy.PluginManager("clawfleet")
    pm.add_hookspecs(FleetSpec)

    _register_builtins(pm, get_settings())
    found = pm.load_setuptools_entrypoints(ENTRY_POINT_GROUP)
    if found:
        logger.info("Loaded entry-point plugins", group=ENTRY_POINT_GROUP, count=found)
    _drop_class_objects(pm)

    names = sorted(filter(None, map(pm.get_name, pm.get_plugins())))
    logger.debug("Plugins registered", plugins=names)
    return pm
