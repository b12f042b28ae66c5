"""Pluggy hook specifications for clawfleet plugins.

All hooks use the "clawfleet" namespace and are validated by pluggy at
registration time.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("clawfleet")
hookimpl = pluggy.HookimplMarker("clawfleet")


class FleetSpec:
    """Hook specifications for clawfleet plugins."""

    @hookspec
    def clawfleet_deployment_backend(self) -> Any | None:
        """Provide a deployment backend.

        Returns:
            A provider class (not an instance) with:
                - name (str): backend identifier matched against
                  ``deploy.backend`` (e.g. "remote", "local")
                - the lifecycle coroutines of
                  :class:`clawfleet.deploy.base.DeploymentProvider`
            Or None if this plugin doesn't provide one.
        """

    @hookspec
    def clawfleet_memory_service(self) -> Any | None:
        """Provide the long-term memory collaborator.

        Returns:
            Memory service object with:
                - name (str)
                - build_digest(instance_id) -> coroutine returning str | None
                - get_api_key(instance_id) -> coroutine returning str | None
            Or None if this plugin doesn't provide one.
        """
