"""GraphQL client for the remote hosting control plane.

One short-lived aiohttp session per request: lifecycle calls are infrequent
and may run from different event loops (CLI, tests, the host app).

Every failure is raised as :class:`ControlPlaneError` with the server's own
message. HTTP errors carry the status code; GraphQL ``errors`` arrays raise
with ``status=None``. Nothing here retries. See :mod:`.retry` for that.
"""

from __future__ import annotations

from typing import Any

import aiohttp

from clawfleet.config import get_settings
from clawfleet.errors import ConfigValidationError, ControlPlaneError
from clawfleet.logger import logger
from clawfleet.types import Deployment, LogLine


class ControlPlaneClient:
    def __init__(
        self,
        token: str,
        project_id: str,
        environment_id: str,
        *,
        api_url: str = "https://backboard.railway.app/graphql/v2",
        timeout: float = 30.0,
    ) -> None:
        self._token = token
        self.project_id = project_id
        self.environment_id = environment_id
        self.api_url = api_url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_settings(cls) -> ControlPlaneClient:
        remote = get_settings().remote
        if remote.token is None or not remote.project_id or not remote.environment_id:
            raise ConfigValidationError(
                "Remote backend needs remote.token, remote.project_id and "
                "remote.environment_id (REMOTE__TOKEN etc.)"
            )
        return cls(
            remote.token.get_secret_value(),
            remote.project_id,
            remote.environment_id,
            api_url=remote.api_url,
            timeout=remote.request_timeout,
        )

    async def _graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        payload = {"query": query, "variables": variables or {}}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self.api_url, json=payload, headers=headers) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        logger.warning(
                            "Control plane HTTP error",
                            status=resp.status,
                            query=query.strip()[:80],
                        )
                        raise ControlPlaneError(
                            f"Control plane HTTP {resp.status}: {text}", status=resp.status
                        )
                    body = await resp.json(content_type=None)
        except TimeoutError as exc:
            raise ControlPlaneError(
                f"Control plane request timed out after {self._timeout.total:.0f}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise ControlPlaneError(f"Control plane request failed: {exc}") from exc
        except ValueError as exc:
            # 200 with a body that isn't JSON (proxy error page, maintenance)
            raise ControlPlaneError(f"Control plane returned invalid JSON: {exc}") from exc

        if not isinstance(body, dict):
            raise ControlPlaneError("Control plane API returned empty response")
        errors = body.get("errors") or []
        if errors:
            messages = ", ".join(str(e.get("message", e)) for e in errors)
            logger.warning("Control plane GraphQL error", errors=messages, query=query.strip()[:80])
            raise ControlPlaneError(f"Control plane API: {messages}")

        data = body.get("data")
        if not data:
            raise ControlPlaneError("Control plane API returned empty response")
        return data

    # ------------------------------------------------------------------
    # Project / services
    # ------------------------------------------------------------------

    async def verify_access(self) -> str:
        """Cheap read proving the token can see the project. Returns its name."""
        data = await self._graphql(
            """
            query project($id: String!) {
              project(id: $id) { name }
            }
            """,
            {"id": self.project_id},
        )
        return data["project"]["name"]

    async def set_variables(self, service_id: str, env: dict[str, str]) -> None:
        logger.info("Setting service variables", service_id=service_id, count=len(env))
        await self._graphql(
            """
            mutation variableCollectionUpsert($input: VariableCollectionUpsertInput!) {
              variableCollectionUpsert(input: $input)
            }
            """,
            {
                "input": {
                    "projectId": self.project_id,
                    "environmentId": self.environment_id,
                    "serviceId": service_id,
                    "variables": env,
                }
            },
        )

    async def create_service(self, name: str, image: str, env: dict[str, str]) -> str:
        """Create an image-backed service and set its variables. Returns the service id.

        Not idempotent: never wrap this in a retry.
        """
        await self.verify_access()
        data = await self._graphql(
            """
            mutation serviceCreate($input: ServiceCreateInput!) {
              serviceCreate(input: $input) { id }
            }
            """,
            {"input": {"projectId": self.project_id, "name": name, "source": {"image": image}}},
        )
        service_id = data["serviceCreate"]["id"]
        logger.info("Service created", service_id=service_id, name=name)
        await self.set_variables(service_id, env)
        return service_id

    async def update_service_instance(
        self,
        service_id: str,
        *,
        start_command: str | None = None,
        restart_policy: str | None = None,
        restart_max_retries: int | None = None,
    ) -> None:
        settings: dict[str, Any] = {}
        if start_command is not None:
            settings["startCommand"] = start_command
        if restart_policy is not None:
            settings["restartPolicyType"] = restart_policy
        if restart_max_retries is not None:
            settings["restartPolicyMaxRetries"] = restart_max_retries
        await self._graphql(
            """
            mutation serviceInstanceUpdate(
              $serviceId: String!, $environmentId: String!, $input: ServiceInstanceUpdateInput!
            ) {
              serviceInstanceUpdate(
                serviceId: $serviceId, environmentId: $environmentId, input: $input
              )
            }
            """,
            {"serviceId": service_id, "environmentId": self.environment_id, "input": settings},
        )

    async def create_service_domain(self, service_id: str) -> str:
        """Create a public HTTP domain. Not idempotent."""
        data = await self._graphql(
            """
            mutation serviceDomainCreate($input: ServiceDomainCreateInput!) {
              serviceDomainCreate(input: $input) { domain }
            }
            """,
            {"input": {"serviceId": service_id, "environmentId": self.environment_id}},
        )
        domain = (data.get("serviceDomainCreate") or {}).get("domain")
        if not domain:
            raise ControlPlaneError("Domain creation returned empty response")
        return domain

    async def redeploy_service(self, service_id: str) -> None:
        await self._graphql(
            """
            mutation serviceInstanceDeployV2($serviceId: String!, $environmentId: String!) {
              serviceInstanceDeployV2(serviceId: $serviceId, environmentId: $environmentId)
            }
            """,
            {"serviceId": service_id, "environmentId": self.environment_id},
        )

    async def delete_service(self, service_id: str) -> None:
        await self._graphql(
            """
            mutation serviceDelete($id: String!) {
              serviceDelete(id: $id)
            }
            """,
            {"id": service_id},
        )

    async def find_service_by_name(self, name: str) -> str | None:
        data = await self._graphql(
            """
            query project($id: String!) {
              project(id: $id) {
                services { edges { node { id name } } }
              }
            }
            """,
            {"id": self.project_id},
        )
        for edge in data["project"]["services"]["edges"]:
            if edge["node"]["name"] == name:
                return edge["node"]["id"]
        return None

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    async def get_latest_deployment(self, service_id: str) -> Deployment | None:
        data = await self._graphql(
            """
            query service($id: String!) {
              service(id: $id) {
                deployments(first: 1) {
                  edges { node { id status url staticUrl createdAt } }
                }
              }
            }
            """,
            {"id": service_id},
        )
        edges = (((data.get("service") or {}).get("deployments") or {}).get("edges")) or []
        if not edges:
            return None
        node = edges[0]["node"]
        return Deployment(
            id=node["id"],
            status=node["status"],
            url=node.get("url") or node.get("staticUrl"),
            created_at=node.get("createdAt"),
        )

    async def get_logs(self, deployment_id: str, limit: int = 100) -> list[LogLine]:
        data = await self._graphql(
            """
            query deploymentLogs($deploymentId: String!, $limit: Int) {
              deploymentLogs(deploymentId: $deploymentId, limit: $limit) {
                timestamp message severity
              }
            }
            """,
            {"deploymentId": deployment_id, "limit": limit},
        )
        return [
            LogLine(
                timestamp=e.get("timestamp", ""),
                severity=e.get("severity", ""),
                message=e.get("message", ""),
            )
            for e in data.get("deploymentLogs") or []
        ]

    async def remove_deployment(self, deployment_id: str) -> None:
        """Stop a service by removing its active deployment (the service stays)."""
        await self._graphql(
            """
            mutation deploymentRemove($deploymentId: String!) {
              deploymentRemove(deploymentId: $deploymentId)
            }
            """,
            {"deploymentId": deployment_id},
        )

    async def restart_deployment(self, deployment_id: str) -> None:
        await self._graphql(
            """
            mutation deploymentRestart($id: String!) {
              deploymentRestart(id: $id)
            }
            """,
            {"id": deployment_id},
        )
