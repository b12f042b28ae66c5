"""Tests for the control-plane client, retry policy and deployment polling."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from aiohttp import test_utils, web

from clawfleet.control_plane.client import ControlPlaneClient
from clawfleet.control_plane.polling import wait_for_deployment
from clawfleet.control_plane.retry import classify_error, retry_control_plane
from clawfleet.errors import (
    ConfigValidationError,
    ControlPlaneError,
    CooldownBlockedError,
    DeploymentFailedError,
    DeploymentTimeoutError,
)
from clawfleet.types import Deployment, LogLine
from conftest import make_settings


class _Sleeps:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(*errors, result="ok"):
    """Async callable that raises each error in turn, then returns ``result``."""
    return AsyncMock(side_effect=[*errors, result])


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestClassifyError:
    def test_status_429_is_cooldown(self):
        assert classify_error(ControlPlaneError("slow down", status=429)) == "cooldown"

    def test_cooldown_message(self):
        exc = ControlPlaneError("Control plane API: Service was too recently updated")
        assert classify_error(exc) == "cooldown"

    def test_generic_400_is_transient(self):
        assert classify_error(ControlPlaneError("Bad", status=400)) == "transient"
        exc = ControlPlaneError("Control plane API: Problem processing request")
        assert classify_error(exc) == "transient"

    def test_other_failures_not_retried(self):
        assert classify_error(ControlPlaneError("Not Authorized", status=401)) is None
        assert classify_error(ControlPlaneError("service not found")) is None
        assert classify_error(ValueError("x")) is None


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestRetryControlPlane:
    async def test_cooldown_backoff_grows_linearly(self):
        fn = _flaky(
            ControlPlaneError("too recently updated"),
            ControlPlaneError("too recently updated"),
        )
        sleeps = _Sleeps()
        result = await retry_control_plane(fn, "update", sleep=sleeps, clock=lambda: 0.0)
        assert result == "ok"
        assert sleeps.delays == [5.0, 10.0]
        assert fn.await_count == 3

    async def test_cooldown_delay_is_capped(self):
        fn = _flaky(*[ControlPlaneError("rate limited", status=429)] * 6)
        sleeps = _Sleeps()
        await retry_control_plane(fn, "update", sleep=sleeps, clock=lambda: 0.0)
        assert sleeps.delays == [5.0, 10.0, 15.0, 20.0, 20.0, 20.0]

    async def test_cooldown_budget_exhausted(self):
        ticks = iter([0.0, 100.0, 200.0])
        fn = _flaky(
            ControlPlaneError("too recently updated"),
            ControlPlaneError("too recently updated"),
        )
        sleeps = _Sleeps()
        with pytest.raises(CooldownBlockedError) as excinfo:
            await retry_control_plane(
                fn, "redeploy", sleep=sleeps, clock=lambda: next(ticks)
            )
        assert excinfo.value.label == "redeploy"
        assert sleeps.delays == [5.0]

    async def test_transient_retries_then_propagates(self):
        error = ControlPlaneError("Control plane HTTP 400: nope", status=400)
        fn = AsyncMock(side_effect=error)
        sleeps = _Sleeps()
        with pytest.raises(ControlPlaneError) as excinfo:
            await retry_control_plane(fn, "vars", sleep=sleeps, clock=lambda: 0.0)
        assert excinfo.value is error
        assert fn.await_count == 4
        assert sleeps.delays == [2.0, 2.0, 2.0]

    async def test_transient_recovers(self):
        fn = _flaky(ControlPlaneError("Problem processing request"), result=42)
        assert await retry_control_plane(fn, "vars", sleep=_Sleeps(), clock=lambda: 0.0) == 42

    async def test_non_retryable_raises_immediately(self):
        fn = AsyncMock(side_effect=ControlPlaneError("Not Authorized", status=401))
        sleeps = _Sleeps()
        with pytest.raises(ControlPlaneError):
            await retry_control_plane(fn, "vars", sleep=sleeps, clock=lambda: 0.0)
        assert fn.await_count == 1
        assert sleeps.delays == []

    async def test_non_control_plane_errors_pass_through(self):
        fn = AsyncMock(side_effect=KeyError("x"))
        with pytest.raises(KeyError):
            await retry_control_plane(fn, "vars", sleep=_Sleeps(), clock=lambda: 0.0)


# ---------------------------------------------------------------------------
# Deployment polling
# ---------------------------------------------------------------------------


class TestWaitForDeployment:
    async def test_returns_url_on_success(self):
        client = AsyncMock()
        client.get_latest_deployment.side_effect = [
            None,
            Deployment("d1", "BUILDING"),
            Deployment("d1", "SUCCESS", url="svc.up.example"),
        ]
        sleeps = _Sleeps()
        url = await wait_for_deployment(client, "svc-1", sleep=sleeps, clock=lambda: 0.0)
        assert url == "svc.up.example"
        assert sleeps.delays == [3.0, 3.0]

    async def test_failure_carries_logs(self):
        client = AsyncMock()
        client.get_latest_deployment.return_value = Deployment("d1", "CRASHED")
        client.get_logs.return_value = [LogLine("t", "error", "node: not found")]
        with pytest.raises(DeploymentFailedError) as excinfo:
            await wait_for_deployment(client, "svc-1", sleep=_Sleeps(), clock=lambda: 0.0)
        assert excinfo.value.status == "CRASHED"
        assert excinfo.value.logs == ["[error] node: not found"]
        client.get_logs.assert_awaited_once_with("d1", 30)

    async def test_failure_without_logs(self):
        client = AsyncMock()
        client.get_latest_deployment.return_value = Deployment("d1", "FAILED")
        client.get_logs.side_effect = ControlPlaneError("gone")
        with pytest.raises(DeploymentFailedError) as excinfo:
            await wait_for_deployment(client, "svc-1", sleep=_Sleeps(), clock=lambda: 0.0)
        assert excinfo.value.logs == []

    async def test_times_out(self):
        client = AsyncMock()
        client.get_latest_deployment.return_value = None
        ticks = iter([0.0, 0.0, 60.0, 130.0])
        sleeps = _Sleeps()
        with pytest.raises(DeploymentTimeoutError):
            await wait_for_deployment(
                client, "svc-1", sleep=sleeps, clock=lambda: next(ticks)
            )
        assert client.get_latest_deployment.await_count == 2


# ---------------------------------------------------------------------------
# GraphQL client against a local aiohttp server
# ---------------------------------------------------------------------------


@pytest.fixture
async def graphql():
    """Local GraphQL endpoint. Queue (status, body) pairs on ``app["responses"]``."""
    app = web.Application()
    app["requests"] = []
    app["responses"] = []

    async def handler(request: web.Request) -> web.Response:
        app["requests"].append(
            {"auth": request.headers.get("Authorization"), "body": await request.json()}
        )
        status, body = app["responses"].pop(0)
        if isinstance(body, str):
            return web.Response(text=body, status=status, content_type="text/html")
        return web.json_response(body, status=status)

    app.router.add_post("/graphql", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    client = ControlPlaneClient(
        "tok-1", "proj-1", "env-1", api_url=str(server.make_url("/graphql")), timeout=5
    )
    yield app, client
    await server.close()


class TestControlPlaneClient:
    async def test_bearer_token_and_variables(self, graphql):
        app, client = graphql
        app["responses"].append((200, {"data": {"variableCollectionUpsert": True}}))
        await client.set_variables("svc-1", {"A": "1"})
        req = app["requests"][0]
        assert req["auth"] == "Bearer tok-1"
        assert req["body"]["variables"]["input"] == {
            "projectId": "proj-1",
            "environmentId": "env-1",
            "serviceId": "svc-1",
            "variables": {"A": "1"},
        }

    async def test_http_error_keeps_status_and_message(self, graphql):
        app, client = graphql
        app["responses"].append((429, {"message": "rate limited"}))
        with pytest.raises(ControlPlaneError) as excinfo:
            await client.redeploy_service("svc-1")
        assert excinfo.value.status == 429
        assert "rate limited" in str(excinfo.value)

    async def test_graphql_errors_raise_with_message(self, graphql):
        app, client = graphql
        app["responses"].append(
            (200, {"errors": [{"message": "Service was too recently updated"}]})
        )
        with pytest.raises(ControlPlaneError) as excinfo:
            await client.redeploy_service("svc-1")
        assert excinfo.value.status is None
        assert classify_error(excinfo.value) == "cooldown"

    async def test_empty_data_is_error(self, graphql):
        app, client = graphql
        app["responses"].append((200, {"data": None}))
        with pytest.raises(ControlPlaneError, match="empty response"):
            await client.delete_service("svc-1")

    async def test_non_json_body_is_error(self, graphql):
        app, client = graphql
        app["responses"].append((200, "<html>Service temporarily unavailable</html>"))
        with pytest.raises(ControlPlaneError, match="invalid JSON"):
            await client.redeploy_service("svc-1")

    async def test_non_object_body_is_error(self, graphql):
        app, client = graphql
        app["responses"].append((200, []))
        with pytest.raises(ControlPlaneError, match="empty response"):
            await client.redeploy_service("svc-1")

    async def test_create_service_verifies_then_sets_variables(self, graphql):
        app, client = graphql
        app["responses"] += [
            (200, {"data": {"project": {"name": "fleet"}}}),
            (200, {"data": {"serviceCreate": {"id": "svc-9"}}}),
            (200, {"data": {"variableCollectionUpsert": True}}),
        ]
        service_id = await client.create_service("openclaw-u1", "img:latest", {"K": "v"})
        assert service_id == "svc-9"
        create = app["requests"][1]["body"]["variables"]["input"]
        assert create == {
            "projectId": "proj-1",
            "name": "openclaw-u1",
            "source": {"image": "img:latest"},
        }
        assert app["requests"][2]["body"]["variables"]["input"]["serviceId"] == "svc-9"

    async def test_latest_deployment(self, graphql):
        app, client = graphql
        node = {"id": "d1", "status": "SUCCESS", "url": None, "staticUrl": "x.up.app"}
        app["responses"].append(
            (200, {"data": {"service": {"deployments": {"edges": [{"node": node}]}}}})
        )
        deployment = await client.get_latest_deployment("svc-1")
        assert deployment == Deployment("d1", "SUCCESS", url="x.up.app")

    async def test_no_deployments(self, graphql):
        app, client = graphql
        app["responses"].append((200, {"data": {"service": {"deployments": {"edges": []}}}}))
        assert await client.get_latest_deployment("svc-1") is None

    async def test_find_service_by_name(self, graphql):
        app, client = graphql
        edges = [{"node": {"id": "a", "name": "other"}}, {"node": {"id": "b", "name": "want"}}]
        payload = {"data": {"project": {"services": {"edges": edges}}}}
        app["responses"] += [(200, payload), (200, payload)]
        assert await client.find_service_by_name("want") == "b"
        assert await client.find_service_by_name("missing") is None

    async def test_service_instance_update_only_sends_given_fields(self, graphql):
        app, client = graphql
        app["responses"].append((200, {"data": {"serviceInstanceUpdate": True}}))
        await client.update_service_instance("svc-1", start_command="/bin/sh -c true")
        assert app["requests"][0]["body"]["variables"]["input"] == {
            "startCommand": "/bin/sh -c true"
        }

    async def test_logs(self, graphql):
        app, client = graphql
        lines = [{"timestamp": "t1", "severity": "info", "message": "booted"}]
        app["responses"].append((200, {"data": {"deploymentLogs": lines}}))
        result = await client.get_logs("d1", 10)
        assert result == [LogLine("t1", "info", "booted")]
        assert app["requests"][0]["body"]["variables"] == {"deploymentId": "d1", "limit": 10}

    async def test_connection_failure_is_control_plane_error(self):
        client = ControlPlaneClient("t", "p", "e", api_url="http://127.0.0.1:9/graphql")
        with pytest.raises(ControlPlaneError, match="request failed"):
            await client.verify_access()


    async def test_slow_server_times_out_as_control_plane_error(self):
        async def handler(request: web.Request) -> web.Response:
            await asyncio.sleep(1)
            return web.json_response({"data": {"project": {"name": "late"}}})

        app = web.Application()
        app.router.add_post("/graphql", handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            client = ControlPlaneClient(
                "t", "p", "e", api_url=str(server.make_url("/graphql")), timeout=0.1
            )
            with pytest.raises(ControlPlaneError, match="timed out"):
                await client.verify_access()
        finally:
            await server.close()

class TestFromSettings:
    def test_requires_credentials(self, monkeypatch):
        from clawfleet.config import RemoteConfig

        monkeypatch.setattr("clawfleet.config._settings", make_settings(remote=RemoteConfig()))
        with pytest.raises(ConfigValidationError):
            ControlPlaneClient.from_settings()

    def test_builds_from_remote_section(self):
        client = ControlPlaneClient.from_settings()
        assert client.project_id == "proj-1"
        assert client.environment_id == "env-1"
