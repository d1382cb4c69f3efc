"""Tests for the Unraid GraphQL plugin."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from homewire.dispatcher import Dispatcher
from homewire.exceptions import ErrorKind, PluginError, PluginErrorKind
from homewire.plugin_base import Invocation
from homewire.plugins.unraid import (
    TIB,
    UnraidApi,
    UnraidApiError,
    UnraidPlugin,
    container_name,
    format_status,
)
from homewire.registry import build_registry, default_factories
from homewire.security import DENIAL_MESSAGE, Authorizer

API_KEY = "unraid-key"

CONTAINERS = [
    {"id": "c1", "names": ["/Plex"], "state": "RUNNING", "status": "Up 3 days"},
    {"id": "c2", "names": ["/sonarr"], "state": "EXITED", "status": "Exited (0)"},
]


@asynccontextmanager
async def fake_unraid(answer):
    """Serve a GraphQL endpoint; ``answer(body)`` returns the JSON payload."""
    requests = []

    async def graphql(request):
        if request.headers.get("Authorization") != f"Bearer {API_KEY}":
            return web.json_response({"errors": [{"message": "unauthorized"}]}, status=401)
        body = await request.json()
        requests.append(body)
        return web.json_response(answer(body))

    app = web.Application()
    app.router.add_post("/graphql", graphql)
    async with TestServer(app) as server:
        yield str(server.make_url("/graphql")), requests


def _docker_answer(body):
    if "dockerContainerAction" in body["query"]:
        return {"data": {"dockerContainerAction": "started"}}
    return {"data": {"docker": {"containers": CONTAINERS}}}


async def _invoke(url, command, **arguments):
    plugin = UnraidPlugin.from_section({"api_url": url, "api_key": API_KEY})
    try:
        return await plugin.handle_invocation(Invocation(command, "owner", arguments))
    finally:
        await plugin.on_stop()


def test_container_name():
    assert container_name({"names": ["/Plex"]}) == "Plex"
    assert container_name({"id": "abc", "names": []}) == "abc"


def test_format_status():
    """Status includes the host, array state, CPU and per-disk lines."""
    status = {
        "info": {"os": {"hostname": "tower", "uptime": "2025-01-01T00:00:00Z"},
                 "cpu": {"brand": "Ryzen 9", "cores": 12, "threads": 24}},
        "array": {"state": "STARTED"},
        "disks": [
            {"name": "disk1", "size": 4 * TIB, "type": "Data", "smartStatus": "OK", "temperature": 34},
            {"name": "parity", "size": 4 * TIB, "type": "Parity", "smartStatus": "OK"},
        ],
    }
    text = format_status(status)
    assert text.startswith("**tower**")
    assert "Array: STARTED" in text
    assert "CPU: Ryzen 9 (12 cores / 24 threads)" in text
    assert "**Disks** (8.0 TB total)" in text
    assert "- disk1 (4.0 TB) Data [OK] 34C" in text


@pytest.mark.asyncio
async def test_docker_list():
    async with fake_unraid(_docker_answer) as (url, _):
        text = await _invoke(url, "unraid docker list")
    assert "- **Plex**: RUNNING (Up 3 days)" in text
    assert "- **sonarr**: EXITED (Exited (0))" in text


@pytest.mark.asyncio
async def test_docker_start_resolves_name_case_insensitively():
    """Containers are found by name regardless of case."""
    async with fake_unraid(_docker_answer) as (url, requests):
        text = await _invoke(url, "unraid docker start", name="plex")

    assert text == "Container **plex**: started"
    assert requests[-1]["variables"] == {"id": "c1", "action": "start"}


@pytest.mark.asyncio
async def test_docker_action_unknown_container():
    """An unknown container is an input error and nothing is mutated."""
    async with fake_unraid(_docker_answer) as (url, requests):
        with pytest.raises(PluginError) as exc_info:
            await _invoke(url, "unraid docker stop", name="jellyfin")

    assert exc_info.value.kind is PluginErrorKind.INPUT
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_vm_commands():
    def answer(body):
        if "vmAction" in body["query"]:
            return {"data": {"vmAction": "stopping"}}
        return {"data": {"vms": {"domains": [{"name": "Windows 11", "state": "RUNNING"}]}}}

    async with fake_unraid(answer) as (url, requests):
        listing = await _invoke(url, "unraid vm list")
        stopped = await _invoke(url, "unraid vm stop", name="Windows 11")

    assert "- **Windows 11**: RUNNING" in listing
    assert stopped == "VM **Windows 11**: stopping"
    assert requests[-1]["variables"] == {"name": "Windows 11", "action": "stop"}


@pytest.mark.asyncio
async def test_graphql_errors_raise():
    """GraphQL errors in a 200 response are still failures."""
    async with fake_unraid(lambda body: {"errors": [{"message": "boom"}]}) as (url, _):
        api = UnraidApi(url, API_KEY)
        try:
            with pytest.raises(UnraidApiError, match="GraphQL error: boom"):
                await api.get_vms()
        finally:
            await api.close()


@pytest.mark.asyncio
async def test_missing_data_raises():
    async with fake_unraid(lambda body: {}) as (url, _):
        api = UnraidApi(url, API_KEY)
        try:
            with pytest.raises(UnraidApiError, match="No data in response"):
                await api.get_system_status()
        finally:
            await api.close()


@pytest.mark.asyncio
async def test_wrong_key_is_api_error():
    """A rejected key surfaces as an API error."""
    async with fake_unraid(_docker_answer) as (url, _):
        api = UnraidApi(url, "not-the-key")
        try:
            with pytest.raises(UnraidApiError, match="HTTP 401"):
                await api.get_docker_containers()
        finally:
            await api.close()


class TestOwnerOnly:

    @pytest.mark.asyncio
    async def test_stranger_cannot_reach_the_server(self):
        """A configured plugin is never called for a non-owner."""
        registry = build_registry(
            {"unraid": {"api_url": "http://tower/graphql", "api_key": API_KEY}},
            default_factories(),
        )
        dispatcher = Dispatcher(registry, Authorizer("+15551234567"), timeout=2.0)
        query = AsyncMock(return_value={"docker": {"containers": CONTAINERS}})

        with patch.object(UnraidApi, "query", query):
            for command, arguments in [
                ("unraid status", {}),
                ("unraid docker stop", {"name": "Plex"}),
                ("unraid vm start", {"name": "Windows 11"}),
            ]:
                response = await dispatcher.handle({
                    "principal": "+15559876543",
                    "command": command,
                    "arguments": arguments,
                })
                assert response.error is ErrorKind.UNAUTHORIZED
                assert response.content == DENIAL_MESSAGE

        assert query.await_count == 0
        await registry.stop_all()
