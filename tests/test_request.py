"""Tests for the two-step media request plugin."""

from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from homewire.exceptions import PluginError, PluginErrorKind
from homewire.plugin_base import Invocation
from homewire.plugins.request import PENDING_TTL, RequestPlugin

API_KEY = "0123456789abcdef"
OWNER = "+15551234567"

RELEASES = [
    {"title": "Severance S02E01 1080p", "size": 2_147_483_648, "indexer": "NZBgeek"},
    {"title": "Severance S01 Complete", "indexer": "1337x"},
]


@asynccontextmanager
async def fake_services():
    """One server playing Prowlarr (v1) and Sonarr (v3); yields (url, added)."""
    added = []

    @web.middleware
    async def require_key(request, handler):
        if request.headers.get("X-Api-Key") != API_KEY:
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    async def search(request):
        return web.json_response(RELEASES if request.query["query"] == "severance" else [])

    async def rootfolder(request):
        return web.json_response([{"path": "/tv"}])

    async def qualityprofile(request):
        return web.json_response([{"id": 4, "name": "HD-1080p"}])

    async def lookup(request):
        return web.json_response([{"title": "Severance", "tvdbId": 371980}])

    async def add_series(request):
        added.append(await request.json())
        return web.json_response({"id": 1, "title": "Severance"}, status=201)

    app = web.Application(middlewares=[require_key])
    app.router.add_get("/api/v1/search", search)
    app.router.add_get("/api/v3/rootfolder", rootfolder)
    app.router.add_get("/api/v3/qualityprofile", qualityprofile)
    app.router.add_get("/api/v3/series/lookup", lookup)
    app.router.add_post("/api/v3/series", add_series)
    async with TestServer(app) as server:
        yield str(server.make_url("/")).rstrip("/"), added


def _plugin(url, with_sonarr=True):
    section = {"prowlarr": {"api_url": url, "api_key": API_KEY}}
    if with_sonarr:
        section["sonarr"] = {"api_url": url, "api_key": API_KEY}
    return RequestPlugin.from_section(section)


def _call(plugin, command, principal=OWNER, **arguments):
    return plugin.handle_invocation(Invocation(command, principal, arguments))


class TestRequestFlow:

    @pytest.mark.asyncio
    async def test_search_then_add(self):
        """A numbered search result is added with the target's defaults."""
        async with fake_services() as (url, added):
            plugin = _plugin(url)
            try:
                listing = await _call(plugin, "request search", title="severance")
                reply = await _call(plugin, "request add", service="sonarr", number=1)
            finally:
                await plugin.on_stop()

        assert listing.splitlines() == [
            '**Search results for "severance":**',
            "1. Severance S02E01 1080p (2048.0 MB) (NZBgeek)",
            "2. Severance S01 Complete (1337x)",
            "Add one with `/request add <sonarr> <number>`.",
        ]
        assert reply == "Added **Severance S02E01 1080p** to Sonarr!"
        assert added == [{
            "title": "Severance",
            "tvdbId": 371980,
            "rootFolderPath": "/tv",
            "qualityProfileId": 4,
            "monitored": True,
            "addOptions": {"searchForMissingEpisodes": True},
        }]

    @pytest.mark.asyncio
    async def test_no_results(self):
        async with fake_services() as (url, _):
            plugin = _plugin(url)
            try:
                assert await _call(plugin, "request search", title="nothing") == (
                    'No results found for "nothing"'
                )
            finally:
                await plugin.on_stop()

    @pytest.mark.asyncio
    async def test_add_without_search_or_after_expiry(self):
        """Results are per principal and expire."""
        async with fake_services() as (url, added):
            plugin = _plugin(url)
            now = [1000.0]
            plugin.clock = lambda: now[0]
            try:
                assert await _call(plugin, "request add", service="sonarr", number=1) == (
                    "This request has expired. Please search again."
                )
                await _call(plugin, "request search", title="severance")
                assert await _call(
                    plugin, "request add", principal="+15550000000", service="sonarr", number=1
                ) == "This request has expired. Please search again."

                now[0] += PENDING_TTL + 1
                assert await _call(plugin, "request add", service="sonarr", number=1) == (
                    "This request has expired. Please search again."
                )
            finally:
                await plugin.on_stop()

        assert added == []

    @pytest.mark.asyncio
    async def test_number_out_of_range(self):
        async with fake_services() as (url, _):
            plugin = _plugin(url)
            try:
                await _call(plugin, "request search", title="severance")
                assert await _call(plugin, "request add", service="sonarr", number=7) == (
                    "Pick a result between 1 and 2."
                )
            finally:
                await plugin.on_stop()

    @pytest.mark.asyncio
    async def test_unconfigured_target(self):
        """Without Sonarr configured the listing says so and add is refused."""
        async with fake_services() as (url, _):
            plugin = _plugin(url, with_sonarr=False)
            try:
                listing = await _call(plugin, "request search", title="severance")
                with pytest.raises(PluginError) as exc_info:
                    await _call(plugin, "request add", service="sonarr", number=1)
            finally:
                await plugin.on_stop()

        assert listing.endswith("No target services configured (Sonarr/Radarr).")
        assert exc_info.value.kind is PluginErrorKind.CONFIG

    @pytest.mark.asyncio
    async def test_unknown_target_is_input_error(self):
        async with fake_services() as (url, _):
            plugin = _plugin(url)
            try:
                await _call(plugin, "request search", title="severance")
                with pytest.raises(PluginError) as exc_info:
                    await _call(plugin, "request add", service="lidarr", number=1)
            finally:
                await plugin.on_stop()

        assert exc_info.value.kind is PluginErrorKind.INPUT
