"""Media request plugin: search Prowlarr, then add a result to Sonarr or Radarr.

``request search`` remembers the listed results for the principal who
asked. ``request add <service> <number>`` picks one of them, looks the
title up in the target service for proper metadata and adds it with the
service's first root folder and quality profile. Remembered results
expire after PENDING_TTL seconds.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from ..exceptions import ErrorCategory, PluginError, PluginErrorKind
from ..plugin_base import (
    CapabilityDescriptor,
    CommandParameter,
    HomewirePlugin,
    Invocation,
    ParameterType,
)
from .arr import MAX_RESULTS, ArrClient, ArrSettings, expect_list
from .prowlarr import format_size

PENDING_TTL = 900

# service -> (display name, lookup endpoint, add endpoint, add options)
TARGETS = {
    "sonarr": ("Sonarr", "series/lookup", "series", {"searchForMissingEpisodes": True}),
    "radarr": ("Radarr", "movie/lookup", "movie", {"searchForMovie": True}),
}


class RequestSettings(BaseModel):
    prowlarr: ArrSettings
    sonarr: Optional[ArrSettings] = None
    radarr: Optional[ArrSettings] = None


@dataclass
class PendingSearch:
    titles: List[str]
    created_at: float = field(default_factory=time.monotonic)


class RequestPlugin(HomewirePlugin):
    """Two-step media requests driven by plain commands."""

    name = "request"
    description = "Search indexers and add media"
    settings_model = RequestSettings

    def __init__(self, settings: RequestSettings):
        super().__init__(settings)
        self.prowlarr = ArrClient(
            settings.prowlarr.api_url, settings.prowlarr.api_key, "v1", settings.prowlarr.timeout
        )
        self.targets: Dict[str, ArrClient] = {}
        for service in TARGETS:
            section = getattr(settings, service)
            if section is not None:
                self.targets[service] = ArrClient(
                    section.api_url, section.api_key, "v3", section.timeout
                )
        self._pending: Dict[str, PendingSearch] = {}
        self._lock = asyncio.Lock()
        self.clock = time.monotonic

    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        return (
            CapabilityDescriptor(
                "request search",
                "Search indexers for something to add",
                (CommandParameter("title", description="Title to search for", rest=True),),
            ),
            CapabilityDescriptor(
                "request add",
                "Add a search result to Sonarr or Radarr",
                (
                    CommandParameter("service", description="sonarr or radarr"),
                    CommandParameter("number", ParameterType.INTEGER, "Result number"),
                ),
            ),
        )

    async def handle_invocation(self, invocation: Invocation) -> str:
        if invocation.command == "request search":
            return await self._search(invocation.principal, invocation.get("title"))
        if invocation.command == "request add":
            return await self._add(
                invocation.principal,
                invocation.get("service").lower(),
                invocation.get("number"),
            )
        raise PluginError(f"unhandled command {invocation.command}")

    async def _expire(self) -> None:
        cutoff = self.clock() - PENDING_TTL
        async with self._lock:
            for principal in [p for p, s in self._pending.items() if s.created_at < cutoff]:
                del self._pending[principal]

    async def _search(self, principal: str, title: str) -> str:
        await self._expire()
        results = expect_list(
            await self.prowlarr.get("search", params={"query": title}), "search"
        )
        if not results:
            return f'No results found for "{title}"'

        shown = results[:MAX_RESULTS]
        async with self._lock:
            self._pending[principal] = PendingSearch(
                [str(r.get("title") or "untitled") for r in shown], self.clock()
            )

        lines = [f'**Search results for "{title}":**']
        for i, r in enumerate(shown, start=1):
            indexer = r.get("indexer") or "unknown"
            lines.append(f"{i}. {r.get('title') or 'untitled'}{format_size(r.get('size'))} ({indexer})")
        if self.targets:
            services = "|".join(self.targets)
            lines.append(f"Add one with `/request add <{services}> <number>`.")
        else:
            lines.append("No target services configured (Sonarr/Radarr).")
        return "\n".join(lines)

    async def _add(self, principal: str, service: str, number: int) -> str:
        await self._expire()
        async with self._lock:
            pending = self._pending.get(principal)
        if pending is None:
            return "This request has expired. Please search again."
        if not 1 <= number <= len(pending.titles):
            return f"Pick a result between 1 and {len(pending.titles)}."
        if service not in TARGETS:
            raise PluginError(
                f"unknown request target {service!r}",
                kind=PluginErrorKind.INPUT,
                module="plugins.request",
            )
        client = self.targets.get(service)
        display, lookup, endpoint, options = TARGETS[service]
        if client is None:
            raise PluginError(
                f"{display} is not configured for requests",
                kind=PluginErrorKind.CONFIG,
                category=ErrorCategory.INFRASTRUCTURE,
                module="plugins.request",
            )

        title = pending.titles[number - 1]
        folders = expect_list(await client.get("rootfolder"), "rootfolder")
        profiles = expect_list(await client.get("qualityprofile"), "qualityprofile")
        if not folders or not profiles:
            raise PluginError(
                f"{display} has no root folder or quality profile configured",
                kind=PluginErrorKind.CONFIG,
                category=ErrorCategory.INFRASTRUCTURE,
                module="plugins.request",
            )
        matches = expect_list(await client.get(lookup, params={"term": title}), lookup)
        if not matches:
            return f'Could not find "{title}" in {display}.'

        payload = dict(matches[0])
        payload.update({
            "rootFolderPath": folders[0]["path"],
            "qualityProfileId": profiles[0]["id"],
            "monitored": True,
            "addOptions": options,
        })
        await client.post(endpoint, payload)
        self.logger.info("media_requested", service=service, title=title)
        return f"Added **{title}** to {display}!"

    async def on_stop(self) -> None:
        await self.prowlarr.close()
        for client in self.targets.values():
            await client.close()
