"""Sonarr TV show management plugin."""

from typing import Tuple

from ..exceptions import ErrorCategory, PluginError, PluginErrorKind
from ..plugin_base import CapabilityDescriptor, CommandParameter, HomewirePlugin, Invocation
from .arr import (
    MAX_RESULTS,
    ArrApiError,
    ArrClient,
    ArrSettings,
    expect_list,
    format_search_results,
    format_title,
    queue_count,
)

TITLE = CommandParameter("title", description="Show title", rest=True)


class SonarrPlugin(HomewirePlugin):
    """Search, add and monitor TV shows through Sonarr's v3 API.

    ``sonarr add`` is a write: if the dispatcher times out after the
    POST was sent, the series may still be added upstream.
    """

    name = "sonarr"
    description = "Sonarr TV show management"
    settings_model = ArrSettings

    def __init__(self, settings: ArrSettings):
        super().__init__(settings)
        self.client = ArrClient(settings.api_url, settings.api_key, "v3", settings.timeout)

    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        return (
            CapabilityDescriptor("sonarr search", "Search for a TV show", (TITLE,)),
            CapabilityDescriptor("sonarr add", "Add a TV show to Sonarr", (TITLE,)),
            CapabilityDescriptor("sonarr upcoming", "Show upcoming episodes"),
            CapabilityDescriptor("sonarr status", "Show queue and system status"),
        )

    async def handle_invocation(self, invocation: Invocation) -> str:
        if invocation.command == "sonarr search":
            return await self._search(invocation.get("title"))
        if invocation.command == "sonarr add":
            return await self._add(invocation.get("title"))
        if invocation.command == "sonarr upcoming":
            return await self._upcoming()
        if invocation.command == "sonarr status":
            count = queue_count(await self.client.get("queue/status"))
            return f"**Sonarr Status**\nQueue: {count} items"
        raise PluginError(f"unhandled command {invocation.command}")

    async def _search(self, title: str) -> str:
        results = expect_list(
            await self.client.get("series/lookup", params={"term": title}), "series/lookup"
        )
        return format_search_results(title, results)

    async def _upcoming(self) -> str:
        episodes = expect_list(
            await self.client.get("calendar", params={"includeSeries": "true"}), "calendar"
        )
        if not episodes:
            return "No upcoming episodes."
        lines = ["**Upcoming Episodes:**"]
        for ep in episodes[:MAX_RESULTS]:
            series = ep.get("seriesTitle") or (ep.get("series") or {}).get("title") or "Unknown"
            title = ep.get("title") or "TBA"
            date = ep.get("airDateUtc") or "TBA"
            lines.append(f"- **{series}**: {title} ({date})")
        return "\n".join(lines)

    async def _add(self, title: str) -> str:
        results = expect_list(
            await self.client.get("series/lookup", params={"term": title}), "series/lookup"
        )
        if not results:
            return f'No results found for "{title}"'
        series = results[0]
        if series.get("id"):
            return f"{format_title(series)} is already in Sonarr."

        profiles = expect_list(await self.client.get("qualityprofile"), "qualityprofile")
        folders = expect_list(await self.client.get("rootfolder"), "rootfolder")
        if not profiles or not folders:
            raise PluginError(
                "Sonarr has no quality profile or root folder configured",
                kind=PluginErrorKind.CONFIG,
                category=ErrorCategory.INFRASTRUCTURE,
            )

        payload = dict(series)
        payload.update({
            "qualityProfileId": profiles[0]["id"],
            "rootFolderPath": folders[0]["path"],
            "monitored": True,
            "seasonFolder": True,
            "addOptions": {"searchForMissingEpisodes": True},
        })
        try:
            added = await self.client.post("series", payload)
        except ArrApiError as e:
            if e.status == 400:
                return f"Sonarr refused to add {format_title(series)}."
            raise
        self.logger.info("sonarr_series_added", title=series.get("title"))
        return f"Added {format_title(added if isinstance(added, dict) else series)} to Sonarr."

    async def on_stop(self) -> None:
        await self.client.close()
