"""Radarr movie management plugin."""

from typing import Tuple

from ..exceptions import PluginError
from ..plugin_base import CapabilityDescriptor, CommandParameter, HomewirePlugin, Invocation
from .arr import (
    MAX_RESULTS,
    ArrClient,
    ArrSettings,
    expect_list,
    format_search_results,
    queue_count,
)


class RadarrPlugin(HomewirePlugin):
    name = "radarr"
    description = "Radarr movie management"
    settings_model = ArrSettings

    def __init__(self, settings: ArrSettings):
        super().__init__(settings)
        self.client = ArrClient(settings.api_url, settings.api_key, "v3", settings.timeout)

    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        return (
            CapabilityDescriptor(
                "radarr search",
                "Search for a movie",
                (CommandParameter("title", description="Movie title", rest=True),),
            ),
            CapabilityDescriptor("radarr upcoming", "Show upcoming releases"),
            CapabilityDescriptor("radarr status", "Show queue and system status"),
        )

    async def handle_invocation(self, invocation: Invocation) -> str:
        if invocation.command == "radarr search":
            title = invocation.get("title")
            results = expect_list(
                await self.client.get("movie/lookup", params={"term": title}), "movie/lookup"
            )
            return format_search_results(title, results)
        if invocation.command == "radarr upcoming":
            movies = expect_list(await self.client.get("calendar"), "calendar")
            if not movies:
                return "No upcoming releases."
            lines = ["**Upcoming Releases:**"]
            for movie in movies[:MAX_RESULTS]:
                date = (
                    movie.get("digitalRelease")
                    or movie.get("physicalRelease")
                    or movie.get("inCinemas")
                    or "TBA"
                )
                lines.append(f"- **{movie.get('title') or 'Unknown'}** ({date})")
            return "\n".join(lines)
        if invocation.command == "radarr status":
            count = queue_count(await self.client.get("queue/status"))
            return f"**Radarr Status**\nQueue: {count} items"
        raise PluginError(f"unhandled command {invocation.command}")

    async def on_stop(self) -> None:
        await self.client.close()
