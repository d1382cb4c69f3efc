"""Prowlarr indexer management plugin."""

from typing import Tuple

from ..exceptions import PluginError
from ..plugin_base import CapabilityDescriptor, CommandParameter, HomewirePlugin, Invocation
from .arr import MAX_RESULTS, ArrClient, ArrSettings, expect_list


def format_size(size) -> str:
    if not isinstance(size, (int, float)) or isinstance(size, bool):
        return ""
    return f" ({size / 1_048_576:.1f} MB)"


class ProwlarrPlugin(HomewirePlugin):
    name = "prowlarr"
    description = "Prowlarr indexer management"
    settings_model = ArrSettings

    def __init__(self, settings: ArrSettings):
        super().__init__(settings)
        self.client = ArrClient(settings.api_url, settings.api_key, "v1", settings.timeout)

    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        return (
            CapabilityDescriptor("prowlarr indexers", "List configured indexers"),
            CapabilityDescriptor(
                "prowlarr search",
                "Search across all indexers",
                (CommandParameter("query", description="Search query", rest=True),),
            ),
            CapabilityDescriptor("prowlarr status", "Indexer health overview"),
        )

    async def handle_invocation(self, invocation: Invocation) -> str:
        if invocation.command == "prowlarr indexers":
            return await self._indexers()
        if invocation.command == "prowlarr search":
            return await self._search(invocation.get("query"))
        if invocation.command == "prowlarr status":
            return await self._status()
        raise PluginError(f"unhandled command {invocation.command}")

    async def _indexers(self) -> str:
        indexers = expect_list(await self.client.get("indexer"), "indexer")
        if not indexers:
            return "No indexers configured."
        lines = ["**Indexers:**"]
        for idx in indexers:
            features = [
                label for label, key in (("RSS", "enableRss"), ("Search", "enableSearch"))
                if idx.get(key)
            ]
            suffix = f" [{', '.join(features)}]" if features else ""
            lines.append(f"- **{idx.get('name') or 'unnamed'}**{suffix}")
        return "\n".join(lines)

    async def _search(self, query: str) -> str:
        results = expect_list(
            await self.client.get("search", params={"query": query}), "search"
        )
        if not results:
            return f'No results for "{query}"'
        lines = [f'**Search results for "{query}":**']
        for i, r in enumerate(results[:MAX_RESULTS], start=1):
            indexer = r.get("indexer") or "unknown"
            lines.append(f"{i}. **{r.get('title') or 'untitled'}**{format_size(r.get('size'))} ({indexer})")
        return "\n".join(lines)

    async def _status(self) -> str:
        health = expect_list(await self.client.get("health"), "health")
        if not health:
            return "**Prowlarr Status:** All healthy"
        lines = ["**Prowlarr Health Issues:**"]
        for h in health:
            lines.append(f"- **{h.get('source') or 'unknown'}**: {h.get('message') or 'no details'}")
        return "\n".join(lines)

    async def on_stop(self) -> None:
        await self.client.close()
