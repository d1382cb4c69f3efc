"""Plex Media Server plugin: library sizes, recent additions, streams."""

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel, field_validator

from ..exceptions import ErrorCategory, PluginError, PluginErrorKind
from ..plugin_base import CapabilityDescriptor, HomewirePlugin, Invocation

MAX_RECENT = 10


class PlexSettings(BaseModel):
    api_url: str
    token: str
    timeout: float = 15.0

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("api_url must start with http:// or https://")
        return value


class PlexApiError(PluginError):
    def __init__(self, message: str, *, category: ErrorCategory = ErrorCategory.TRANSIENT):
        super().__init__(
            message, kind=PluginErrorKind.API, category=category, module="plugins.plex"
        )


def format_relative_time(now: int, timestamp: int) -> str:
    """``12m ago`` / ``3h ago`` / ``2d ago``; unknown or future is ``just now``."""
    if not timestamp or timestamp > now:
        return "just now"
    diff = now - timestamp
    if diff < 3600:
        return f"{diff // 60}m ago"
    if diff < 86400:
        return f"{diff // 3600}h ago"
    return f"{diff // 86400}d ago"


def display_title(item: Dict[str, Any]) -> str:
    """Episode titles are prefixed with their show."""
    title = item.get("title") or "Untitled"
    show = item.get("grandparentTitle")
    return f"{show}: {title}" if show else title


class PlexClient:
    """JSON client for the Plex HTTP API, authenticated with X-Plex-Token."""

    def __init__(self, base_url: str, token: str, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"X-Plex-Token": self.token, "Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def container(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET ``path`` and return its ``MediaContainer`` object."""
        session = await self._get_session()
        try:
            async with session.get(f"{self.base_url}{path}", params=params) as resp:
                if resp.status >= 400:
                    raise PlexApiError(
                        f"Plex API error ({resp.status}) for {path}",
                        category=(
                            ErrorCategory.TRANSIENT if resp.status >= 500
                            else ErrorCategory.PERMANENT
                        ),
                    )
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise PlexApiError(f"timed out calling {path}") from None
        except aiohttp.ClientError as e:
            raise PlexApiError(f"HTTP error calling {path}: {e}") from e
        except ValueError as e:
            raise PlexApiError(
                f"malformed JSON from {path}: {e}", category=ErrorCategory.PERMANENT
            ) from e

        container = data.get("MediaContainer") if isinstance(data, dict) else None
        if not isinstance(container, dict):
            raise PlexApiError(
                f"no MediaContainer in response from {path}",
                category=ErrorCategory.PERMANENT,
            )
        return container


def _entries(container: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    entries = container.get(key) or []
    return [e for e in entries if isinstance(e, dict)] if isinstance(entries, list) else []


class PlexPlugin(HomewirePlugin):
    name = "plex"
    description = "Plex Media Server status"
    settings_model = PlexSettings

    def __init__(self, settings: PlexSettings):
        super().__init__(settings)
        self.client = PlexClient(settings.api_url, settings.token, settings.timeout)

    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        return (
            CapabilityDescriptor("plex status", "Library sizes"),
            CapabilityDescriptor("plex recent", "Recently added media"),
            CapabilityDescriptor("plex streams", "Active streams"),
        )

    async def handle_invocation(self, invocation: Invocation) -> str:
        if invocation.command == "plex status":
            return await self._status()
        if invocation.command == "plex recent":
            return await self._recent()
        if invocation.command == "plex streams":
            return await self._streams()
        raise PluginError(f"unhandled command {invocation.command}")

    async def _status(self) -> str:
        sections = _entries(await self.client.container("/library/sections"), "Directory")
        lines = ["**Plex Library Status**"]
        for section in sections:
            size = await self.client.container(
                f"/library/sections/{section.get('key')}/all",
                params={"X-Plex-Container-Size": "0"},
            )
            lines.append(
                f"- {section.get('title') or 'Untitled'}: "
                f"{size.get('totalSize', 0)} items ({section.get('type') or 'unknown'})"
            )
        return "\n".join(lines)

    async def _recent(self) -> str:
        items = _entries(await self.client.container("/library/recentlyAdded"), "Metadata")
        if not items:
            return "No recently added items."
        now = int(time.time())
        lines = ["**Recently Added**"]
        for item in items[:MAX_RECENT]:
            added = item.get("addedAt")
            ago = format_relative_time(now, added if isinstance(added, int) else 0)
            lines.append(f"- {display_title(item)} ({ago})")
        return "\n".join(lines)

    async def _streams(self) -> str:
        sessions = _entries(await self.client.container("/status/sessions"), "Metadata")
        if not sessions:
            return "No active streams."
        lines = ["**Active Streams**"]
        for s in sessions:
            user = (s.get("User") or {}).get("title") or "Unknown"
            player = s.get("Player") or {}
            lines.append(
                f"- **{user}**: {display_title(s)} "
                f"[{player.get('state') or 'unknown'}] ({player.get('device') or 'Unknown'})"
            )
        return "\n".join(lines)

    async def on_stop(self) -> None:
        await self.client.close()
