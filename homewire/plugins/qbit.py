"""qBittorrent plugin (WebUI API v2).

The WebUI authenticates with a session cookie. QbitClient logs in
lazily on first use and once more whenever a request comes back 403,
which is how qBittorrent reports an expired session.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel, field_validator

from ..exceptions import ErrorCategory, PluginError, PluginErrorKind
from ..plugin_base import CapabilityDescriptor, CommandParameter, HomewirePlugin, Invocation

MAX_TORRENTS = 15
MAX_NAME = 50

KIB = 1024
MIB = 1_048_576
GIB = 1_073_741_824
TIB = 1_099_511_627_776


class QbitSettings(BaseModel):
    api_url: str
    username: str
    password: str
    timeout: float = 15.0

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("api_url must start with http:// or https://")
        return value


class QbitApiError(PluginError):
    def __init__(
        self,
        message: str,
        *,
        kind: PluginErrorKind = PluginErrorKind.API,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
    ):
        super().__init__(message, kind=kind, category=category, module="plugins.qbit")


def format_speed(bytes_per_sec: int) -> str:
    if bytes_per_sec < KIB:
        return f"{bytes_per_sec} B/s"
    if bytes_per_sec < MIB:
        return f"{bytes_per_sec / KIB:.1f} KB/s"
    return f"{bytes_per_sec / MIB:.1f} MB/s"


def format_bytes(size: int) -> str:
    if size < GIB:
        return f"{size / MIB:.1f} MB"
    if size < TIB:
        return f"{size / GIB:.1f} GB"
    return f"{size / TIB:.1f} TB"


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."


def _number(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


class QbitClient:
    """Cookie-session client for ``/api/v2``."""

    def __init__(self, base_url: str, username: str, password: str, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._logged_in = False
        self._login_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                # qBittorrent is usually reached by IP; the default jar
                # drops cookies set by IP hosts.
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                headers={"Referer": self.base_url},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._logged_in = False
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
        self._logged_in = False

    async def login(self) -> None:
        """Authenticate and keep the SID cookie in the session jar.

        Raises:
            QbitApiError: CONFIG kind when the credentials are rejected.
        """
        async with self._login_lock:
            session = await self._get_session()
            form = {"username": self.username, "password": self.password}
            try:
                async with session.post(f"{self.base_url}/api/v2/auth/login", data=form) as resp:
                    text = await resp.text()
            except asyncio.TimeoutError:
                raise QbitApiError("timed out logging in") from None
            except aiohttp.ClientError as e:
                raise QbitApiError(f"HTTP error logging in: {e}") from e
            if "Ok" not in text:
                raise QbitApiError(
                    "qBittorrent login failed",
                    kind=PluginErrorKind.CONFIG,
                    category=ErrorCategory.PERMANENT,
                )
            self._logged_in = True

    async def _request(self, method: str, endpoint: str, **kwargs) -> aiohttp.ClientResponse:
        if not self._logged_in:
            await self.login()
        for attempt in range(2):
            session = await self._get_session()
            try:
                resp = await session.request(method, f"{self.base_url}/api/v2{endpoint}", **kwargs)
                if resp.status == 403 and attempt == 0:
                    resp.release()
                    await self.login()
                    continue
                if resp.status >= 400:
                    resp.release()
                    raise QbitApiError(
                        f"qBittorrent API error ({resp.status}) for {endpoint}",
                        category=(
                            ErrorCategory.TRANSIENT if resp.status >= 500
                            else ErrorCategory.PERMANENT
                        ),
                    )
                await resp.read()
                return resp
            except asyncio.TimeoutError:
                raise QbitApiError(f"timed out calling {endpoint}") from None
            except aiohttp.ClientError as e:
                raise QbitApiError(f"HTTP error calling {endpoint}: {e}") from e
        raise QbitApiError(f"still forbidden after login for {endpoint}")

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self._request("GET", endpoint, params=params)
        try:
            return await resp.json(content_type=None)
        except ValueError as e:
            raise QbitApiError(
                f"malformed JSON from {endpoint}: {e}", category=ErrorCategory.PERMANENT
            ) from e

    async def post_form(self, endpoint: str, form: Dict[str, str]) -> None:
        await self._request("POST", endpoint, data=form)


class QbitPlugin(HomewirePlugin):
    name = "qbit"
    description = "qBittorrent torrent management"
    settings_model = QbitSettings

    def __init__(self, settings: QbitSettings):
        super().__init__(settings)
        self.client = QbitClient(
            settings.api_url, settings.username, settings.password, settings.timeout
        )

    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        name = (CommandParameter("name", description="Part of the torrent name", rest=True),)
        return (
            CapabilityDescriptor("qbit status", "Transfer speeds and totals"),
            CapabilityDescriptor("qbit list", "List torrents"),
            CapabilityDescriptor("qbit pause", "Pause a torrent", name),
            CapabilityDescriptor("qbit resume", "Resume a torrent", name),
        )

    async def handle_invocation(self, invocation: Invocation) -> str:
        command = invocation.command
        if command == "qbit status":
            return await self._status()
        if command == "qbit list":
            return await self._list()
        if command == "qbit pause":
            return await self._act("pause", "Paused", invocation.get("name"))
        if command == "qbit resume":
            return await self._act("resume", "Resumed", invocation.get("name"))
        raise PluginError(f"unhandled command {command}")

    async def _torrents(self) -> List[Dict[str, Any]]:
        torrents = await self.client.get("/torrents/info")
        if not isinstance(torrents, list):
            raise QbitApiError("expected a list from /torrents/info", category=ErrorCategory.PERMANENT)
        return [t for t in torrents if isinstance(t, dict)]

    async def _status(self) -> str:
        info = await self.client.get("/transfer/info")
        if not isinstance(info, dict):
            info = {}
        return (
            "**qBittorrent Status**\n"
            f"Download: {format_speed(_number(info.get('dl_info_speed')))} | "
            f"Upload: {format_speed(_number(info.get('up_info_speed')))}\n"
            f"Total Downloaded: {format_bytes(_number(info.get('dl_info_data')))} | "
            f"Total Uploaded: {format_bytes(_number(info.get('up_info_data')))}"
        )

    async def _list(self) -> str:
        torrents = await self._torrents()
        if not torrents:
            return "No torrents."
        lines = ["**Torrents**"]
        for t in torrents[:MAX_TORRENTS]:
            size = f" ({format_bytes(_number(t['size']))})" if "size" in t else ""
            speed = f" {format_speed(_number(t['dlspeed']))}" if "dlspeed" in t else ""
            pct = int(float(t.get("progress") or 0) * 100)
            lines.append(
                f"- **{truncate(str(t.get('name') or ''), MAX_NAME)}**{size} "
                f"{pct}% [{t.get('state') or 'unknown'}]{speed}"
            )
        if len(torrents) > MAX_TORRENTS:
            lines.append(f"... and {len(torrents) - MAX_TORRENTS} more")
        return "\n".join(lines)

    async def _act(self, action: str, done: str, name: str) -> str:
        needle = name.lower()
        matches = [t for t in await self._torrents() if needle in str(t.get("name", "")).lower()]
        if not matches:
            return f'No torrent matching "{name}"'
        if len(matches) > 1:
            return f'{len(matches)} torrents match "{name}", be more specific'
        await self.client.post_form(f"/torrents/{action}", {"hashes": str(matches[0].get("hash"))})
        self.logger.info("qbit_torrent_action", action=action, torrent=matches[0].get("name"))
        return f'{done} torrent matching "{name}"'

    async def on_stop(self) -> None:
        await self.client.close()
