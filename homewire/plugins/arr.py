"""Shared HTTP client for the *arr family (Sonarr, Radarr, Prowlarr).

All three expose ``/api/<version>/<endpoint>`` authenticated with an
``X-Api-Key`` header. ArrClient wraps a lazily created aiohttp session
and turns transport and HTTP failures into ArrApiError, which is a
PluginError so plugins can let it propagate to the dispatcher.
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp
from pydantic import BaseModel, field_validator

from ..exceptions import ErrorCategory, PluginError, PluginErrorKind

MAX_RESULTS = 10


class ArrSettings(BaseModel):
    """Configuration section shared by every *arr plugin."""

    api_url: str
    api_key: str
    timeout: float = 15.0

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("api_url must start with http:// or https://")
        return value

    @field_validator("api_key")
    @classmethod
    def _require_key(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("api_key must not be empty")
        return value.strip()


class ArrApiError(PluginError):
    """A failed request against an *arr API.

    Attributes:
        status: HTTP status code, or None for connection failures.
        body: Start of the response body (for logs only).
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        body: str = "",
        category: ErrorCategory = ErrorCategory.TRANSIENT,
    ) -> None:
        self.status = status
        self.body = body
        super().__init__(
            message,
            kind=PluginErrorKind.API,
            category=category,
            module="plugins.arr",
        )


class ArrClient:
    """Minimal async client for an *arr API.

    Args:
        base_url: Service root, e.g. ``http://sonarr:8989``.
        api_key: Value for the X-Api-Key header.
        api_version: ``v3`` for Sonarr/Radarr, ``v1`` for Prowlarr.
        timeout: Total request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_version: str = "v3",
        timeout: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_version = api_version
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the shared aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"X-Api-Key": self.api_key},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        """Close the shared HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def url(self, endpoint: str) -> str:
        return f"{self.base_url}/api/{self.api_version}/{endpoint.lstrip('/')}"

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
    ) -> Any:
        session = await self._get_session()
        url = self.url(endpoint)
        try:
            async with session.request(method, url, params=params, json=body) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise ArrApiError(
                        f"API error ({resp.status}): {text[:200]}",
                        status=resp.status,
                        body=text[:500],
                        category=(
                            ErrorCategory.TRANSIENT if resp.status >= 500
                            else ErrorCategory.PERMANENT
                        ),
                    )
                if resp.status == 204:
                    return None
                return await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise ArrApiError(f"timed out calling {endpoint}") from None
        except aiohttp.ClientError as e:
            raise ArrApiError(f"HTTP error calling {endpoint}: {e}") from e
        except ValueError as e:
            raise ArrApiError(
                f"malformed JSON from {endpoint}: {e}",
                category=ErrorCategory.PERMANENT,
            ) from e

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", endpoint, params=params)

    async def post(self, endpoint: str, body: Any) -> Any:
        return await self._request("POST", endpoint, body=body)


def expect_list(data: Any, endpoint: str) -> list:
    """Raise ArrApiError unless an endpoint returned a JSON array."""
    if not isinstance(data, list):
        raise ArrApiError(
            f"expected a list from {endpoint}, got {type(data).__name__}",
            category=ErrorCategory.PERMANENT,
        )
    return data


def format_title(item: dict) -> str:
    """``**Title** (Year)`` for a series or movie record."""
    title = item.get("title") or "Unknown"
    year = item.get("year")
    return f"**{title}** ({year})" if year else f"**{title}**"


def format_search_results(query: str, results: list) -> str:
    if not results:
        return f'No results found for "{query}"'
    lines = [f'**Search results for "{query}":**']
    for i, item in enumerate(results[:MAX_RESULTS], start=1):
        lines.append(f"{i}. {format_title(item)}")
    return "\n".join(lines)


def queue_count(data: Any) -> int:
    """Item count from a ``queue/status`` payload."""
    if isinstance(data, dict):
        count = data.get("totalCount")
        if isinstance(count, int):
            return count
    return 0
