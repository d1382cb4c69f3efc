"""Service health check plugin.

Probes every configured service URL concurrently and reports
``[UP] (Nms)`` or ``[DOWN] (reason)`` per service.
"""

import asyncio
import time
from typing import List, Optional, Tuple

import aiohttp
from pydantic import BaseModel

from ..plugin_base import CapabilityDescriptor, HomewirePlugin, Invocation


class ServiceTarget(BaseModel):
    name: str
    url: str
    api_key: Optional[str] = None
    key_header: Optional[str] = None


class HealthSettings(BaseModel):
    services: List[ServiceTarget] = []
    timeout: float = 5.0
    verify_ssl: bool = False


class HealthPlugin(HomewirePlugin):
    name = "health"
    description = "Service health checks"
    settings_model = HealthSettings

    def __init__(self, settings: HealthSettings):
        super().__init__(settings)
        self.services = list(settings.services)
        self.timeout = settings.timeout
        self.verify_ssl = settings.verify_ssl
        self._session: Optional[aiohttp.ClientSession] = None

    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        return (CapabilityDescriptor("health", "Check health of all configured services"),)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(ssl=self.verify_ssl),
            )
        return self._session

    async def check(self, service: ServiceTarget) -> str:
        """One status line for one service."""
        session = await self._get_session()
        headers = {}
        if service.api_key and service.key_header:
            headers[service.key_header] = service.api_key
        started = time.monotonic()
        try:
            async with session.get(service.url, headers=headers) as resp:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                if 200 <= resp.status < 300:
                    return f"- {service.name}: [UP] ({elapsed_ms}ms)"
                return f"- {service.name}: [DOWN] (HTTP {resp.status})"
        except asyncio.TimeoutError:
            return f"- {service.name}: [DOWN] (timeout)"
        except aiohttp.ClientError:
            return f"- {service.name}: [DOWN] (connection error)"

    async def handle_invocation(self, invocation: Invocation) -> str:
        if not self.services:
            return "**Service Health**\nNo services configured."
        lines = await asyncio.gather(*(self.check(svc) for svc in self.services))
        return "\n".join(["**Service Health**", *lines])

    async def on_stop(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
