"""Unraid server management plugin (GraphQL API).

Key classes:
    UnraidSettings: ``unraid`` configuration section.
    UnraidApi: GraphQL client authenticated with a bearer API key.
    UnraidPlugin: status, docker and vm commands.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel

from ..exceptions import ErrorCategory, PluginError, PluginErrorKind
from ..plugin_base import CapabilityDescriptor, CommandParameter, HomewirePlugin, Invocation

TIB = 1_099_511_627_776

STATUS_QUERY = """
{
  info { os { hostname uptime } cpu { brand cores threads } }
  array { state }
  disks { name size type smartStatus temperature }
}
"""
CONTAINERS_QUERY = "{ docker { containers { id names state status } } }"
VMS_QUERY = "{ vms { domains { name state } } }"
DOCKER_ACTION_MUTATION = (
    "mutation ($id: String!, $action: String!) "
    "{ dockerContainerAction(id: $id, action: $action) }"
)
VM_ACTION_MUTATION = (
    "mutation ($name: String!, $action: String!) "
    "{ vmAction(name: $name, action: $action) }"
)


class UnraidSettings(BaseModel):
    api_url: str
    api_key: str
    timeout: float = 15.0


class UnraidApiError(PluginError):
    """HTTP or GraphQL-level failure talking to Unraid."""

    def __init__(self, message: str, *, category: ErrorCategory = ErrorCategory.TRANSIENT):
        super().__init__(
            message, kind=PluginErrorKind.API, category=category, module="plugins.unraid"
        )


def container_name(container: Dict[str, Any]) -> str:
    """Display name of a container: first of ``names`` without the slash."""
    names = container.get("names") or []
    if isinstance(names, list) and names:
        return str(names[0]).lstrip("/")
    return str(container.get("id") or "unknown")


class UnraidApi:
    """GraphQL client for the Unraid API."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a GraphQL document and return its ``data`` object.

        Raises:
            UnraidApiError: HTTP failure, GraphQL errors, or no data.
        """
        body: Dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables
        session = await self._get_session()
        try:
            async with session.post(self.base_url, json=body) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise UnraidApiError(f"HTTP {resp.status}: {text[:200]}")
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise UnraidApiError("request timed out") from None
        except aiohttp.ClientError as e:
            raise UnraidApiError(f"HTTP request failed: {e}") from e
        except ValueError as e:
            raise UnraidApiError(
                f"malformed JSON: {e}", category=ErrorCategory.PERMANENT
            ) from e

        if not isinstance(payload, dict):
            raise UnraidApiError("GraphQL error: response is not an object")
        errors = payload.get("errors")
        if errors:
            messages = [str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors]
            raise UnraidApiError(
                f"GraphQL error: {'; '.join(messages)}", category=ErrorCategory.PERMANENT
            )
        data = payload.get("data")
        if not isinstance(data, dict):
            raise UnraidApiError("GraphQL error: No data in response")
        return data

    async def get_system_status(self) -> Dict[str, Any]:
        return await self.query(STATUS_QUERY)

    async def get_docker_containers(self) -> List[Dict[str, Any]]:
        data = await self.query(CONTAINERS_QUERY)
        return list(((data.get("docker") or {}).get("containers")) or [])

    async def docker_action(self, container_id: str, action: str) -> str:
        data = await self.query(DOCKER_ACTION_MUTATION, {"id": container_id, "action": action})
        return str(data.get("dockerContainerAction", ""))

    async def get_vms(self) -> List[Dict[str, Any]]:
        data = await self.query(VMS_QUERY)
        return list(((data.get("vms") or {}).get("domains")) or [])

    async def vm_action(self, name: str, action: str) -> str:
        data = await self.query(VM_ACTION_MUTATION, {"name": name, "action": action})
        return str(data.get("vmAction", ""))


def format_status(status: Dict[str, Any]) -> str:
    info = status.get("info") or {}
    os_info = info.get("os") or {}
    cpu = info.get("cpu") or {}
    disks = status.get("disks") or []
    total_tb = sum(float(d.get("size") or 0) for d in disks) / TIB

    lines = [
        f"**{os_info.get('hostname') or 'Unraid'}**",
        f"Array: {(status.get('array') or {}).get('state', 'unknown')}",
        f"CPU: {cpu.get('brand', 'unknown')} ({cpu.get('cores', '?')} cores / {cpu.get('threads', '?')} threads)",
        f"Up since: {os_info.get('uptime') or 'unknown'}",
        "",
        f"**Disks** ({total_tb:.1f} TB total)",
    ]
    for d in disks:
        temp = d.get("temperature")
        temp_str = f" {float(temp):.0f}C" if isinstance(temp, (int, float)) else ""
        size_tb = float(d.get("size") or 0) / TIB
        lines.append(
            f"- {d.get('name', '?')} ({size_tb:.1f} TB) {d.get('type', '')} "
            f"[{d.get('smartStatus', 'unknown')}]{temp_str}"
        )
    return "\n".join(lines)


class UnraidPlugin(HomewirePlugin):
    """Array status plus Docker container and VM control."""

    name = "unraid"
    description = "Unraid server management"
    settings_model = UnraidSettings

    def __init__(self, settings: UnraidSettings):
        super().__init__(settings)
        self.api = UnraidApi(settings.api_url, settings.api_key, settings.timeout)

    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        container = (CommandParameter("name", description="Container name"),)
        vm = (CommandParameter("name", description="VM name", rest=True),)
        return (
            CapabilityDescriptor("unraid status", "Show array and system status"),
            CapabilityDescriptor("unraid docker list", "List all containers"),
            CapabilityDescriptor("unraid docker start", "Start a container", container),
            CapabilityDescriptor("unraid docker stop", "Stop a container", container),
            CapabilityDescriptor("unraid vm list", "List all VMs"),
            CapabilityDescriptor("unraid vm start", "Start a VM", vm),
            CapabilityDescriptor("unraid vm stop", "Stop a VM", vm),
        )

    async def handle_invocation(self, invocation: Invocation) -> str:
        command = invocation.command
        if command == "unraid status":
            return format_status(await self.api.get_system_status())
        if command == "unraid docker list":
            return await self._list_containers()
        if command in ("unraid docker start", "unraid docker stop"):
            return await self._container_action(invocation.get("name"), command.rsplit(" ", 1)[1])
        if command == "unraid vm list":
            vms = await self.api.get_vms()
            if not vms:
                return "No VMs found."
            lines = ["**Virtual Machines**"]
            lines.extend(f"- **{vm.get('name')}**: {vm.get('state')}" for vm in vms)
            return "\n".join(lines)
        if command in ("unraid vm start", "unraid vm stop"):
            name = invocation.get("name")
            result = await self.api.vm_action(name, command.rsplit(" ", 1)[1])
            return f"VM **{name}**: {result}"
        raise PluginError(f"unhandled command {command}")

    async def _list_containers(self) -> str:
        containers = await self.api.get_docker_containers()
        if not containers:
            return "No Docker containers found."
        lines = ["**Docker Containers**"]
        for c in containers:
            lines.append(f"- **{container_name(c)}**: {c.get('state')} ({c.get('status')})")
        return "\n".join(lines)

    async def _container_action(self, name: str, action: str) -> str:
        containers = await self.api.get_docker_containers()
        match = next(
            (c for c in containers if container_name(c).lower() == name.lower()), None
        )
        if match is None:
            raise PluginError(f"Container '{name}' not found", kind=PluginErrorKind.INPUT)
        result = await self.api.docker_action(str(match.get("id")), action)
        return f"Container **{name}**: {result}"

    async def on_stop(self) -> None:
        await self.api.close()
