"""Claude assistant plugin backed by an HTTP LLM endpoint.

The backend accepts ``{"messages": [...], "stream": false}`` on
``/v1/messages`` and may answer in Anthropic, OpenAI or plain
``{"response": ...}`` shape. Multi-turn history is kept per principal
while a conversation is open; the history dict is shared by every
concurrent invocation, so all access goes through one asyncio.Lock.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel

from ..exceptions import ErrorCategory, PluginError, PluginErrorKind
from ..plugin_base import CapabilityDescriptor, CommandParameter, HomewirePlugin, Invocation


class ClaudeSettings(BaseModel):
    api_url: str
    api_key: Optional[str] = None
    timeout: float = 120.0
    max_history: int = 40


class LlmError(PluginError):
    def __init__(self, message: str, *, category: ErrorCategory = ErrorCategory.TRANSIENT):
        super().__init__(
            message, kind=PluginErrorKind.API, category=category, module="plugins.claude"
        )


def extract_text(data: Any) -> Optional[str]:
    """Pull the reply text out of the common LLM response formats."""
    if not isinstance(data, dict):
        return None
    try:
        return str(data["content"][0]["text"])
    except (KeyError, IndexError, TypeError):
        pass
    try:
        return str(data["choices"][0]["message"]["content"])
    except (KeyError, IndexError, TypeError):
        pass
    response = data.get("response")
    return response if isinstance(response, str) else None


class HttpLlmBackend:
    """Talks to the LLM service over HTTP."""

    def __init__(self, api_url: str, api_key: Optional[str] = None, timeout: float = 120.0):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
            self._session = aiohttp.ClientSession(
                headers=headers, timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        """Send the conversation and return the assistant's reply.

        Raises:
            LlmError: HTTP failure, non-2xx status, or unparseable body.
        """
        session = await self._get_session()
        body = {"messages": messages, "stream": False}
        try:
            async with session.post(f"{self.api_url}/v1/messages", json=body) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise LlmError(f"API error: {resp.status}: {text[:200]}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise LlmError("LLM request timed out") from None
        except aiohttp.ClientError as e:
            raise LlmError(f"HTTP error: {e}") from e
        except ValueError as e:
            raise LlmError(f"malformed JSON: {e}", category=ErrorCategory.PERMANENT) from e

        text = extract_text(data)
        if text is None:
            raise LlmError(
                f"Could not parse response: {str(data)[:200]}",
                category=ErrorCategory.PERMANENT,
            )
        return text

    async def health_check(self) -> bool:
        session = await self._get_session()
        try:
            async with session.get(f"{self.api_url}/health") as resp:
                return 200 <= resp.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False


class ClaudePlugin(HomewirePlugin):
    """Ask questions, check backend health, manage conversations."""

    name = "claude"
    description = "Claude AI assistant"
    settings_model = ClaudeSettings

    def __init__(self, settings: ClaudeSettings, backend: Optional[HttpLlmBackend] = None):
        super().__init__(settings)
        self.backend = backend or HttpLlmBackend(
            settings.api_url, settings.api_key, settings.timeout
        )
        self.max_history = settings.max_history
        self._conversations: Dict[str, List[Dict[str, str]]] = {}
        self._lock = asyncio.Lock()

    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        return (
            CapabilityDescriptor(
                "claude ask",
                "Ask Claude a question",
                (CommandParameter("prompt", description="Your question", rest=True),),
            ),
            CapabilityDescriptor("claude status", "Check Claude backend health"),
            CapabilityDescriptor("claude conversation start", "Start a new conversation"),
            CapabilityDescriptor("claude conversation end", "End the current conversation"),
        )

    async def handle_invocation(self, invocation: Invocation) -> str:
        command = invocation.command
        if command == "claude ask":
            return await self._ask(invocation.principal, invocation.get("prompt"))
        if command == "claude status":
            healthy = await self.backend.health_check()
            status = f"Claude backend is **{'online' if healthy else 'offline'}**."
            if self.has_conversation(invocation.principal):
                turns = len(self._conversations[invocation.principal])
                status += f"\nConversation active ({turns} messages)."
            return status
        if command == "claude conversation start":
            async with self._lock:
                self._conversations[invocation.principal] = []
            return (
                "Conversation started. Use `/claude ask` to chat. "
                "Use `/claude conversation end` to finish."
            )
        if command == "claude conversation end":
            async with self._lock:
                ended = self._conversations.pop(invocation.principal, None) is not None
            return "Conversation ended." if ended else "No active conversation."
        raise PluginError(f"unhandled command {command}")

    async def _ask(self, principal: str, prompt: str) -> str:
        user_message = {"role": "user", "content": prompt}
        async with self._lock:
            history = self._conversations.get(principal)
            if history is None:
                messages = [user_message]
            else:
                history.append(user_message)
                messages = list(history)

        try:
            reply = await self.backend.complete(messages)
        except BaseException:
            # An unanswered question must not stay in the history.
            self._forget(principal, user_message)
            raise

        async with self._lock:
            history = self._conversations.get(principal)
            if history is not None:
                history.append({"role": "assistant", "content": reply})
                if len(history) > self.max_history:
                    del history[: len(history) - self.max_history]
        return reply

    def _forget(self, principal: str, message: dict) -> None:
        history = self._conversations.get(principal)
        if history is None:
            return
        for index, entry in enumerate(history):
            if entry is message:
                del history[index]
                return

    def has_conversation(self, principal: str) -> bool:
        return principal in self._conversations

    async def on_stop(self) -> None:
        await self.backend.close()
