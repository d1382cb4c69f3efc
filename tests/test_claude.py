"""Tests for the Claude assistant plugin and its HTTP backend."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from homewire.exceptions import ErrorCategory
from homewire.plugin_base import Invocation
from homewire.plugins.claude import (
    ClaudePlugin,
    ClaudeSettings,
    HttpLlmBackend,
    LlmError,
    extract_text,
)

OWNER = "+15551234567"


def _make_plugin(reply="Hi there", max_history=40):
    backend = AsyncMock()
    backend.complete.return_value = reply
    backend.health_check.return_value = True
    plugin = ClaudePlugin(
        ClaudeSettings(api_url="http://llm:8000", max_history=max_history), backend=backend
    )
    return plugin, backend


def _ask(prompt):
    return Invocation("claude ask", OWNER, {"prompt": prompt})


def _cmd(command):
    return Invocation(command, OWNER, {})


@pytest.mark.parametrize("payload,expected", [
    ({"content": [{"type": "text", "text": "anthropic"}]}, "anthropic"),
    ({"choices": [{"message": {"content": "openai"}}]}, "openai"),
    ({"response": "plain"}, "plain"),
    ({"something": "else"}, None),
    (["not", "a", "dict"], None),
])
def test_extract_text(payload, expected):
    """Anthropic, OpenAI and plain reply shapes are all understood."""
    assert extract_text(payload) == expected


class TestConversations:

    @pytest.mark.asyncio
    async def test_single_question_keeps_no_history(self):
        """Outside a conversation each ask stands alone."""
        plugin, backend = _make_plugin()

        assert await plugin.handle_invocation(_ask("hello")) == "Hi there"

        backend.complete.assert_awaited_once_with([{"role": "user", "content": "hello"}])
        assert plugin.has_conversation(OWNER) is False

    @pytest.mark.asyncio
    async def test_conversation_carries_history(self):
        plugin, backend = _make_plugin(reply="answer")

        await plugin.handle_invocation(_cmd("claude conversation start"))
        await plugin.handle_invocation(_ask("first"))
        await plugin.handle_invocation(_ask("second"))

        assert backend.complete.await_args.args[0] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "answer"},
            {"role": "user", "content": "second"},
        ]

    @pytest.mark.asyncio
    async def test_end_conversation(self):
        plugin, _ = _make_plugin()

        await plugin.handle_invocation(_cmd("claude conversation start"))
        assert await plugin.handle_invocation(_cmd("claude conversation end")) == "Conversation ended."
        assert await plugin.handle_invocation(_cmd("claude conversation end")) == "No active conversation."

    @pytest.mark.asyncio
    async def test_history_is_trimmed(self):
        """History keeps only the newest max_history messages."""
        plugin, _ = _make_plugin(max_history=4)

        await plugin.handle_invocation(_cmd("claude conversation start"))
        for i in range(5):
            await plugin.handle_invocation(_ask(f"q{i}"))

        history = plugin._conversations[OWNER]
        assert len(history) == 4
        assert history[-2] == {"role": "user", "content": "q4"}

    @pytest.mark.asyncio
    async def test_concurrent_asks_share_one_history(self):
        """Concurrent asks append to the same history without losing turns."""
        plugin, backend = _make_plugin()

        async def slow_reply(messages):
            await asyncio.sleep(0.01)
            return "ok"

        backend.complete.side_effect = slow_reply
        await plugin.handle_invocation(_cmd("claude conversation start"))
        await asyncio.gather(*(plugin.handle_invocation(_ask(f"q{i}")) for i in range(3)))

        assert len(plugin._conversations[OWNER]) == 6

    @pytest.mark.asyncio
    async def test_status(self):
        plugin, backend = _make_plugin()
        assert "**online**" in await plugin.handle_invocation(_cmd("claude status"))
        backend.health_check.return_value = False
        assert "**offline**" in await plugin.handle_invocation(_cmd("claude status"))

    @pytest.mark.asyncio
    async def test_status_reports_active_conversation(self):
        """Status tells the owner a conversation is still open."""
        plugin, _ = _make_plugin(reply="answer")

        assert "Conversation active" not in await plugin.handle_invocation(_cmd("claude status"))
        await plugin.handle_invocation(_cmd("claude conversation start"))
        await plugin.handle_invocation(_ask("first"))

        status = await plugin.handle_invocation(_cmd("claude status"))
        assert status.endswith("Conversation active (2 messages).")

    @pytest.mark.asyncio
    async def test_failed_ask_leaves_no_orphan_question(self):
        """A backend failure drops the unanswered question from history."""
        plugin, backend = _make_plugin(reply="answer")
        await plugin.handle_invocation(_cmd("claude conversation start"))
        await plugin.handle_invocation(_ask("first"))

        backend.complete.side_effect = LlmError("API error: 500")
        with pytest.raises(LlmError):
            await plugin.handle_invocation(_ask("second"))

        backend.complete.side_effect = None
        backend.complete.return_value = "again"
        await plugin.handle_invocation(_ask("third"))

        assert backend.complete.await_args.args[0] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "answer"},
            {"role": "user", "content": "third"},
        ]

    @pytest.mark.asyncio
    async def test_cancelled_ask_leaves_no_orphan_question(self):
        """A timed-out ask is cancelled and its question discarded."""
        plugin, backend = _make_plugin()

        async def never(messages):
            await asyncio.sleep(10)

        backend.complete.side_effect = never
        await plugin.handle_invocation(_cmd("claude conversation start"))
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(plugin.handle_invocation(_ask("slow")), 0.05)

        assert plugin._conversations[OWNER] == []

    @pytest.mark.asyncio
    async def test_on_stop_closes_backend(self):
        plugin, backend = _make_plugin()
        await plugin.on_stop()
        backend.close.assert_awaited_once()


# -------------------------------------------------------------------
# HttpLlmBackend
# -------------------------------------------------------------------

def _llm_app(handler):
    app = web.Application()
    app.router.add_post("/v1/messages", handler)
    return app


@pytest.mark.asyncio
async def test_backend_complete():
    """The backend sends the bearer key and a non-streaming request."""
    seen = {}

    async def messages(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = await request.json()
        return web.json_response({"content": [{"type": "text", "text": "pong"}]})

    async with TestServer(_llm_app(messages)) as server:
        backend = HttpLlmBackend(str(server.make_url("/")), api_key="sk-test")
        try:
            reply = await backend.complete([{"role": "user", "content": "ping"}])
        finally:
            await backend.close()

    assert reply == "pong"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"] == {"messages": [{"role": "user", "content": "ping"}], "stream": False}


@pytest.mark.asyncio
async def test_backend_http_error():
    async def messages(request):
        return web.Response(status=500, text="overloaded")

    async with TestServer(_llm_app(messages)) as server:
        backend = HttpLlmBackend(str(server.make_url("/")))
        try:
            with pytest.raises(LlmError, match="API error: 500"):
                await backend.complete([])
        finally:
            await backend.close()


@pytest.mark.asyncio
async def test_backend_unparseable_reply():
    """A reply with no recognizable text is a permanent error."""
    async def messages(request):
        return web.json_response({"weird": True})

    async with TestServer(_llm_app(messages)) as server:
        backend = HttpLlmBackend(str(server.make_url("/")))
        try:
            with pytest.raises(LlmError) as exc_info:
                await backend.complete([])
        finally:
            await backend.close()

    assert exc_info.value.category is ErrorCategory.PERMANENT


@pytest.mark.asyncio
async def test_backend_health_check_unreachable():
    backend = HttpLlmBackend("http://127.0.0.1:1", timeout=2)
    try:
        assert await backend.health_check() is False
    finally:
        await backend.close()
