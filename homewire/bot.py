"""Signal transport for homewire.

Connects to the Signal CLI REST API via WebSocket, turns incoming
``/command`` messages into raw dispatch events, hands them to the
Dispatcher, and sends the single Response back to the sender.

The transport knows the advertised command surface (it needs it to
split message text into a command name and positional arguments) but
makes no authorization or routing decisions of its own.

Key classes:
    SignalTransport: WebSocket receive loop, message parsing, delivery.

Key functions:
    chunk_message: Split long responses for the platform size limit.
"""

import asyncio
import hashlib
import json
import time as _time
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Set

import aiohttp
import structlog

from .dispatcher import Dispatcher, normalize_command
from .exceptions import ErrorKind
from .plugin_base import CapabilityDescriptor
from .security import mask_id, sanitize_input

logger = structlog.get_logger("homewire.bot")

MAX_MESSAGE_LEN = 2000
DEDUP_WINDOW_SECONDS = 60


def chunk_message(text: str, max_len: int = MAX_MESSAGE_LEN) -> List[str]:
    """Split text into pieces no longer than max_len, preferring newlines."""
    if len(text) <= max_len:
        return [text]
    chunks = []
    remaining = text
    while remaining:
        if len(remaining) <= max_len:
            split_at = len(remaining)
        else:
            split_at = remaining.rfind("\n", 0, max_len)
            if split_at <= 0:
                split_at = max_len
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:]
        if remaining.startswith("\n"):
            remaining = remaining[1:]
    return chunks


def log_task_exception(task: asyncio.Task) -> None:
    """Done-callback that logs exceptions from fire-and-forget tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("background_task_error", error=str(exc), error_type=type(exc).__name__)


class SignalTransport:
    """Signal REST/WebSocket transport.

    Args:
        dispatcher: Dispatcher every command event is handed to.
        api_url: Signal CLI REST API base URL.
        account: Bot account number; None to use the first registered one.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        api_url: str,
        account: Optional[str] = None,
    ):
        self.dispatcher = dispatcher
        self.api_url = api_url.rstrip("/")
        self.account = account
        self.session: Optional[aiohttp.ClientSession] = None
        self.running = False
        self._descriptors: Dict[str, CapabilityDescriptor] = {}
        self._max_words = 1
        self._processed_messages: "OrderedDict[str, float]" = OrderedDict()
        self._in_flight: Set[asyncio.Task] = set()
        self._closed = asyncio.Event()

    def advertise(self, descriptors: Sequence[CapabilityDescriptor]) -> None:
        """Register the command surface this transport will parse."""
        self._descriptors = {d.name: d for d in descriptors}
        self._max_words = max((len(name.split()) for name in self._descriptors), default=1)
        logger.info("commands_advertised", commands=list(self._descriptors))

    def help_text(self) -> str:
        lines = ["**Commands**"]
        for descriptor in self._descriptors.values():
            line = descriptor.usage
            if descriptor.description:
                line += f": {descriptor.description}"
            lines.append(line)
        return "\n".join(lines)

    def parse_command(self, sender: str, text: str) -> Optional[dict]:
        """Turn ``/command args...`` text into a raw dispatch event.

        The command name is the longest run of leading words matching
        an advertised command; remaining words are bound positionally.
        Unmatched commands keep just their first word so the dispatcher
        can answer UnknownCommand.

        Returns:
            The event dict, or None if the text is not a command.
        """
        if not text.startswith("/"):
            return None
        words = text[1:].split()
        if not words:
            return None

        for size in range(min(self._max_words, len(words)), 0, -1):
            name = normalize_command(" ".join(words[:size]))
            descriptor = self._descriptors.get(name)
            if descriptor is not None:
                return {
                    "principal": sender,
                    "command": name,
                    "arguments": descriptor.bind_positional(words[size:]),
                }
        return {"principal": sender, "command": words[0], "arguments": {}}

    async def start(self) -> None:
        """Open the HTTP session and resolve the bot account."""
        self.session = aiohttp.ClientSession()
        self.running = True
        self._closed.clear()
        if not self.account:
            await self._get_account()
        logger.info("transport_started", account=mask_id(self.account))

    async def stop(self) -> None:
        """Abandon in-flight invocations and close the session."""
        if not self.running:
            return
        self.running = False
        self._closed.set()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        if self.session:
            await self.session.close()
        logger.info("transport_stopped")

    async def _get_account(self) -> None:
        """Get the registered Signal account with retry."""
        max_attempts = 12
        base_delay = 5
        max_delay = 15

        for attempt in range(1, max_attempts + 1):
            try:
                url = f"{self.api_url}/v1/accounts"
                async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                    if resp.status == 200:
                        accounts = await resp.json()
                        if accounts:
                            acct = accounts[0]
                            self.account = acct if isinstance(acct, str) else acct.get("number")
                            logger.info("account_found", account=mask_id(self.account))
                        else:
                            logger.warning("no_accounts_registered")
                        return
                    logger.warning("account_request_failed", status=resp.status)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("account_request_error", error=str(e), attempt=attempt)
            if attempt < max_attempts:
                await asyncio.sleep(min(base_delay * attempt, max_delay))

        logger.error("account_request_failed_all_attempts", attempts=max_attempts)

    async def send_message(self, recipient: str, message: str) -> None:
        """Send a message via the Signal API, split to the size limit."""
        for chunk in chunk_message(message):
            payload = {
                "message": chunk,
                "number": self.account,
                "recipients": [recipient],
            }
            try:
                url = f"{self.api_url}/v2/send"
                async with self.session.post(url, json=payload) as resp:
                    if resp.status != 201:
                        body = await resp.text()
                        logger.warning("send_failed", status=resp.status, body=body[:200])
                        return
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error("send_error", error=str(e))
                return

    async def process_message(self, sender: str, message: str) -> None:
        """Dispatch one command message and deliver its response."""
        message = sanitize_input(message.strip())
        if message.lower() in ("/help", "/commands") and self.dispatcher.authorizer.is_owner(sender):
            await self.send_message(sender, self.help_text())
            return

        event = self.parse_command(sender, message)
        if event is None:
            logger.debug("non_command_ignored", sender=mask_id(sender))
            return

        response = await self.dispatcher.handle(event, cancelled=self._closed)
        if response.error is ErrorKind.CANCELLED:
            return
        await self.send_message(sender, response.content)

    def _spawn(self, sender: str, message: str) -> None:
        task = asyncio.create_task(self.process_message(sender, message))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        task.add_done_callback(log_task_exception)

    async def poll_messages(self) -> None:
        """Connect via WebSocket to receive messages (json-rpc mode)."""
        if not self.account:
            logger.error("no_account_for_polling")
            return

        ws_base = self.api_url.replace("http://", "ws://").replace("https://", "wss://")
        ws_url = f"{ws_base}/v1/receive/{self.account}"

        reconnect_delay = 5
        max_reconnect_delay = 300

        while self.running:
            try:
                logger.info("websocket_connecting")
                async with self.session.ws_connect(ws_url, heartbeat=30) as ws:
                    logger.info("websocket_connected")
                    reconnect_delay = 5
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            try:
                                data = json.loads(msg.data)
                            except json.JSONDecodeError:
                                logger.warning("invalid_json", data=msg.data[:100])
                                continue
                            self.handle_signal_message(data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.error("websocket_error", error=str(ws.exception()))
                            break
                        elif msg.type == aiohttp.WSMsgType.CLOSED:
                            logger.info("websocket_closed")
                            break

            except asyncio.CancelledError:
                break
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.error("websocket_exception", error=str(e))
                await asyncio.sleep(reconnect_delay)
                reconnect_delay = min(reconnect_delay * 2, max_reconnect_delay)

    def extract_message(self, msg: dict) -> Optional[tuple]:
        """Pull (sender, text, timestamp) out of a Signal envelope.

        Notes to self (sync messages sent to the bot's own number) are
        accepted; group messages are ignored.
        """
        envelope = msg.get("envelope") or {}
        source = (
            envelope.get("sourceUuid")
            or envelope.get("source")
            or envelope.get("sourceNumber")
        )
        message_text = None

        data_message = envelope.get("dataMessage")
        if data_message:
            if data_message.get("groupInfo"):
                return None
            message_text = data_message.get("message") or ""

        sync_message = envelope.get("syncMessage")
        if sync_message and not message_text:
            sent_message = sync_message.get("sentMessage")
            if sent_message:
                if sent_message.get("groupInfo"):
                    return None
                destination = (
                    sent_message.get("destination")
                    or sent_message.get("destinationNumber")
                )
                if destination and destination == self.account:
                    message_text = sent_message.get("message") or ""
                    source = envelope.get("sourceUuid") or self.account

        if not message_text or not message_text.strip() or not source:
            return None
        return source, message_text, envelope.get("timestamp", 0)

    def _is_duplicate(self, timestamp: int, text: str) -> bool:
        msg_hash = hashlib.sha256(f"{timestamp}:{text.strip()}".encode()).hexdigest()
        if msg_hash in self._processed_messages:
            return True
        now = _time.time()
        self._processed_messages[msg_hash] = now

        cutoff = now - DEDUP_WINDOW_SECONDS
        while self._processed_messages:
            oldest_key, oldest_time = next(iter(self._processed_messages.items()))
            if oldest_time >= cutoff:
                break
            self._processed_messages.pop(oldest_key)
        return False

    def handle_signal_message(self, msg: dict) -> None:
        """Handle a message from the Signal API; commands run concurrently."""
        extracted = self.extract_message(msg) if isinstance(msg, dict) else None
        if extracted is None:
            return
        source, message_text, timestamp = extracted
        if self._is_duplicate(timestamp, message_text):
            logger.debug("duplicate_message_skipped", timestamp=timestamp)
            return

        logger.info("processing_message", source=mask_id(source), length=len(message_text))
        self._spawn(source, message_text)

    async def run(self) -> None:
        """Main run loop: start, poll messages, stop on exit."""
        await self.start()
        try:
            await self.poll_messages()
        finally:
            await self.stop()
