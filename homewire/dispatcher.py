"""Per-invocation orchestration and failure isolation.

The dispatcher takes one raw event from the transport and walks it
through RECEIVED -> AUTHORIZING -> RESOLVING -> INVOKING -> RESPONDING
-> DONE. Any per-invocation error moves it to ERRORED instead. Either
way exactly one Response comes back, and nothing a plugin raises ever
escapes handle().

Key classes:
    DispatchState: States of one invocation.
    Dispatcher: The orchestrator; safe to call concurrently.
"""

import asyncio
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Mapping, Optional

import structlog

from .exceptions import (
    BadRequest,
    ErrorCategory,
    ErrorKind,
    InvocationCancelled,
    InvocationError,
    InvocationTimeout,
    PluginError,
    PluginFailure,
    Unauthorized,
)
from .plugin_base import HomewirePlugin, Invocation, Response
from .registry import PluginRegistry
from .security import DENIAL_MESSAGE, Authorizer, mask_id

logger = structlog.get_logger("homewire.dispatch")

DEFAULT_TIMEOUT = 30.0

MALFORMED_MESSAGE = "Sorry, that request couldn't be understood."
UNKNOWN_COMMAND_MESSAGE = "Unknown command."
TIMEOUT_MESSAGE = "That took too long to answer. Try again in a moment."
CANCELLED_MESSAGE = "Cancelled."
INTERNAL_ERROR_MESSAGE = "Something went wrong. Check bot logs for details."


class DispatchState(str, Enum):
    """Where an invocation is in its lifecycle."""
    RECEIVED = "received"
    AUTHORIZING = "authorizing"
    RESOLVING = "resolving"
    INVOKING = "invoking"
    RESPONDING = "responding"
    DONE = "done"
    ERRORED = "errored"


def normalize_command(command: str) -> str:
    """Lower-case a command name, drop a leading slash, squash spaces."""
    return " ".join(command.strip().lstrip("/").lower().split())


class Dispatcher:
    """Routes invocations to plugins behind one isolation boundary.

    Holds non-owning references to a frozen PluginRegistry and an
    Authorizer; keeps no other state, so handle() needs no locking.

    Args:
        registry: The startup-built, frozen plugin registry.
        authorizer: Owner-only allow-list.
        timeout: Seconds a plugin gets before the call is cancelled.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        authorizer: Authorizer,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.registry = registry
        self.authorizer = authorizer
        self.timeout = timeout

    async def handle(
        self,
        raw_event: Any,
        cancelled: Optional[asyncio.Event] = None,
    ) -> Response:
        """Run one raw event through the dispatch state machine.

        Args:
            raw_event: Mapping with ``principal``, ``command`` and an
                optional ``arguments`` mapping.
            cancelled: Set by the transport when the originating
                session closes; the in-flight plugin call is cancelled.

        Returns:
            The single Response for this invocation.
        """
        started = time.monotonic()
        state = DispatchState.RECEIVED
        plugin_name: Optional[str] = None
        invocation: Optional[Invocation] = None

        try:
            invocation = self._parse_event(raw_event)

            state = DispatchState.AUTHORIZING
            if not self.authorizer.check(invocation.principal):
                raise Unauthorized(command=invocation.command)

            state = DispatchState.RESOLVING
            plugin = self.registry.resolve(invocation.command)
            plugin_name = plugin.name
            descriptor = self.registry.descriptor(invocation.command)
            invocation = replace(invocation, arguments=descriptor.bind(invocation.arguments))

            state = DispatchState.INVOKING
            result = await self._invoke(plugin, invocation, cancelled)

            state = DispatchState.RESPONDING
            response = self._normalize_result(plugin, result)
            state = DispatchState.DONE

        except InvocationError as e:
            response = self._error_response(e, state)
            self._log_error(e, state, invocation)
            state = DispatchState.ERRORED

        except Exception as e:
            # Last line of the isolation boundary: a bug here must not
            # reach the transport either.
            logger.exception(
                "dispatch_internal_error",
                state=state.value,
                plugin=plugin_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            response = Response.failure(
                ErrorKind.PLUGIN_FAILURE, INTERNAL_ERROR_MESSAGE, plugin=plugin_name
            )
            state = DispatchState.ERRORED

        logger.info(
            "invocation_completed",
            command=invocation.command if invocation else None,
            plugin=plugin_name,
            state=state.value,
            error=response.error.value if response.error else None,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return response

    def _parse_event(self, raw_event: Any) -> Invocation:
        """Turn a transport event into an Invocation.

        Raises:
            BadRequest: The event is structurally malformed.
        """
        if not isinstance(raw_event, Mapping):
            raise BadRequest("event is not a mapping")

        principal = raw_event.get("principal")
        if principal is None or isinstance(principal, bool) or not str(principal).strip():
            raise BadRequest("event has no principal")

        command = raw_event.get("command")
        if not isinstance(command, str) or not normalize_command(command):
            raise BadRequest("event has no command name")

        arguments = raw_event.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, Mapping):
            raise BadRequest("arguments are not a mapping")
        if not all(isinstance(key, str) for key in arguments):
            raise BadRequest("argument names must be strings")

        return Invocation(
            command=normalize_command(command),
            principal=str(principal).strip(),
            arguments=dict(arguments),
        )

    async def _invoke(
        self,
        plugin: HomewirePlugin,
        invocation: Invocation,
        cancelled: Optional[asyncio.Event],
    ) -> Any:
        """Call the plugin under the timeout and convert every failure.

        Raises:
            InvocationTimeout: The plugin didn't finish in time.
            InvocationCancelled: The transport gave up on the session.
            PluginFailure: The plugin raised anything else.
        """
        task = asyncio.create_task(plugin.handle_invocation(invocation))
        waiters = {task}
        cancel_waiter = None
        if cancelled is not None:
            cancel_waiter = asyncio.create_task(cancelled.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task not in done:
            self._abandon(plugin, task)
            if cancel_waiter is not None and cancel_waiter in done:
                raise InvocationCancelled(plugin.name, command=invocation.command)
            raise InvocationTimeout(plugin.name, self.timeout, command=invocation.command)

        try:
            return task.result()
        except PluginError as e:
            raise PluginFailure(
                plugin.name,
                str(e),
                user_message=e.user_message,
                category=e.category,
                command=invocation.command,
            ) from e
        except asyncio.CancelledError:
            raise PluginFailure(
                plugin.name, "handler was cancelled", command=invocation.command
            ) from None
        except Exception as e:
            raise PluginFailure(
                plugin.name,
                f"{type(e).__name__}: {e}",
                command=invocation.command,
            ) from e

    def _abandon(self, plugin: HomewirePlugin, task: asyncio.Task) -> None:
        """Cancel an in-flight plugin call without waiting for it."""
        task.cancel()

        def _reap(finished: asyncio.Task) -> None:
            if finished.cancelled():
                return
            exc = finished.exception()
            logger.warning(
                "abandoned_invocation_finished",
                plugin=plugin.name,
                error=str(exc) if exc else None,
            )

        task.add_done_callback(_reap)

    def _normalize_result(self, plugin: HomewirePlugin, result: Any) -> Response:
        """Turn whatever the plugin returned into a Response.

        Raises:
            PluginFailure: The plugin returned a failure or an
                unsupported value.
        """
        if isinstance(result, str):
            return Response.success(result, plugin=plugin.name)
        if isinstance(result, Response):
            if result.ok:
                return replace(result, plugin=plugin.name, error=None)
            raise PluginFailure(
                plugin.name,
                f"returned failure: {result.content}",
                user_message=result.content or INTERNAL_ERROR_MESSAGE,
                category=ErrorCategory.TRANSIENT if result.retryable else ErrorCategory.PERMANENT,
            )
        raise PluginFailure(
            plugin.name, f"returned unsupported result type {type(result).__name__}"
        )

    def _error_response(self, error: InvocationError, state: DispatchState) -> Response:
        """Build the user-facing Response for a terminal error."""
        plugin_name = getattr(error, "plugin_name", None)
        if isinstance(error, BadRequest):
            if state is DispatchState.RECEIVED:
                content = MALFORMED_MESSAGE
            else:
                content = f"Invalid command: {error.message}"
            return Response.failure(error.kind, content)
        if error.kind is ErrorKind.UNAUTHORIZED:
            return Response.failure(error.kind, DENIAL_MESSAGE)
        if error.kind is ErrorKind.UNKNOWN_COMMAND:
            return Response.failure(error.kind, UNKNOWN_COMMAND_MESSAGE)
        if error.kind is ErrorKind.TIMEOUT:
            return Response.failure(error.kind, TIMEOUT_MESSAGE, retryable=True, plugin=plugin_name)
        if error.kind is ErrorKind.CANCELLED:
            return Response.failure(error.kind, CANCELLED_MESSAGE, plugin=plugin_name)
        user_message = getattr(error, "user_message", INTERNAL_ERROR_MESSAGE)
        return Response.failure(
            error.kind, user_message, retryable=error.is_retryable, plugin=plugin_name
        )

    def _log_error(
        self,
        error: InvocationError,
        state: DispatchState,
        invocation: Optional[Invocation],
    ) -> None:
        fields = {
            "state": state.value,
            "kind": error.kind.value,
            "principal": mask_id(invocation.principal) if invocation else None,
        }
        if error.kind is ErrorKind.UNAUTHORIZED:
            logger.warning("invocation_denied", **fields)
        elif isinstance(error, PluginFailure):
            logger.error(
                "plugin_failure",
                plugin=error.plugin_name,
                detail=error.detail,
                command=invocation.command if invocation else None,
                **fields,
            )
        else:
            logger.warning(
                "invocation_rejected",
                command=invocation.command if invocation else None,
                error=str(error),
                **fields,
            )
