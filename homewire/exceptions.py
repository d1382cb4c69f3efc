"""Custom exception hierarchy for homewire.

Every error the gateway can produce is a subclass of HomewireError.
Per-invocation errors (BadRequest, Unauthorized, UnknownCommand,
PluginFailure, InvocationTimeout) are converted into a Response by the
dispatcher. Startup errors (ConfigurationError, MissingOwnerConfig,
DuplicateCommand) are the only ones allowed to stop the process.

PluginError is what handler implementations raise when their backing
service misbehaves; the dispatcher wraps it in PluginFailure.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""
    TRANSIENT = "transient"          # Worth retrying (timeout, upstream 5xx)
    PERMANENT = "permanent"          # Not worth retrying (bad input, denied)
    INFRASTRUCTURE = "infrastructure"  # Config or environment problems


class ErrorKind(str, Enum):
    """Terminal error kinds a dispatched invocation can end in."""
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN_COMMAND = "unknown_command"
    PLUGIN_FAILURE = "plugin_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class HomewireError(Exception):
    """Base exception for all homewire errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for retry decisions.
        module: Originating module name (e.g. "registry").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error is worth retrying."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Startup exceptions (fatal)
# ---------------------------------------------------------------------------

class ConfigurationError(HomewireError):
    """Invalid or missing configuration.

    Defaults to INFRASTRUCTURE because config issues are environmental
    and won't resolve by retrying.
    """

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(
            message, category=category, module=module or "config", **context
        )


class MissingOwnerConfig(ConfigurationError):
    """No owner id configured; the gateway refuses to start."""

    def __init__(self, message: str = "owner_id is not configured", **context: Any) -> None:
        super().__init__(message, setting_name="owner_id", **context)


class DuplicateCommand(HomewireError):
    """Two plugins (or one plugin twice) declared the same command name.

    Attributes:
        command: The colliding command name.
        plugin: Plugin whose registration was rejected.
        owner: Plugin that already owns the name (None for a self-collision).
    """

    def __init__(
        self,
        command: str,
        *,
        plugin: str,
        owner: Optional[str] = None,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.command = command
        self.plugin = plugin
        self.owner = owner
        super().__init__(
            f"command '{command}' from plugin '{plugin}' is already registered",
            category=ErrorCategory.INFRASTRUCTURE,
            module=module or "registry",
            **context,
        )


# ---------------------------------------------------------------------------
# Per-invocation exceptions (recovered by the dispatcher)
# ---------------------------------------------------------------------------

class InvocationError(HomewireError):
    """Base for errors that end a single invocation."""

    kind: ErrorKind = ErrorKind.PLUGIN_FAILURE


class BadRequest(InvocationError):
    """Malformed event or arguments that don't fit the command's parameters."""

    kind = ErrorKind.BAD_REQUEST

    def __init__(self, message: str = "", *, module: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, module=module or "dispatcher", **context)


class Unauthorized(InvocationError):
    """The principal is not the configured owner."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "", *, module: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, module=module or "security", **context)


class UnknownCommand(InvocationError):
    """No registered plugin owns the command name."""

    kind = ErrorKind.UNKNOWN_COMMAND

    def __init__(self, command: str, *, module: Optional[str] = None, **context: Any) -> None:
        self.command = command
        super().__init__(
            f"unknown command '{command}'", module=module or "registry", **context
        )


class PluginFailure(InvocationError):
    """A plugin failed while handling an invocation.

    Attributes:
        plugin_name: Name of the failing plugin.
        detail: Internal description, for logs only.
        user_message: Safe text to show the caller.
    """

    kind = ErrorKind.PLUGIN_FAILURE

    def __init__(
        self,
        plugin_name: str,
        detail: str,
        *,
        user_message: str = "Something went wrong. Check bot logs for details.",
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.plugin_name = plugin_name
        self.detail = detail
        self.user_message = user_message
        super().__init__(
            f"plugin '{plugin_name}' failed: {detail}",
            category=category,
            module=module or "dispatcher",
            **context,
        )


class InvocationTimeout(InvocationError):
    """A plugin did not answer within the configured timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        plugin_name: str,
        timeout: float,
        *,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.plugin_name = plugin_name
        self.timeout = timeout
        super().__init__(
            f"plugin '{plugin_name}' timed out after {timeout}s",
            category=ErrorCategory.TRANSIENT,
            module=module or "dispatcher",
            **context,
        )


class InvocationCancelled(InvocationError):
    """The transport closed the originating session before a response."""

    kind = ErrorKind.CANCELLED

    def __init__(self, plugin_name: str, *, module: Optional[str] = None, **context: Any) -> None:
        self.plugin_name = plugin_name
        super().__init__(
            f"invocation of plugin '{plugin_name}' abandoned",
            module=module or "dispatcher",
            **context,
        )


# ---------------------------------------------------------------------------
# Handler-side exceptions
# ---------------------------------------------------------------------------

class PluginErrorKind(str, Enum):
    """What went wrong inside a plugin."""
    API = "api"
    CONFIG = "config"
    INPUT = "input"
    OTHER = "other"


_PLUGIN_USER_MESSAGES = {
    PluginErrorKind.API: "A plugin API request failed. Check bot logs for details.",
    PluginErrorKind.CONFIG: "Plugin configuration error. Check bot logs for details.",
    PluginErrorKind.INPUT: "That command needs different input. Check /help.",
    PluginErrorKind.OTHER: "Something went wrong. Check bot logs for details.",
}


class PluginError(HomewireError):
    """Raised by a plugin to report a typed failure.

    The full message stays in server-side logs; callers only ever see
    the category text from user_message.
    """

    def __init__(
        self,
        message: str = "",
        *,
        kind: PluginErrorKind = PluginErrorKind.OTHER,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.kind = kind
        super().__init__(
            message, category=category, module=module or "plugins", **context
        )

    @property
    def user_message(self) -> str:
        """Safe, category-based message suitable for the chat platform."""
        return _PLUGIN_USER_MESSAGES[self.kind]
