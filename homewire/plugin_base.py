"""Plugin base class and types for homewire extensibility.

A plugin is an independently configured, independently failing unit
that owns one or more commands. It describes its commands with
CapabilityDescriptor values and answers Invocation objects with a
Response. Plugins never see the registry, the dispatcher or each other.

Key classes:
    ParameterType / CommandParameter: Typed command parameters.
    CapabilityDescriptor: Static metadata for one command.
    Invocation: One realized command request with bound arguments.
    Response: Success payload or structured failure, one per invocation.
    HomewirePlugin: Abstract base every handler implements.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type, Union

import structlog
from pydantic import BaseModel, ValidationError

from .exceptions import BadRequest, ConfigurationError, ErrorKind

_TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
_FALSE_WORDS = frozenset({"false", "no", "off", "0"})


class ParameterType(str, Enum):
    """Value types a command parameter can take."""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class CommandParameter:
    """One typed parameter of a command.

    Attributes:
        name: Parameter name, unique within its command.
        type: Expected value type.
        description: Help text shown to the user.
        required: Whether the invocation must supply it.
        rest: When bound from free text, take every remaining word.
    """
    name: str
    type: ParameterType = ParameterType.STRING
    description: str = ""
    required: bool = True
    rest: bool = False

    def coerce(self, value: Any) -> Any:
        """Convert a supplied value to this parameter's type.

        Raises:
            BadRequest: If the value can't be represented as the type.
        """
        try:
            if self.type is ParameterType.STRING:
                if not isinstance(value, (str, int, float)) or isinstance(value, bool):
                    raise ValueError(type(value).__name__)
                return str(value)
            if self.type is ParameterType.INTEGER:
                if isinstance(value, bool) or isinstance(value, float):
                    raise ValueError(value)
                return int(value)
            if self.type is ParameterType.NUMBER:
                if isinstance(value, bool):
                    raise ValueError(value)
                return float(value)
            if isinstance(value, bool):
                return value
            word = str(value).strip().lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
            raise ValueError(value)
        except (TypeError, ValueError):
            article = "an" if self.type.value[0] in "aeiou" else "a"
            raise BadRequest(
                f"'{self.name}' must be {article} {self.type.value}",
                parameter=self.name,
            ) from None


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Static description of one command a plugin exposes.

    Attributes:
        name: Command name, globally unique (e.g. "sonarr search").
        description: One-line help text.
        parameters: Ordered parameters the command accepts.
    """
    name: str
    description: str = ""
    parameters: Tuple[CommandParameter, ...] = ()

    @property
    def usage(self) -> str:
        """Usage line, e.g. ``/sonarr search <title>``."""
        parts = [f"/{self.name}"]
        for param in self.parameters:
            parts.append(f"<{param.name}>" if param.required else f"[{param.name}]")
        return " ".join(parts)

    def bind(self, arguments: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate named arguments against the parameters and coerce them.

        Raises:
            BadRequest: Unknown parameter, missing required parameter,
                or a value of the wrong type.
        """
        known = {param.name: param for param in self.parameters}
        unknown = sorted(set(arguments) - set(known))
        if unknown:
            if unknown[0].startswith("_extra_"):
                raise BadRequest("too many arguments", command=self.name)
            raise BadRequest(f"unexpected argument '{unknown[0]}'", command=self.name)

        bound: Dict[str, Any] = {}
        for param in self.parameters:
            value = arguments.get(param.name)
            if value is None or (isinstance(value, str) and not value.strip()):
                if param.required:
                    raise BadRequest(f"missing '{param.name}'", command=self.name)
                continue
            bound[param.name] = param.coerce(value)
        return bound

    def bind_positional(self, words: List[str]) -> Dict[str, str]:
        """Map whitespace-split words onto parameters in declaration order.

        A ``rest`` parameter swallows every remaining word. Extra words
        after the last parameter are kept under the next free index name
        so that bind() can reject them.
        """
        raw: Dict[str, str] = {}
        remaining = list(words)
        for param in self.parameters:
            if not remaining:
                break
            if param.rest:
                raw[param.name] = " ".join(remaining)
                remaining = []
            else:
                raw[param.name] = remaining.pop(0)
        if remaining:
            raw[f"_extra_{len(raw)}"] = " ".join(remaining)
        return raw


@dataclass(frozen=True)
class Invocation:
    """One command request: command name, caller, bound arguments."""
    command: str
    principal: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.arguments.get(name, default)


@dataclass(frozen=True)
class Response:
    """Outbound answer to an invocation.

    Exactly one is produced per invocation. ``error`` is None on success.
    """
    ok: bool
    content: str
    error: Optional[ErrorKind] = None
    retryable: bool = False
    plugin: Optional[str] = None

    @classmethod
    def success(cls, content: str, *, plugin: Optional[str] = None) -> "Response":
        return cls(ok=True, content=content, plugin=plugin)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        content: str,
        *,
        retryable: bool = False,
        plugin: Optional[str] = None,
    ) -> "Response":
        return cls(ok=False, content=content, error=kind, retryable=retryable, plugin=plugin)


HandlerResult = Union[Response, str]


class HomewirePlugin(ABC):
    """Base class for all homewire plugins.

    Subclasses set ``name`` and implement describe() and
    handle_invocation(). A plugin is built from its own configuration
    section only; ``settings_model`` (a pydantic model) validates that
    section in from_section().

    One instance serves every concurrent invocation of its commands,
    so a plugin that keeps mutable state must lock it itself.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    version: ClassVar[str] = "1.0.0"
    settings_model: ClassVar[Optional[Type[BaseModel]]] = None

    def __init__(self, settings: Any = None):
        self.settings = settings
        self.logger = structlog.get_logger("homewire.plugins").bind(plugin=self.name)

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> "HomewirePlugin":
        """Construct the plugin from its configuration section.

        Raises:
            ConfigurationError: If the section doesn't match settings_model.
        """
        if cls.settings_model is None:
            return cls(dict(section))
        try:
            settings = cls.settings_model.model_validate(dict(section))
        except ValidationError as e:
            raise ConfigurationError(
                f"invalid [{cls.name}] section: {e.errors()[0]['msg']}",
                setting_name=cls.name,
            ) from e
        return cls(settings)

    @abstractmethod
    def describe(self) -> Tuple[CapabilityDescriptor, ...]:
        """Return the commands this plugin owns. Must be side-effect free."""
        ...

    @abstractmethod
    async def handle_invocation(self, invocation: Invocation) -> HandlerResult:
        """Handle one invocation of a command returned by describe().

        Return a Response or a plain string (shorthand for success).
        Raise PluginError for failures the user should see a category for.
        """
        ...

    async def on_start(self) -> None:
        """Called once after the registry is built. Acquire resources here."""
        pass

    async def on_stop(self) -> None:
        """Called during shutdown. Release resources here."""
        pass

