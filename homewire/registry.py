"""Plugin registration, command resolution, and lifecycle management.

The registry is built once at startup from the merged configuration:
every known plugin factory is visited in a fixed order, plugins whose
configuration section is absent are skipped, and the rest are
constructed and registered. After freeze() the registry is read-only
and safe to share between concurrent invocations.
"""

import re
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from .exceptions import ConfigurationError, DuplicateCommand, UnknownCommand
from .plugin_base import CapabilityDescriptor, HomewirePlugin

logger = structlog.get_logger("homewire.plugins")

PluginFactory = Callable[[Mapping], HomewirePlugin]

COMMAND_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*( [a-z][a-z0-9_-]*)*$")


class PluginRegistry:
    """Owns every constructed plugin and maps command names to them."""

    def __init__(self):
        self.plugins: List[HomewirePlugin] = []
        self._commands: Dict[str, Tuple[HomewirePlugin, CapabilityDescriptor]] = {}
        self._frozen = False

    def register(self, plugin: HomewirePlugin) -> None:
        """Add a constructed plugin and claim its command names.

        All of the plugin's descriptors are checked before any is
        stored, so a rejected plugin leaves the registry unchanged.

        Raises:
            DuplicateCommand: A name is already owned, or repeated
                within the plugin's own descriptors.
            ConfigurationError: A command name is malformed.
            RuntimeError: The registry was already frozen.
        """
        if self._frozen:
            raise RuntimeError("Registry is frozen; plugins can't be added after startup")

        plugin_name = plugin.name or type(plugin).__name__
        descriptors = tuple(plugin.describe())
        seen = set()
        for descriptor in descriptors:
            if not COMMAND_NAME_PATTERN.match(descriptor.name):
                raise ConfigurationError(
                    f"invalid command name '{descriptor.name}'",
                    setting_name=plugin_name,
                    module="registry",
                )
            if descriptor.name in seen:
                raise DuplicateCommand(descriptor.name, plugin=plugin_name)
            seen.add(descriptor.name)
            existing = self._commands.get(descriptor.name)
            if existing is not None:
                owner = existing[0]
                logger.error(
                    "plugin_command_conflict",
                    command=descriptor.name,
                    plugin=plugin_name,
                    owner=owner.name,
                )
                raise DuplicateCommand(
                    descriptor.name, plugin=plugin_name, owner=owner.name
                )

        self.plugins.append(plugin)
        for descriptor in descriptors:
            self._commands[descriptor.name] = (plugin, descriptor)

        logger.info(
            "plugin_registered",
            plugin=plugin_name,
            version=plugin.version,
            commands=[d.name for d in descriptors],
        )

    def freeze(self) -> None:
        """Make the registry read-only."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, command: str) -> HomewirePlugin:
        """Return the plugin owning a command.

        Raises:
            UnknownCommand: No plugin declared this name.
        """
        entry = self._commands.get(command)
        if entry is None:
            raise UnknownCommand(command)
        return entry[0]

    def descriptor(self, command: str) -> CapabilityDescriptor:
        """Return the descriptor for a command.

        Raises:
            UnknownCommand: No plugin declared this name.
        """
        entry = self._commands.get(command)
        if entry is None:
            raise UnknownCommand(command)
        return entry[1]

    def all_descriptors(self) -> List[CapabilityDescriptor]:
        """Every registered descriptor, in registration order."""
        return [descriptor for _, descriptor in self._commands.values()]

    @property
    def command_names(self) -> frozenset:
        """All registered command names."""
        return frozenset(self._commands.keys())

    async def start_all(self) -> None:
        """Call on_start() on all registered plugins."""
        for plugin in self.plugins:
            try:
                await plugin.on_start()
                logger.info("plugin_started", plugin=plugin.name)
            except Exception as e:
                logger.error(
                    "plugin_start_failed",
                    plugin=plugin.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def stop_all(self) -> None:
        """Call on_stop() on all registered plugins (reverse order)."""
        for plugin in reversed(self.plugins):
            try:
                await plugin.on_stop()
                logger.info("plugin_stopped", plugin=plugin.name)
            except Exception as e:
                logger.error(
                    "plugin_stop_failed",
                    plugin=plugin.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )


def build_registry(
    plugin_sections: Mapping[str, Optional[Mapping]],
    factories: Sequence[Tuple[str, PluginFactory]],
) -> PluginRegistry:
    """Construct and register every configured plugin, then freeze.

    Factories are visited in the given order, so duplicate detection
    and advertised command order are the same on every run. A plugin
    whose section is missing (or None) is never constructed.

    Raises:
        DuplicateCommand: Two plugins claim the same command name.
        ConfigurationError: A present section fails validation.
    """
    registry = PluginRegistry()
    for plugin_name, factory in factories:
        section = plugin_sections.get(plugin_name)
        if section is None:
            logger.info("plugin_skipped_unconfigured", plugin=plugin_name)
            continue
        if not isinstance(section, Mapping):
            raise ConfigurationError(
                f"[{plugin_name}] section must be a mapping",
                setting_name=plugin_name,
            )
        plugin = factory(section)
        registry.register(plugin)

    registry.freeze()
    logger.info(
        "plugin_registry_complete",
        plugins_loaded=len(registry.plugins),
        commands=len(registry.command_names),
    )
    return registry


def default_factories() -> List[Tuple[str, PluginFactory]]:
    """Built-in plugins in their fixed registration order."""
    from .plugins import BUILTIN_PLUGINS

    return [(plugin_cls.name, plugin_cls.from_section) for plugin_cls in BUILTIN_PLUGINS]
