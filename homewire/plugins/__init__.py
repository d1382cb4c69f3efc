"""Built-in homewire plugins.

BUILTIN_PLUGINS is the fixed registration order. A plugin is only
constructed when the settings file has a section named after it.
"""

from .claude import ClaudePlugin
from .health import HealthPlugin
from .plex import PlexPlugin
from .prowlarr import ProwlarrPlugin
from .qbit import QbitPlugin
from .radarr import RadarrPlugin
from .request import RequestPlugin
from .sonarr import SonarrPlugin
from .unraid import UnraidPlugin

BUILTIN_PLUGINS = (
    UnraidPlugin,
    ClaudePlugin,
    SonarrPlugin,
    RadarrPlugin,
    ProwlarrPlugin,
    PlexPlugin,
    QbitPlugin,
    RequestPlugin,
    HealthPlugin,
)

__all__ = [
    "BUILTIN_PLUGINS",
    "ClaudePlugin",
    "HealthPlugin",
    "PlexPlugin",
    "ProwlarrPlugin",
    "QbitPlugin",
    "RadarrPlugin",
    "RequestPlugin",
    "SonarrPlugin",
    "UnraidPlugin",
]
