"""Configuration management for homewire.

Loads the YAML settings file and the ``.env`` file next to it, applies
environment-variable overrides, and exposes typed property accessors.
The path comes from the HOMEWIRE_CONFIG environment variable and
defaults to ``<repo_root>/config/settings.yaml``.

Overrides are named ``HOMEWIRE_<SECTION>_<KEY>`` and only take effect
when ``<section>`` already exists in the file and the variable is not
empty. That keeps a stray variable from enabling a plugin whose
section was deliberately left out.

Key classes:
    Config: Merged, read-only settings for one process.
"""

import os
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

import structlog
import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError, MissingOwnerConfig

logger = structlog.get_logger("homewire.config")

CONFIG_PATH_ENV = "HOMEWIRE_CONFIG"
ENV_PREFIX = "HOMEWIRE_"
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "settings.yaml"

# Sections owned by the core rather than by a plugin
CORE_SECTIONS = frozenset({"signal", "dispatch", "logging"})


def default_config_path() -> Path:
    """Config path from HOMEWIRE_CONFIG, falling back to the repo default."""
    configured = os.environ.get(CONFIG_PATH_ENV)
    if configured:
        return Path(configured).expanduser()
    return DEFAULT_CONFIG_PATH


def apply_env_overrides(settings: dict, environ: Mapping[str, str]) -> List[str]:
    """Overlay HOMEWIRE_<SECTION>_<KEY> variables onto existing sections.

    Mutates settings in place.

    Returns:
        Dotted names of the settings that were overridden.
    """
    applied = []
    for section_name, section in settings.items():
        if not isinstance(section, dict):
            continue
        prefix = f"{ENV_PREFIX}{str(section_name).upper()}_"
        for var, value in environ.items():
            if not var.startswith(prefix) or not value:
                continue
            key = var[len(prefix):].lower()
            if not key:
                continue
            section[key] = value
            applied.append(f"{section_name}.{key}")
    return sorted(applied)


class Config:
    """Central configuration for one homewire process.

    Read-only after __init__; every accessor derives from ``settings``.

    Args:
        config_path: YAML file to load. Defaults to default_config_path().
        environ: Environment used for overrides. Defaults to os.environ.

    Raises:
        ConfigurationError: The file is missing, unreadable, not YAML,
            or not a mapping at the top level.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config_path = Path(config_path) if config_path else default_config_path()
        self.config_dir = self.config_path.parent

        env_file = self.config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = self._load_yaml(self.config_path)
        overridden = apply_env_overrides(
            self.settings, os.environ if environ is None else environ
        )
        if overridden:
            logger.info("config_env_overrides_applied", settings=overridden)

    @classmethod
    def from_dict(
        cls, settings: dict, environ: Optional[Mapping[str, str]] = None
    ) -> "Config":
        """Build a Config from an in-memory mapping (no file, no .env)."""
        config = cls.__new__(cls)
        config.config_path = None
        config.config_dir = None
        config.settings = dict(settings)
        apply_env_overrides(config.settings, environ or {})
        return config

    @staticmethod
    def _load_yaml(filepath: Path) -> dict:
        """Load the YAML settings file."""
        if not filepath.exists():
            raise ConfigurationError(f"config file not found: {filepath}")
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"cannot read {filepath}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{filepath} must contain a mapping at the top level")
        return data

    def _section(self, name: str) -> dict:
        section = self.settings.get(name)
        return section if isinstance(section, dict) else {}

    def validate(self) -> None:
        """Check the settings the core cannot run without.

        Raises:
            MissingOwnerConfig: signal.owner_id is absent or empty.
            ConfigurationError: Any other core setting is malformed.
        """
        for name in CORE_SECTIONS:
            value = self.settings.get(name)
            if value is not None and not isinstance(value, dict):
                raise ConfigurationError(
                    f"[{name}] section must be a mapping", setting_name=name
                )
        _ = self.owner_id
        _ = self.invocation_timeout

    @property
    def owner_id(self) -> str:
        """The single authorized principal (phone number or UUID)."""
        owner = self._section("signal").get("owner_id")
        if owner is None or not str(owner).strip():
            raise MissingOwnerConfig()
        return str(owner).strip()

    @property
    def signal_api_url(self) -> str:
        """Signal REST API base URL (default http://127.0.0.1:8080)."""
        return self._section("signal").get("api_url") or "http://127.0.0.1:8080"

    @property
    def signal_account(self) -> Optional[str]:
        """Bot account number; None means use the first registered account."""
        return self._section("signal").get("account") or None

    @property
    def invocation_timeout(self) -> float:
        """Seconds a plugin may take per invocation (default 30)."""
        raw = self._section("dispatch").get("timeout", 30)
        try:
            timeout = float(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"dispatch.timeout must be a number, got {raw!r}",
                setting_name="dispatch.timeout",
            ) from None
        if timeout <= 0:
            raise ConfigurationError(
                "dispatch.timeout must be positive", setting_name="dispatch.timeout"
            )
        return timeout

    def plugin_sections(self, plugin_names: Iterable[str]) -> Dict[str, Optional[dict]]:
        """Map each plugin name to its settings section, or None if absent."""
        sections: Dict[str, Optional[dict]] = {}
        for name in plugin_names:
            if name in CORE_SECTIONS:
                raise ConfigurationError(
                    f"plugin name '{name}' clashes with a core section", setting_name=name
                )
            sections[name] = self.settings.get(name)
        return sections

    @property
    def log_dir(self) -> Path:
        """Log directory path."""
        configured = self._section("logging").get("dir")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "logs"

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        return str(self._section("logging").get("level", "INFO"))

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"dispatch": "DEBUG"}."""
        levels = self._section("logging").get("subsystem_levels", {})
        return levels if isinstance(levels, dict) else {}

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        return int(self._section("logging").get("max_file_size_mb", 10))

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        return int(self._section("logging").get("backup_count", 5))
