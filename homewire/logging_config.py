"""Logging configuration for homewire.

structlog renders every event through stdlib handlers, so a record from
aiohttp or asyncio lands in the same files as homewire's own events and
passes through the same scrubbing.

Handler layout (stdlib dotted names, structlog wraps them):
    root                 console
      homewire           homewire.log (every subsystem, combined)
        homewire.bot       bot.log
        homewire.dispatch  dispatch.log
        homewire.plugins   plugins.log
        homewire.security  security.log
        homewire.config    config.log

Events carry sender and recipient ids, upstream URLs and occasionally
error bodies that echo credentials back. ``sanitize_secrets`` runs
before any renderer: identity fields are masked to their last four
characters, and API keys, bearer tokens and credential query parameters
are redacted wherever they appear, including inside nested values.
"""

import logging
import logging.handlers
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import structlog

from .security import mask_id

SUBSYSTEMS = ("bot", "dispatch", "plugins", "security", "config")

LOGGER_PREFIX = "homewire"

DEFAULT_LOG_DIR = Path(__file__).parent.parent / "logs"

# Event keys whose values are user or account ids.
IDENTITY_FIELDS = frozenset(
    {"principal", "sender", "source", "recipient", "owner", "owner_id", "account"}
)

# Keys structlog itself manages; their values are never rewritten.
_PASSTHROUGH = frozenset({"exc_info", "stack_info", "_record", "_from_structlog"})

_REDACTED = "***REDACTED***"

_SECRET_PATTERNS = (
    re.compile(r"sk-ant-[a-zA-Z0-9_-]{20,}"),
    re.compile(r"sk-[a-zA-Z0-9_-]{20,}"),
    re.compile(r"Bearer\s+[a-zA-Z0-9_./-]{20,}"),
    re.compile(r"(?i)X-Api-Key['\"]?\s*[:=]\s*['\"]?[a-f0-9]{16,}"),
    re.compile(r"(?i)X-Plex-Token['\"]?\s*[:=]\s*['\"]?[a-zA-Z0-9_-]{8,}"),
)

# ?apikey=..., &token=..., password=... in URLs and form bodies
_CREDENTIAL_PARAM = re.compile(
    r"(?i)\b(api_?key|token|password|X-Plex-Token)=([^&\s'\"]+)"
)

# E.164 numbers embedded in free text
_PHONE_PATTERN = re.compile(r"\+\d{7,15}")


def _scrub_text(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(_REDACTED, text)
    text = _CREDENTIAL_PARAM.sub(lambda m: f"{m.group(1)}={_REDACTED}", text)
    return _PHONE_PATTERN.sub(lambda m: mask_id(m.group(0)), text)


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _scrub_text(value)
    if isinstance(value, Mapping):
        return {k: _scrub_field(k, v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return type(value)(_scrub(v) for v in value)
    return value


def _scrub_field(key: Any, value: Any) -> Any:
    if key in IDENTITY_FIELDS and value is not None and not isinstance(value, (Mapping, list, tuple)):
        return mask_id(value)
    return _scrub(value)


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor that masks ids and redacts credentials."""
    for key, value in event_dict.items():
        if key in _PASSTHROUGH:
            continue
        event_dict[key] = _scrub_field(key, value)
    return event_dict


@dataclass
class LogSettings:
    """Resolved logging options; defaults apply before config loads."""

    log_dir: Path = DEFAULT_LOG_DIR
    level: str = "INFO"
    subsystem_levels: Dict[str, str] = field(default_factory=dict)
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    cache_loggers: bool = False

    @classmethod
    def from_config(cls, config) -> "LogSettings":
        return cls(
            log_dir=Path(config.log_dir),
            level=str(config.logging_level),
            subsystem_levels=dict(config.logging_subsystem_levels or {}),
            max_bytes=int(config.logging_max_file_size_mb) * 1024 * 1024,
            backup_count=int(config.logging_backup_count),
            cache_loggers=True,
        )

    def level_for(self, subsystem: Optional[str] = None) -> int:
        root = _level(self.level, logging.INFO)
        if subsystem is None:
            return root
        return _level(self.subsystem_levels.get(subsystem), root)


def _level(name: Any, default: int) -> int:
    if not name:
        return default
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


# Shared by homewire events and foreign stdlib records.
_SHARED_PROCESSORS = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
    sanitize_secrets,
]


def _formatter(colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
    )


def _rotating_handler(path: Path, level: int, settings: LogSettings) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(_formatter(colors=False))
    return handler


def setup_logging(config=None) -> None:
    """Configure structlog and the stdlib handler tree.

    Called twice by main: once with no config so startup errors are
    visible, then again with the loaded Config, which also turns on
    ``cache_logger_on_first_use``. Each call replaces the handlers the
    previous one installed.

    If the log directory can't be created, logging continues on the
    console only and a ``log_dir_unavailable`` warning is emitted.
    """
    settings = LogSettings.from_config(config) if config is not None else LogSettings()
    root_level = settings.level_for()

    dir_error = None
    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        dir_error = exc

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(root_level)
    console.setFormatter(_formatter(colors=sys.stdout.isatty()))
    root_logger.addHandler(console)

    files = {LOGGER_PREFIX: ("homewire.log", root_level)}
    for subsystem in SUBSYSTEMS:
        files[f"{LOGGER_PREFIX}.{subsystem}"] = (
            f"{subsystem}.log",
            settings.level_for(subsystem),
        )

    for name, (filename, level) in files.items():
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.setLevel(logging.DEBUG if name == LOGGER_PREFIX else level)
        stdlib_logger.handlers.clear()
        stdlib_logger.propagate = True
        if dir_error is None:
            stdlib_logger.addHandler(
                _rotating_handler(settings.log_dir / filename, level, settings)
            )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=settings.cache_loggers,
    )

    if dir_error is not None:
        structlog.get_logger(f"{LOGGER_PREFIX}.config").warning(
            "log_dir_unavailable",
            log_dir=str(settings.log_dir),
            error=str(dir_error),
        )
