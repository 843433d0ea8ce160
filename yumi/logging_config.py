"""Logging configuration for yumi.

Every event goes to the console, to the combined ``yumi.log`` and to the
file of the subsystem that emitted it:

    root              → console
      └─ yumi         → yumi.log
           ├─ yumi.bot           → bot.log
           ├─ yumi.dispatch      → dispatch.log
           ├─ yumi.continuations → continuations.log
           ├─ yumi.commands      → commands.log
           ├─ yumi.transport     → transport.log
           └─ yumi.security      → security.log

Phone numbers and user JIDs never reach a handler unmasked: call sites
shorten them with ``mask_id`` and the ``sanitize_identifiers`` processor
catches whatever slips through.
"""

import logging
import logging.handlers
import re
import sys
from pathlib import Path
from typing import Any, Dict, NamedTuple

import structlog

SUBSYSTEMS = ("bot", "dispatch", "continuations", "commands", "transport", "security")

ROOT_LOGGER = "yumi"

_DEFAULT_LOG_DIR = Path(__file__).parent.parent / "logs"

_REDACTED = "***REDACTED***"
_BEARER_PATTERN = re.compile(r"Bearer\s+[a-zA-Z0-9_./-]{16,}")
# User part of a WhatsApp JID, optionally with a device suffix.
# Group ids ("1203630...@g.us") are not personal and stay intact.
_JID_USER_PATTERN = re.compile(r"\b(\d{7,15})(?::\d+)?@(s\.whatsapp\.net|c\.us|lid)\b")
_PHONE_PATTERN = re.compile(r"\+\d{7,15}")


def mask_id(value: str) -> str:
    """Short form of a user identifier for log fields ("...1234")."""
    digits = re.sub(r"[^\d]", "", value.split("@", 1)[0].split(":", 1)[0])
    return "..." + (digits[-4:] if digits else value[-4:])


def _mask_text(text: str) -> str:
    text = _BEARER_PATTERN.sub(_REDACTED, text)
    text = _JID_USER_PATTERN.sub(lambda m: f"...{m.group(1)[-4:]}@{m.group(2)}", text)
    return _PHONE_PATTERN.sub(lambda m: "..." + m.group(0)[-4:], text)


def _mask(value: Any) -> Any:
    if isinstance(value, str):
        return _mask_text(value)
    if isinstance(value, (list, tuple)):
        return type(value)(_mask(v) for v in value)
    if isinstance(value, dict):
        return {k: _mask(v) for k, v in value.items()}
    return value


def sanitize_identifiers(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor masking phone numbers and bearer tokens.

    Strings are searched inside lists, tuples and dicts at any depth.
    Numbers keep their last 4 digits, the same shape ``mask_id`` produces.
    """
    for key, value in event_dict.items():
        event_dict[key] = _mask(value)
    return event_dict


class _LogSettings(NamedTuple):
    log_dir: Path
    level: int
    subsystem_levels: Dict[str, int]
    max_bytes: int
    backup_count: int
    cache_loggers: bool


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default) if name else default


def _settings_from(config) -> _LogSettings:
    """Settings for the bootstrap call (no config yet) or the real one."""
    if config is None:
        return _LogSettings(_DEFAULT_LOG_DIR, logging.INFO, {}, 10 * 1024 * 1024, 5, False)
    level = _level(config.logging_level, logging.INFO)
    return _LogSettings(
        log_dir=config.log_dir,
        level=level,
        subsystem_levels={
            name: _level(config.logging_subsystem_levels.get(name), level) for name in SUBSYSTEMS
        },
        max_bytes=config.logging_max_file_size_mb * 1024 * 1024,
        backup_count=config.logging_backup_count,
        cache_loggers=True,
    )


def _reset(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers.clear()
    return logger


def setup_logging(config=None) -> None:
    """Configure structlog and the per-subsystem log files.

    Called twice by ``main``: once with no config so startup messages
    are visible, then with the loaded Config, at which point structlog
    starts caching loggers.

    If the log directory cannot be created, only the console handler is
    installed and the bot keeps running.
    """
    settings = _settings_from(config)

    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        write_files = True
    except OSError as exc:
        print(
            f"WARNING: Cannot create log directory {settings.log_dir}: {exc}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        write_files = False

    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )

    def attach_file(logger: logging.Logger, filename: str, level: int) -> None:
        if not write_files:
            return
        handler = logging.handlers.RotatingFileHandler(
            settings.log_dir / filename,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        handler.setLevel(level)
        handler.setFormatter(file_formatter)
        logger.addHandler(handler)

    # Handlers do the level filtering for the root and the yumi parent
    root = _reset("", logging.DEBUG)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(settings.level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(console)

    attach_file(_reset(ROOT_LOGGER, logging.DEBUG), "yumi.log", settings.level)

    for subsystem in SUBSYSTEMS:
        level = settings.subsystem_levels.get(subsystem, settings.level)
        attach_file(_reset(f"{ROOT_LOGGER}.{subsystem}", level), f"{subsystem}.log", level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sanitize_identifiers,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=settings.cache_loggers,
    )
