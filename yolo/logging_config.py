"""Logging for YOLO mode.

structlog renders events; stdlib logging routes them. Every subsystem
logger propagates to the combined ``yolo`` logger and then to the
console, so an event lands in three places::

    root                 console
      yolo               logs/yolo.log   (combined audit trail)
        yolo.loop        logs/loop.log
        yolo.pipeline    logs/pipeline.log
        yolo.deploy      logs/deploy.log
        yolo.approval    logs/approval.log
        yolo.state       logs/state.log
        yolo.notify      logs/notify.log

Secrets are scrubbed by the ``sanitize_secrets`` processor before any
renderer sees them.
"""

import logging
import logging.handlers
import re
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Set

import structlog

SUBSYSTEMS = ("loop", "pipeline", "deploy", "approval", "state", "notify")
LOGGER_PREFIX = "yolo"

_REDACTED = "***REDACTED***"

_SECRET_PATTERNS = [
    re.compile(r"sk-[a-zA-Z0-9_-]{20,}"),
    # GitHub personal/OAuth/app tokens
    re.compile(r"gh[pousr]_[A-Za-z0-9]{20,}"),
    re.compile(r"hooks\.slack\.com/services/[A-Za-z0-9/_-]+"),
    re.compile(r"xox[abpr]-[A-Za-z0-9-]{10,}"),
    re.compile(r"Bearer\s+[a-zA-Z0-9_./-]{20,}"),
    # user:password@ in URLs; the host stays readable
    re.compile(r"(?<=://)[^/\s:@]+:[^/\s@]+(?=@)"),
]

# Exact values from configuration (e.g. a self-hosted webhook URL)
_registered_secrets: Set[str] = set()


def register_secret(value: Optional[str]) -> None:
    """Redact ``value`` verbatim wherever it appears in a log event."""
    if value and len(value) >= 8:
        _registered_secrets.add(value)


def _scrub(value: str) -> str:
    for secret in _registered_secrets:
        if secret in value:
            value = value.replace(secret, _REDACTED)
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(_REDACTED, value)
    return value


def _scrub_shallow(value: Any) -> Any:
    return _scrub(value) if isinstance(value, str) else value


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor: redact tokens, keys and webhook URLs.

    Strings are scrubbed directly; lists, tuples and dicts one level
    deep (command argv, captured env). Failed-command output tails pass
    through here before reaching a log file.
    """
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _scrub(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = type(value)(_scrub_shallow(v) for v in value)
        elif isinstance(value, dict):
            event_dict[key] = {k: _scrub_shallow(v) for k, v in value.items()}
    return event_dict


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)


def _rotating_handler(
    path: Path, level: int, max_bytes: int, backup_count: int, formatter: logging.Formatter
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _reset_logger(name: str, level: int) -> logging.Logger:
    target = logging.getLogger(name)
    target.setLevel(level)
    target.handlers.clear()
    target.propagate = True
    return target


def setup_logging(config=None) -> None:
    """Configure structlog and the per-subsystem log files.

    Called twice by ``main``: first with no config (defaults, loggers
    not cached) so import-time errors are visible, then with the loaded
    ``Config`` for levels, rotation and the log directory.
    """
    if config is None:
        log_dir = Path.cwd() / "logs"
        root_level = logging.INFO
        subsystem_levels: Dict[str, str] = {}
        max_bytes, backup_count = 10 * 1024 * 1024, 5
    else:
        log_dir = Path(config.log_dir)
        root_level = _level(config.logging_level, logging.INFO)
        subsystem_levels = config.logging_subsystem_levels
        max_bytes = config.logging_max_file_size_mb * 1024 * 1024
        backup_count = config.logging_backup_count
        register_secret(getattr(config, "webhook_url", None))

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        write_files = True
    except OSError as exc:
        # Console-only: the loop must not die because logs/ is read-only
        print(f"WARNING: cannot create log directory {log_dir} ({exc}); "
              "logging to console only", file=sys.stderr)
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

    root = _reset_logger("", logging.DEBUG)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(root_level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(console)

    combined = _reset_logger(LOGGER_PREFIX, logging.DEBUG)
    if write_files:
        combined.addHandler(_rotating_handler(
            log_dir / f"{LOGGER_PREFIX}.log", root_level, max_bytes, backup_count, file_formatter
        ))

    for subsystem in SUBSYSTEMS:
        level = _level(subsystem_levels.get(subsystem), root_level)
        sub_logger = _reset_logger(f"{LOGGER_PREFIX}.{subsystem}", level)
        if write_files:
            sub_logger.addHandler(_rotating_handler(
                log_dir / f"{subsystem}.log", level, max_bytes, backup_count, file_formatter
            ))

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
            sanitize_secrets,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=config is not None,
    )
