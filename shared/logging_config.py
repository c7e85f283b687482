"""
Logging configuration for MSSP services.

One line format for the API service, the maintenance scheduler and the
helper scripts: ``[time] [COMPONENT] LEVEL - message``. Chatty library
loggers (HTTP connection pool, SQL echo) stay at WARNING unless the
component runs at DEBUG.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Loggers that flood INFO with per-request / per-statement lines
LIBRARY_LOGGERS = ("urllib3", "sqlalchemy.engine", "sqlalchemy.pool")


def resolve_level(level: Union[int, str]) -> int:
    """Accept either a logging constant or a level name like 'debug'."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def component_format(component_name: str) -> str:
    return f'[%(asctime)s] [{component_name.upper()}] %(levelname)s - %(message)s'


def _has_file_handler(logger: logging.Logger, path: Path) -> bool:
    target = str(path.resolve())
    return any(
        isinstance(h, logging.FileHandler) and h.baseFilename == target
        for h in logger.handlers
    )


def setup_logging(
    component_name: str,
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None
) -> logging.Logger:
    """
    Configure logging for an MSSP component.

    Safe to call more than once: the root stream handler comes from
    basicConfig (a no-op once configured, e.g. under uvicorn or pytest)
    and a log file gets at most one handler.

    Args:
        component_name: Component identifier (e.g., 'mssp', 'scheduler')
        level: Logging level, as a constant or a name ('INFO', 'debug', ...)
        log_file: Optional file path for log output
        format_string: Custom format string (default: component_format)

    Returns:
        The component logger
    """
    level = resolve_level(level)
    format_string = format_string or component_format(component_name)
    formatter = logging.Formatter(format_string, datefmt=DATE_FORMAT)

    logging.basicConfig(
        level=level,
        format=format_string,
        datefmt=DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    root = logging.getLogger()
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if not _has_file_handler(root, log_path):
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)
    logger.info(f"{component_name.upper()} logging initialized (level={logging.getLevelName(level)})")
    return logger
