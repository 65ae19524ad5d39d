"""
Logging configuration. Rather than having every module look up its own
logger, a single LoggingConfig is built at startup and handed to each
component, which asks it for a named logger.
"""

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Self

ROOT_LOGGER = "sqsh"
DEFAULT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def parse_level(level: str | int) -> int:
    """
    Convert a level name (e.g., "debug") or number to a logging level.

    :param level: the level name or number

    :returns: the numeric level

    :raises ValueError: if the name isn't a known level
    """
    if isinstance(level, int):
        return level

    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {level}")
    return numeric


@dataclass
class LoggingConfig:
    """
    The logging settings for one shell instance.
    """

    level: str | int = "WARNING"
    log_file: Path | None = None
    format: str = DEFAULT_FORMAT
    root: str = ROOT_LOGGER
    _configured: bool = field(default=False, init=False, repr=False)

    def configure(self: Self) -> None:
        """
        Install the handlers on the root sqsh logger. Safe to call more than
        once; only the first call has an effect.
        """
        if self._configured:
            return

        root = logging.getLogger(self.root)
        root.setLevel(parse_level(self.level))

        handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
        if self.log_file is not None:
            handlers.append(logging.FileHandler(self.log_file))

        for handler in root.handlers[:]:
            root.removeHandler(handler)

        for handler in handlers:
            handler.setFormatter(logging.Formatter(self.format))
            root.addHandler(handler)

        # Don't double-report through the global root logger.
        root.propagate = False
        self._configured = True

    def logger(self: Self, component: str | None = None) -> logging.Logger:
        """
        Get the logger for a component.

        :param component: the component name (e.g., "session"), or None for
            the root sqsh logger
        """
        if not component:
            return logging.getLogger(self.root)
        return logging.getLogger(f"{self.root}.{component}")

    def set_level(self: Self, component: str | None, level: str | int) -> None:
        """
        Change the level of a component's logger.

        :param component: the component, or None for all of sqsh
        :param level: the new level name or number

        :raises ValueError: if the level is invalid
        """
        self.logger(component).setLevel(parse_level(level))
