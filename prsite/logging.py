"""Root logger setup for prsite.

What each level shows:
- ERROR: unexpected failures in handlers and loops
- WARNING: failed builds, undeliverable comments, rejected deliveries
- INFO: instance lifecycle (spawned, running, updated, removed) and commands
- DEBUG: ignored events and scheduling details

Set logging.level / logging.format in config.yaml or LOGGING_LEVEL /
LOGGING_FORMAT in the environment.
"""

import logging

from prsite.config import LoggingConfig

LEVELS = {name: getattr(logging, name) for name in ("DEBUG", "INFO", "WARNING", "ERROR")}

DEFAULT_LEVEL = "INFO"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Per-request connection chatter from requests' transport
NOISY_LOGGERS = ("urllib3",)


def _resolve_level(level: str) -> int:
    """Level constant for a name; unknown names mean INFO."""
    return LEVELS.get(level.strip().upper(), LEVELS[DEFAULT_LEVEL])


class PrsiteLogging:
    """Applies LoggingConfig to the root logger once at startup."""

    def __init__(self, config: LoggingConfig) -> None:
        self.level = _resolve_level(config.level)
        self.format = config.format or DEFAULT_FORMAT

    def setup(self) -> None:
        logging.basicConfig(level=self.level, format=self.format, force=True)
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(self.level, logging.WARNING))

    def get_logger(self, name: str) -> logging.Logger:
        return logging.getLogger(name)
