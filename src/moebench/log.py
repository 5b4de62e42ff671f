from __future__ import annotations

import logging

from moebench.config import LoggingSettings


def configure_logging(settings: LoggingSettings, *, level: str | None = None) -> None:
    """
    Install a root handler with the configured format.

    `level` overrides `settings.level` (CLI --loglevel).
    """
    logging.basicConfig(
        level=(level or settings.level).upper(),
        format=settings.format,
        force=True,
    )
    # kazoo is chatty at INFO during connection setup.
    logging.getLogger("kazoo").setLevel(max(logging.WARNING, logging.getLogger().level))
