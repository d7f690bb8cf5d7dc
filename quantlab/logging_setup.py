from __future__ import annotations

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def configure_logging(
    *,
    level: int | str = logging.INFO,
    log_file: str | None = None,
    console: bool = True,
    quiet: tuple[str, ...] = (),
) -> None:
    """
    Configure the root logger once for a CLI or scheduled run.

    `quiet` lists logger names that are raised to WARNING (e.g. noisy worker loggers
    during a wide screening run).
    """
    handlers: list[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler(stream=sys.stderr))

    if log_file:
        log_file = str(log_file)
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    if not handlers:
        # Never leave logging unconfigured.
        handlers.append(logging.NullHandler())

    logging.basicConfig(level=_resolve_level(level), format=LOG_FORMAT, handlers=handlers, force=True)
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
