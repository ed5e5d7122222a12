"""Logging configuration driven by the ``[global]`` config section."""
from __future__ import annotations

from pathlib import Path
import logging

from .config_loader import GlobalConfig

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"


def configure_logging(config: GlobalConfig | None, *, verbose: bool = False, root: Path | None = None) -> None:
    """Install console (and optional file) handlers on the root logger.

    Calling it again replaces the handlers installed by the previous call.
    """

    level_name = "debug" if verbose else (config.log_level if config else "info")
    level = getattr(logging, level_name.upper(), logging.INFO)

    logger = logging.getLogger()
    for handler in list(logger.handlers):
        if getattr(handler, "_depforge", False):
            logger.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    console._depforge = True  # type: ignore[attr-defined]
    logger.addHandler(console)

    if config is not None and config.log_file:
        path = Path(config.log_file).expanduser()
        if not path.is_absolute() and root is not None:
            path = root / path
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler._depforge = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.setLevel(level)


__all__ = ["configure_logging"]
