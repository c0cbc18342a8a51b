import logging
import os

from rich.logging import RichHandler


class PaddedNameFormatter(logging.Formatter):
    """Pads logger names to the widest name seen so far so messages line up."""

    widest_name = 18

    def format(self, record):
        PaddedNameFormatter.widest_name = max(
            PaddedNameFormatter.widest_name, len(record.name)
        )
        record.padded_name = record.name.ljust(PaddedNameFormatter.widest_name)
        return super().format(record)


def _resolve_level() -> int:
    name = os.getenv("LOG_LEVEL", "").strip().upper()
    level = logging.getLevelName(name) if name else None
    if isinstance(level, int):
        return level
    return logging.DEBUG if os.getenv("DEBUG") else logging.INFO


def get_logger(name=None) -> logging.Logger:
    """
    Returns a logger writing through a RichHandler.

    Handlers are attached once per logger name, so calling this at import time
    from every module is cheap.
    """
    logger = logging.getLogger(name or "dataservice")
    level = _resolve_level()
    logger.setLevel(level)

    if not logger.handlers:
        handler = RichHandler(
            show_time=True,
            show_level=True,
            show_path=False,
            rich_tracebacks=True,
            log_time_format="[%X]",
        )
        handler.setFormatter(PaddedNameFormatter("[%(padded_name)s]  %(message)s"))
        handler.setLevel(level)
        logger.addHandler(handler)
        logger.propagate = False

    return logger
