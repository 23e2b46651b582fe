"""Shared utility functions."""

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("deployinfra")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl in [
        ("boto3", logging.INFO),
        ("botocore", logging.WARNING),
        ("urllib3", logging.WARNING),
        ("s3transfer", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def ensure_trailing_dot(name: str) -> str:
    """Route 53 stores fully qualified names with a trailing dot."""
    return name if name.endswith(".") else f"{name}."


def strip_trailing_dot(name: str) -> str:
    return name.removesuffix(".")


def httpsify(url: str) -> str:
    """Rewrite a bare host or http URL as an https URL.

    :param url: Host name or URL, e.g. 'example.com' or 'http://example.com'
    :return: URL with https scheme
    """
    if url.startswith("https://"):
        return url
    return "https://" + url.removeprefix("http://")


def dedup(*items: str) -> list[str]:
    """Trim items and drop blanks and repeats, keeping first-seen order."""
    seen = set()
    uniq = []
    for item in items:
        trimmed = item.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        uniq.append(trimmed)
    return uniq
