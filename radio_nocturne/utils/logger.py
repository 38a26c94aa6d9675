import sys
from loguru import logger
from pathlib import Path
from typing import Optional

_active: Optional[tuple] = None

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {thread.name} | {name}:{function}:{line} - {message}"


def setup_logger(log_level: str = "INFO", log_file: Optional[Path] = None):
    """Configure loguru sinks; repeated calls with the same arguments are no-ops.

    Story text is streamed to stdout, so console logging always goes to stderr.
    The file sink records the worker thread name so background passes can be
    told apart from foreground ones.
    """
    global _active

    key = (log_level.upper(), str(log_file) if log_file else None)
    if _active == key:
        return logger

    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=key[0], colorize=True)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
            encoding="utf-8",
            enqueue=True,
        )

    _active = key
    return logger
