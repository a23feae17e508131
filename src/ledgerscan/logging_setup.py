import sys

from loguru import logger


def setup_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a single stderr sink at `level`."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {name}:{line} - {message}",
    )
