import sys

from loguru import logger

from config import Settings


def setup_logging(settings: Settings) -> None:
    """configure loguru sinks: stderr always, rotated file when log_file is set."""
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="1 day",
            retention="7 days",
            level=settings.log_level,
            encoding="utf-8",
        )

    logger.info("Referral earnings engine logging configured")
