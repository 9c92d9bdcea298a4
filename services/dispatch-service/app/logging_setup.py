import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_LEVEL = "INFO"


def configure_logging(service_name: str) -> None:
    """Configure the root logger for console output."""
    level_name = (os.getenv("LOG_LEVEL") or DEFAULT_LOG_LEVEL).strip().strip('"').upper()
    level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=[logging.StreamHandler()],
        force=True,
    )
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger(__name__).info("logging configured for %s at %s", service_name, logging.getLevelName(level))
