import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(source)s] %(message)s"


class SourceFilter(logging.Filter):
    """Fill in %(source)s for records logged without extra={"source": ...}."""

    def __init__(self, default: str = "-"):
        super().__init__()
        self.default = default

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "source"):
            record.source = self.default
        return True


def setup_logging(level="INFO", log_path: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger("arraycal")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(SourceFilter())
        logger.addHandler(handler)

    if log_path:
        add_file_handler(logger, log_path)

    return logger


def add_file_handler(logger: logging.Logger, log_path: str) -> None:
    handler = logging.FileHandler(log_path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(SourceFilter())
    logger.addHandler(handler)
