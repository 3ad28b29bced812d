import logging

LOGGER_NAME = "issuetrack"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach one stderr handler to the issuetrack logger tree."""
    global _configured
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())
    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        _configured = True
    return logger
