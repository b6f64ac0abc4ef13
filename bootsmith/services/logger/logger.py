"""Process wide logging, configured once from the `logging` section of config.yaml."""

import logging.config

from bootsmith.config.config import config
from bootsmith.models.models import LogLevel

LOGGER_CONFIG = dict(config.get("logging"))
logging.config.dictConfig(LOGGER_CONFIG)


class MainLogger:
    """Hands out named loggers sharing the root handlers from config.yaml"""

    @classmethod
    def get_logger(cls, service_name: str = "MAIN", log_level: str | None = "DEBUG") -> logging.Logger:
        """
        Get the logger for one service.
        Args:
            service_name(str): Logger name, shown in every record.
            log_level(str | None): Level name, unknown names fall back to DEBUG.
                None leaves the level inherited from the root logger.
        """
        _logger = logging.getLogger(service_name)
        if log_level:
            _logger.setLevel(LogLevel(log_level).value)
        return _logger
