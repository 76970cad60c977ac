import logging
import os


class Logger:
    """Logging setup shared by the supervisors, the adapters and the HTTP surface."""

    FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LEVEL_ENV = "LLAMA_CPP_SERVER_LOG_LEVEL"
    # these log every request at INFO
    CLIENT_LOGGERS = ("httpx", "httpcore", "urllib3")

    @staticmethod
    def level() -> int:
        """Level named by LLAMA_CPP_SERVER_LOG_LEVEL, INFO when unset or unknown."""
        level = logging.getLevelName(os.environ.get(Logger.LEVEL_ENV, "INFO").upper())
        return level if isinstance(level, int) else logging.INFO

    @staticmethod
    def get(name: str) -> logging.Logger:
        if not logging.getLogger().hasHandlers():
            level = Logger.level()
            logging.basicConfig(level=level, format=Logger.FORMAT)
            for client in Logger.CLIENT_LOGGERS:
                logging.getLogger(client).setLevel(max(level, logging.WARNING))
        return logging.getLogger(name)
