import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Optional

# Every agent process gets its own log file; the supervisor sets
# ``AGENT_LOG_FILE`` in the child's environment before spawning it.
LOG_FILE = os.getenv("AGENT_LOG_FILE", os.path.join("logs", "fib_agent.log"))


class _NoiseFilter(logging.Filter):
    """Drop repetitive HTTP connection-pool chatter."""

    DROP_PREFIXES = (
        "Starting new HTTPS connection",
        "Resetting dropped connection",
        "Connection pool is full",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not message.startswith(self.DROP_PREFIXES)


_NOISE_FILTER = _NoiseFilter()


def setup_logger(name: str) -> logging.Logger:
    """Configure and return a module-level logger.

    Logs are written to both console and a rotating file to persist
    information for debugging. Subsequent calls with the same name
    return the already configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_NOISE_FILTER)
    logger.addHandler(console_handler)
    try:
        directory = os.path.dirname(LOG_FILE)
        if directory:
            os.makedirs(directory, exist_ok=True)
        # Rotating file handler keeps last 5 logs of ~1MB each
        file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5)
    except OSError:
        logger.warning("Log file %s unavailable; logging to console only", LOG_FILE)
    else:
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_NOISE_FILTER)
        logger.addHandler(file_handler)
    return logger


def read_logs(tail: int = 100, path: Optional[str] = None) -> str:
    """Return the last ``tail`` lines from the log file.

    If the log file does not exist, an empty string is returned.
    """
    target = path or LOG_FILE
    if not os.path.exists(target):
        return ""
    with open(target, "r") as f:
        lines = f.readlines()
    if tail <= 0:
        return "".join(lines)
    return "".join(lines[-tail:])
