#Description: Loguru configuration for engine logging (stdout plus optional rotating file).

from loguru import logger
import sys

LOG_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level}</level> | <cyan>{name}</cyan> | {message}"

def configure_logging(level: str = "INFO", log_file: str | None = None):
    logger.remove()
    logger.add(sys.stdout, level=level, colorize=True, format=LOG_FORMAT)
    if log_file:
        # enqueue: feed threads and the order lane log concurrently
        logger.add(log_file, level=level, rotation="10 MB", retention=5, enqueue=True, format=LOG_FORMAT)
    return logger

configure_logging()
