#Description: Process entry point. Builds the app context, restores pending work and runs until signalled.

import signal
import threading

from utils.config import settings
from utils.context import build_app_context
from utils.logging import configure_logging, logger


def main():
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    ctx = build_app_context(settings)
    done = threading.Event()

    def _shutdown(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down")
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        ctx.start()
        done.wait()
    finally:
        ctx.stop()


if __name__ == "__main__":
    main()
