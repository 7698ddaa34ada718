#!/usr/bin/env python3
"""Run the deflection job processor standalone, without the API."""

import signal
import sys
import os
import threading
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

import structlog

from deflection.database import init_db
from deflection.logs import configure_logging
from deflection.workers.base import build_processor

logger = structlog.get_logger()


def main():
    configure_logging()
    init_db()
    processor = build_processor()
    stopped = threading.Event()

    def _shutdown(signum, frame):
        logger.info("processor_signal_received", signal=signum)
        stopped.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    processor.start()
    stopped.wait()
    processor.stop()


if __name__ == "__main__":
    main()
