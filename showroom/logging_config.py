import logging
from datetime import datetime, timezone

LOG_FORMAT = "%(asctime)sZ | %(levelname)s | %(name)s | %(message)s"

# chatty at DEBUG, and per-job lines are what we want to read
QUIET_LOGGERS = ("urllib3", "asyncio", "httpx")


def setup_logging(level: str = "INFO"):
    logging.basicConfig(level=(level or "INFO").upper(), format=LOG_FORMAT)
    logging.Formatter.converter = lambda *args: datetime.now(timezone.utc).timetuple()
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
