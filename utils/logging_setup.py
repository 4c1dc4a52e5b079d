import logging
from typing import Optional

from utils.settings import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)
    # Driver libraries are chatty at DEBUG.
    logging.getLogger("psycopg").setLevel(logging.WARNING)
    logging.getLogger("pymysql").setLevel(logging.WARNING)
