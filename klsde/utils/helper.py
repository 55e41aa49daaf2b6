import logging
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(log_file: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """
    Send log records to the console and, optionally, to ``log_file``.

    Existing root handlers are removed first so repeated calls (one per
    experiment) do not duplicate output.
    """
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
        handler.close()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        handlers.insert(0, logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)
    return logging.getLogger('klsde')


# Helper function for logging
def logprint(message):
    """Log message to both file and console."""
    logging.info(message)
