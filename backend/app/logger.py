import logging
import os
import sys

from .config import LOG_DIR


def setup_logger(name="dispatch", log_file="dispatch.log"):
    """
    Configures the root dispatch loggers to write to the console, and to a file
    when LOG_DIR is set.
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    # Check if handlers are already added to avoid duplicate logs
    if not logger.handlers:
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

        if LOG_DIR:
            os.makedirs(LOG_DIR, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(LOG_DIR, log_file))
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
