import logging
import os

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(name: str, log_file: str = None, console_level: int = None, file_level: int = logging.DEBUG):
    """
    Set up a logger with console and optional file handlers.

    The defaults come from the environment so every module can call this at import
    time: ROOMSYNC_LOG_FILE adds a file handler, ROOMSYNC_LOG_LEVEL sets the
    console level.

    Args:
        name (str): Name of the logger.
        log_file (str, optional): Path to the log file. Falls back to ROOMSYNC_LOG_FILE.
            If neither is set, logs are only sent to the console.
        console_level (int, optional): Logging level for the console handler.
            Falls back to ROOMSYNC_LOG_LEVEL, then logging.INFO.
        file_level (int, optional): Logging level for the file handler. Defaults to logging.DEBUG.

    Returns:
        logging.Logger: Configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        # Avoid adding handlers multiple times
        return logger

    if log_file is None:
        log_file = os.environ.get("ROOMSYNC_LOG_FILE") or None
    if console_level is None:
        console_level = logging.getLevelName(os.environ.get("ROOMSYNC_LOG_LEVEL", "INFO").upper())
        if not isinstance(console_level, int):
            console_level = logging.INFO

    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(LOG_FORMAT)

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    # File handler
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)  # Ensure the directory exists
        fh = logging.FileHandler(log_file)
        fh.setLevel(file_level)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger
