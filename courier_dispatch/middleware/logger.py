import logging
import os
import traceback
from logging.handlers import RotatingFileHandler
from colorama import init, Fore, Style

# Initialize colorama for colored console output
init()

QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "hypercorn.access")


class ColoredFormatter(logging.Formatter):
    COLORS = {
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.RED,
        'DEBUG': Fore.CYAN
    }

    def format(self, record):
        record.message = record.getMessage()
        asctime = self.formatTime(record, self.datefmt)
        log_message = f"{asctime} - {record.levelname} - {record.name} - {record.message}"
        if record.exc_info and record.levelno >= logging.ERROR:
            log_message += f"\n{''.join(traceback.format_exception(*record.exc_info))}"
        return f"{self.COLORS.get(record.levelname, '')}{log_message}{Style.RESET_ALL}"


def setup_logger(log_level: str, log_file: str = None):
    level = getattr(logging, log_level.upper(), logging.INFO)
    logger = logging.getLogger()
    logger.setLevel(level)

    # Handlers are attached once per process
    if getattr(logger, "_courier_dispatch_configured", False):
        return logger

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(ColoredFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger._courier_dispatch_configured = True
    return logger
