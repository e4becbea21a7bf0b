import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("TXSTRESS_LOG_FILE", "/tmp/txstress.log")

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "txstress": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file"],
            "propagate": False, # Keep 'txstress' logs away from the root logger
        },
        # Shut the log levels for libraries up
        "httpx": {
            "level": "WARNING", # Every JSON-RPC call is a request line otherwise
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "websockets": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "uvicorn.access": {
             "level": "WARNING", # Quiets the status API access logs
             "handlers": ["console", "file"],
             "propagate": False,
        },
    },
    # Default for all other loggers
    "root": {
        "level": "WARNING",
        "handlers": ["console", "file"],
    },
}

def setup_logging():
    """ Apply the logging configuration. """
    logging.config.dictConfig(LOGGING_CONFIG)
