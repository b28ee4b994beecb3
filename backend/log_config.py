import logging
import os
import sys
from pathlib import Path

from loguru import logger

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.environ.get("LOG_FILE", "")

# Noisy third-party loggers and the level they are held at
QUIET_LOGGERS = {
    "apscheduler.executors.default": logging.ERROR,  # misfire warnings
    "apscheduler.scheduler": logging.WARNING,  # job added/removed messages
    "urllib3.connectionpool": logging.WARNING,
}

# Remove default handler
logger.remove()


def add_module_name(record):
    """Ensure every record has module_name in extra."""
    if "module_name" not in record["extra"]:
        record["extra"]["module_name"] = f"{record['name']}:{record['line']}"
    return True


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <5}</level> | "
    "<cyan>{extra[module_name]}</cyan> - {message}"
)

logger.add(
    sys.stderr,
    format=LOG_FORMAT,
    level=LOG_LEVEL,
    colorize=True,
    filter=add_module_name,
)

if LOG_FILE:
    logger.add(
        LOG_FILE,
        format=LOG_FORMAT,
        level=LOG_LEVEL,
        filter=add_module_name,
        rotation="1 day",
        retention="7 days",
    )


# Intercept standard logging
class InterceptHandler(logging.Handler):
    def emit(self, record):
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # core.agile modules log through logging.getLogger(__name__)
        if record.name == "root":
            module_name = record.module
        elif "." in record.name:
            module_name = record.name
        else:
            module_name = Path(record.pathname).stem

        logger.bind(module_name=f"{module_name}:{record.lineno}").opt(
            exception=record.exc_info
        ).log(level, record.getMessage())


# Configure standard logging to use Loguru
logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

for name, level in QUIET_LOGGERS.items():
    logging.getLogger(name).setLevel(level)

# Replace all existing loggers with Loguru
for name in list(logging.root.manager.loggerDict.keys()):
    if name not in QUIET_LOGGERS:
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True
