"""Logging setup built on loguru."""

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <7}</level> | "
    "<cyan>{extra[module]}</cyan> | {message}"
)


def setup_logging(level: str = "INFO"):
    """Replaces loguru's default sink with a stderr sink at `level`."""
    logger.remove()
    # records logged without bind() still need extra["module"] for the format
    logger.configure(extra={"module": "kinect_cloud"})
    logger.add(sys.stderr, level=str(level).upper(), format=LOG_FORMAT)


def get_logger(name: str):
    return logger.bind(module=name)
