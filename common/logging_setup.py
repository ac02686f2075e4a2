"""
common.logging_setup

Set up standard logging for the project.
"""
import logging
from typing import Union


def setup_logging(level: Union[int, str] = logging.INFO):
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    # websockets logs every frame at debug level
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))
