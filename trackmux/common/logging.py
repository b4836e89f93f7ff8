"""Shared logging helpers."""

import logging
from typing import Union


def configure_logging(*, level: Union[int, str] = logging.INFO, force: bool = False) -> None:
    """Initialise the root logger once.

    Mirrors ``logging.basicConfig`` with a terse service format. Pass
    ``force=True`` to reconfigure from tests or alternative entry points.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )
