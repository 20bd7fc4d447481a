# src/StationKrigPy/logs.py
# SPDX-License-Identifier: MIT
"""
Logger setup and warning policy.

All modules log through children of the ``StationKrigPy`` logger; nothing
here touches the root logger, so embedding applications keep control of
their own handlers.
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Optional

LOGGER_NAME = "StationKrigPy"


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the package logger or one of its children."""
    if not name or name == LOGGER_NAME:
        return logging.getLogger(LOGGER_NAME)
    if name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def setup_logger(
    log_file: Optional[str] = None,
    log_level: str = "INFO",
) -> logging.Logger:
    """
    Configure the package logger with a console handler and, optionally, an
    append-mode file handler.

    Parameters
    ----------
    log_file : str, optional
        Path of the log file. Parent directories are created on demand.
    log_level : str
        Level name for the logger and console handler.

    Returns
    -------
    logging.Logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logger.setLevel(level)

    # re-configuring must not stack handlers
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path, mode="a", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(fh)

    logger.propagate = False
    return logger


def set_warning_policy(silence: bool = True) -> None:
    """
    Control library warnings raised during fitting and kriging.

    Parameters
    ----------
    silence : bool
        If True, silence pandas FutureWarnings, scipy ``OptimizeWarning``
        (covariance could not be estimated on tiny variograms) and the
        ``UserWarning``/``RuntimeWarning`` chatter PyKrige emits on small
        daily samples.
    """
    warnings.resetwarnings()
    if not silence:
        return

    warnings.filterwarnings("ignore", category=FutureWarning)
    warnings.filterwarnings("ignore", category=UserWarning, module=r"pykrige(\..*)?")
    warnings.filterwarnings("ignore", category=RuntimeWarning, module=r"pykrige(\..*)?")

    from scipy.optimize import OptimizeWarning

    warnings.filterwarnings("ignore", category=OptimizeWarning)
