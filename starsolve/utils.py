"""
Shared utilities for the starsolve engine

This module collects the pieces every other module leans on: logging setup,
the custom exception types, the failure-reason taxonomy returned by the
matcher and the plate solver, and a few small numeric helpers.
"""

import logging
import sys
import time
from contextlib import contextmanager
from enum import Enum
from typing import Optional, Tuple

import numpy as np


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  enable_colors: bool = True) -> logging.Logger:
    """
    Set up logging for the starsolve package.

    Parameters:
    -----------
    level : str, default='INFO'
        Logging level ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
    log_file : str, optional
        Path to log file. If None, only logs to console
    enable_colors : bool, default=True
        Whether to use colored output for console logging

    Returns:
    --------
    logging.Logger
        Configured package logger
    """
    logger = logging.getLogger('starsolve')
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper()))

    fmt = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    if enable_colors and sys.stdout.isatty():
        console_formatter = ColoredFormatter(fmt, datefmt='%H:%M:%S')
    else:
        console_formatter = logging.Formatter(fmt, datefmt='%H:%M:%S')

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        ))
        logger.addHandler(file_handler)

    return logger


class DataValidationError(Exception):
    """Custom exception for data validation errors."""
    pass


class ConfigurationError(Exception):
    """Custom exception for configuration errors."""
    pass


class FailureReason(Enum):
    """Why a match or a plate solve did not produce a result."""

    INSUFFICIENT_DATA = 'insufficient data'
    # A diverged PSF fit is reported as a None result of fit_star
    NUMERIC_DIVERGENCE = 'numeric divergence'
    GEOMETRIC_IMPLAUSIBILITY = 'geometric implausibility'
    MATCH_NOT_FOUND = 'match not found'
    DEGENERATE_TRANSFORM = 'degenerate transform'
    CATALOG_UNAVAILABLE = 'catalog unavailable'
    INVALID_INPUT = 'invalid input'
    CANCELLED = 'cancelled'


@contextmanager
def timing_context(operation_name: str, logger: Optional[logging.Logger] = None):
    """
    Context manager to time operations.

    Parameters:
    -----------
    operation_name : str
        Name of the operation being timed
    logger : logging.Logger, optional
        Logger instance to use for reporting
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.debug(f"Starting {operation_name}")

    try:
        yield
    finally:
        duration = time.time() - start_time
        logger.debug(f"Completed {operation_name} in {duration:.3f} seconds")


def validate_array(arr: np.ndarray,
                   name: str = "Array",
                   ndim: Optional[Tuple[int, ...]] = None,
                   allow_nan: bool = True) -> bool:
    """
    Validate numpy array properties.

    Parameters:
    -----------
    arr : numpy.ndarray
        Array to validate
    name : str, default="Array"
        Name for error messages
    ndim : tuple of int, optional
        Accepted numbers of dimensions
    allow_nan : bool, default=True
        Whether to allow NaN values

    Returns:
    --------
    bool
        True if validation passes

    Raises:
    -------
    DataValidationError
        If validation fails
    """
    if not isinstance(arr, np.ndarray):
        raise DataValidationError(f"{name} must be a numpy array, got {type(arr)}")

    if arr.size == 0:
        raise DataValidationError(f"{name} is empty")

    if ndim is not None and arr.ndim not in ndim:
        raise DataValidationError(f"{name} has {arr.ndim} dimensions, expected one of {ndim}")

    if not allow_nan and np.any(np.isnan(arr)):
        raise DataValidationError(f"{name} contains NaN values")

    return True


def wrap_angle(angle: float, low: float = -180.0, high: float = 180.0) -> float:
    """Wrap an angle in degrees into [low, high]."""
    span = high - low
    while angle < low:
        angle += span
    while angle > high:
        angle -= span
    return angle


def relative_change(new: float, old: float) -> float:
    """Relative difference of two values, absolute when the reference is zero."""
    if old == 0.0:
        return abs(new - old)
    return abs((new - old) / old)
