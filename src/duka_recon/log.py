# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Logging configuration for DukaRecon.

Library modules only create module-level loggers with
``logging.getLogger(__name__)``; the CLI calls `configure_logging` once at
startup with the level read from the configuration.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "WARNING") -> None:
    """Send log records of the `duka_recon` package to stderr."""
    package_logger = logging.getLogger("duka_recon")
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    package_logger.addHandler(handler)
    package_logger.setLevel(level.upper())
    package_logger.propagate = False
