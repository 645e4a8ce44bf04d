"""Logging for the tenantgate-policy tool.

The tool prints documents and decisions on stdout, so its log records go to
stderr on a logger of their own that does not propagate to the root logger.
"""

import logging
import sys
from typing import Optional, TextIO

_policy_logger: Optional[logging.Logger] = None


class Logger:
    """Configures the ``tenantgate-policy`` logger."""

    POLICY_LOGGER_FORMAT = r"%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
    POLICY_LOGGER_DATEFMT = r"%Y-%m-%d %H:%M:%S"

    def __init__(self, verbose: bool = False, stream: TextIO = sys.stderr):
        global _policy_logger

        if _policy_logger is None:
            _policy_logger = logging.getLogger("tenantgate-policy")
            _policy_logger.propagate = False

        self._logger = _policy_logger
        self._verbose = verbose
        self.setStream(stream)

    def setStream(self, stream: TextIO) -> None:
        handler = logging.StreamHandler(stream)
        if self._verbose:
            # only verbose records carry timestamps
            handler.setFormatter(logging.Formatter(fmt=self.POLICY_LOGGER_FORMAT, datefmt=self.POLICY_LOGGER_DATEFMT))
            self._logger.setLevel(logging.DEBUG)
        else:
            self._logger.setLevel(logging.INFO)
        self._logger.handlers = [handler]

    def logger(self) -> logging.Logger:
        return self._logger
