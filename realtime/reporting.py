"""
Error reporting capability.

Every client instance owns its own reporter; nothing here is process-wide.
"""

import logging
from typing import Any, Dict, Optional, Protocol


logger = logging.getLogger(__name__)


class ErrorReporter(Protocol):
    """Side channel for failures that must not propagate to the caller."""

    def report_error(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        ...


class LoggingErrorReporter:
    """Default reporter writing to a :mod:`logging` logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def report_error(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        error = (context or {}).get("error")
        if error is not None:
            self.log.error(f"{message}: {error}")
        else:
            self.log.error(message)
