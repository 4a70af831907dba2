"""
Exception hierarchy for the insights engine.

Insufficient data is never an exception: every query returns None / an
empty result tagged `insufficient`.  Only caller contract breaches
(corrupt entries, bad configuration) propagate to the host.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

log = logging.getLogger("exceptions")


class InsightsEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v!r}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({ctx})"


class EngineContractError(InsightsEngineError):
    """The host broke the input contract (unsortable or corrupt entries).

    Fails the whole invocation; never swallowed inside the engine.
    """

    def __init__(
        self,
        message: str,
        index: Optional[int] = None,
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = dict(context or {})
        if index is not None:
            ctx["index"] = index
        if field is not None:
            ctx["field"] = field
        super().__init__(message, ctx)
        self.index = index
        self.field = field
        log.error("Entry contract violation: %s", self)


class ConfigurationError(InsightsEngineError):
    """An engine setting could not be parsed."""
