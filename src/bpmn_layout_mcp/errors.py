"""
Exception hierarchy for the layout pipeline.
"""

from __future__ import annotations


class LayoutError(Exception):
    """Base class for fatal layout failures."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ScopeError(LayoutError):
    """Raised before any mutation when the layout scope is invalid."""


class LayoutEngineError(LayoutError):
    """Raised when the external layout engine fails or rejects a graph."""
