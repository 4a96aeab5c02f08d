"""
Layout engine interface.

An engine consumes a hierarchical ELK-format JSON graph (nodes with sizes,
option bags, ports and nested children; edges with sources/targets) and
returns the same structure annotated with positions relative to the
parent node, compound sizes, and orthogonal edge sections.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class LayoutEngine(ABC):
    """Abstract base class for layered layout engines."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Engine name ('elk', 'layered')."""
        ...

    @abstractmethod
    async def layout(self, graph: dict[str, Any]) -> dict[str, Any]:
        """Compute a layout for an ELK JSON graph.

        Raises:
            LayoutEngineError: if the engine fails or rejects the graph.
        """
        ...

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the engine's runtime dependencies are present."""
        ...
