"""Layered layout engines (elkjs worker and pure-Python fallback)."""

from __future__ import annotations

import logging
from typing import Optional

from bpmn_layout_mcp.engines.base import LayoutEngine
from bpmn_layout_mcp.engines.elk import ElkLayoutEngine
from bpmn_layout_mcp.engines.layered import LayeredLayoutEngine
from bpmn_layout_mcp.errors import LayoutEngineError
from bpmn_layout_mcp.options import requested_engine

logger = logging.getLogger(__name__)

__all__ = ["LayoutEngine", "ElkLayoutEngine", "LayeredLayoutEngine", "default_engine"]


async def default_engine(name: Optional[str] = None) -> LayoutEngine:
    """Pick the layout engine.

    An explicit *name* (or ``BPMN_LAYOUT_ENGINE``) forces 'elk' or
    'layered'.  Otherwise elkjs is used when Node.js and elkjs are
    installed, else the pure-Python engine.
    """
    choice = (name or requested_engine() or "").lower()
    if choice == "layered":
        return LayeredLayoutEngine()
    elk = ElkLayoutEngine()
    if choice == "elk":
        if not await elk.is_available():
            raise LayoutEngineError("ELK engine requested but Node.js/elkjs is not available")
        return elk
    if choice:
        raise LayoutEngineError(f"Unknown layout engine: {choice}")
    if await elk.is_available():
        return elk
    logger.info("elkjs not available, using the pure-Python layered engine")
    return LayeredLayoutEngine()
