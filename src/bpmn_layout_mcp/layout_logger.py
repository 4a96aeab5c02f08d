"""
Per-step timing and movement records for a layout run.

Entries are always recorded so callers and tests can inspect them.
Emission through the ``bpmn_layout_mcp.layout`` logger happens only when
``BPMN_LAYOUT_DEBUG`` is set to ``1`` or ``true``.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from bpmn_layout_mcp.models import DiagramModel
from bpmn_layout_mcp.options import debug_enabled

logger = logging.getLogger("bpmn_layout_mcp.layout")

# Moves at or below this many pixels are not counted
DELTA_THRESHOLD = 1

PositionSnapshot = dict[str, tuple[float, float]]


def snapshot_positions(model: DiagramModel) -> PositionSnapshot:
    return {el.id: (el.x, el.y) for el in model.all() if not el.is_connection}


def count_moved(model: DiagramModel, before: PositionSnapshot) -> int:
    moved = 0
    for el_id, (x, y) in before.items():
        el = model.get(el_id)
        if el is None:
            continue
        if abs(el.x - x) > DELTA_THRESHOLD or abs(el.y - y) > DELTA_THRESHOLD:
            moved += 1
    return moved


@dataclass
class LayoutLogEntry:
    step: str
    duration_ms: float
    notes: list[str] = field(default_factory=list)
    moved_count: Optional[int] = None


class LayoutLogger:
    """Collects one entry per pipeline step."""

    def __init__(self, pipeline_name: str) -> None:
        self.pipeline_name = pipeline_name
        self.entries: list[LayoutLogEntry] = []
        self._start = time.perf_counter()
        self._current: Optional[LayoutLogEntry] = None
        self._debug = debug_enabled()

    @contextmanager
    def step(
        self,
        name: str,
        model: Optional[DiagramModel] = None,
    ) -> Iterator[LayoutLogEntry]:
        """Time a step; with *model*, also count the shapes it moved."""
        before = snapshot_positions(model) if model is not None else None
        entry = LayoutLogEntry(step=name, duration_ms=0.0)
        self._current = entry
        started = time.perf_counter()
        try:
            yield entry
            if before is not None:
                entry.moved_count = count_moved(model, before)
                if entry.moved_count:
                    entry.notes.append(f"delta: {entry.moved_count} elements moved")
        finally:
            entry.duration_ms = (time.perf_counter() - started) * 1000
            self.entries.append(entry)
            self._current = None
            if self._debug:
                suffix = f" - {'; '.join(entry.notes)}" if entry.notes else ""
                logger.debug("[%s] %s %.1fms%s", self.pipeline_name, name, entry.duration_ms, suffix)

    def note(self, context: str, message: str) -> None:
        if self._current is not None:
            self._current.notes.append(message)
        elif self._debug:
            logger.debug("[%s] %s: %s", self.pipeline_name, context, message)

    def finish(self) -> float:
        total = (time.perf_counter() - self._start) * 1000
        if self._debug:
            logger.debug("%s complete: %.1fms total, %d steps", self.pipeline_name, total, len(self.entries))
        return total

    def step_names(self) -> list[str]:
        return [e.step for e in self.entries]
