"""
ELK layout engine via elkjs.

Runs a persistent Node.js worker (``elk_worker.js``) and talks to it over a
line-delimited JSON protocol with request ids:

    request:  {"id": "...", "graph": {...}}
    response: {"id": "...", "result": {...}}  or  {"id": "...", "error": "..."}

The blocking pipe exchange runs in the default executor so the event loop
stays free while ELK computes.
"""

from __future__ import annotations

import asyncio
import atexit
import glob
import json
import logging
import os
import subprocess
import threading
import uuid
from pathlib import Path
from typing import Any, Optional

from bpmn_layout_mcp.engines.base import LayoutEngine
from bpmn_layout_mcp.errors import LayoutEngineError

logger = logging.getLogger(__name__)

WORKER_SCRIPT = Path(__file__).parent / "elk_worker.js"


class ELKWorkerManager:
    """Owns one long-running Node.js worker process.

    Requests are serialised through a lock: the worker answers strictly in
    order, one line per request.
    """

    def __init__(self, node_path: str, worker_script: Path, timeout: int = 30) -> None:
        self._node_path = node_path
        self._worker_script = worker_script
        self._timeout = timeout
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def _start_worker(self) -> subprocess.Popen:
        if self._process is not None and self._process.poll() is None:
            return self._process
        logger.debug("Starting ELK worker process")
        self._process = subprocess.Popen(
            [self._node_path, str(self._worker_script)],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
            cwd=self._worker_script.parent,
        )
        logger.info("ELK worker started (PID: %s)", self._process.pid)
        return self._process

    def _exchange(self, request_line: str) -> dict[str, Any]:
        with self._lock:
            process = self._start_worker()
            try:
                process.stdin.write(request_line)
                process.stdin.flush()
            except (BrokenPipeError, OSError) as exc:
                logger.warning("ELK worker pipe broken: %s, restarting", exc)
                self._process = None
                process = self._start_worker()
                process.stdin.write(request_line)
                process.stdin.flush()

            response_line = process.stdout.readline()
            if not response_line:
                stderr = process.stderr.read() if process.poll() is not None else ""
                self._process = None
                raise LayoutEngineError(f"ELK worker closed unexpectedly {stderr.strip()}".strip())
            return json.loads(response_line)

    async def request(self, graph: dict[str, Any]) -> dict[str, Any]:
        """Send one graph and wait for its layout.

        Raises:
            LayoutEngineError: on timeout, worker failure or an ELK error.
        """
        request_id = str(uuid.uuid4())
        request_line = json.dumps({"id": request_id, "graph": graph}) + "\n"

        loop = asyncio.get_running_loop()
        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(None, self._exchange, request_line),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("ELK request %s timed out after %ss", request_id, self._timeout)
            self.shutdown()
            raise LayoutEngineError(f"ELK layout timed out after {self._timeout}s") from exc

        if "error" in response:
            raise LayoutEngineError(f"ELK layout failed: {response['error']}")
        if response.get("id") != request_id:
            logger.warning("Response ID mismatch: expected %s, got %s", request_id, response.get("id"))
        return response.get("result", {})

    def shutdown(self) -> None:
        """Terminate the worker process, if running."""
        process = self._process
        self._process = None
        if process is None:
            return
        logger.debug("Shutting down ELK worker")
        try:
            process.stdin.close()
            process.terminate()
            process.wait(timeout=5)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("Error shutting down ELK worker: %s", exc)
            process.kill()

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None


# Shared across ElkLayoutEngine instances
_worker_manager: Optional[ELKWorkerManager] = None
_worker_lock = threading.Lock()


def _cleanup_worker() -> None:
    if _worker_manager is not None:
        _worker_manager.shutdown()


atexit.register(_cleanup_worker)


def find_node(explicit: Optional[str] = None) -> Optional[str]:
    """Locate a Node.js executable (``ELK_NODE_PATH`` first)."""
    candidates = [p for p in (explicit, os.environ.get("ELK_NODE_PATH")) if p]
    candidates += ["node", "/usr/bin/node", "/usr/local/bin/node"]
    candidates += sorted(glob.glob(os.path.expanduser("~/.nvm/versions/node/*/bin/node")), reverse=True)
    for path in candidates:
        try:
            result = subprocess.run([path, "--version"], capture_output=True, text=True, timeout=5)
        except (subprocess.SubprocessError, OSError):
            continue
        if result.returncode == 0:
            return path
    return None


class ElkLayoutEngine(LayoutEngine):
    """elkjs 'layered' algorithm through a persistent Node.js worker."""

    def __init__(
        self,
        node_path: Optional[str] = None,
        worker_script: Optional[Path] = None,
        timeout: int = 30,
    ) -> None:
        self._node_path = node_path
        self._worker_script = worker_script or WORKER_SCRIPT
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "elk"

    def _resolve_node(self) -> str:
        if self._node_path is None:
            self._node_path = find_node()
        if self._node_path is None:
            raise LayoutEngineError("Node.js not found. Install Node.js and elkjs to use the ELK engine.")
        return self._node_path

    def _get_worker(self) -> ELKWorkerManager:
        global _worker_manager
        with _worker_lock:
            if _worker_manager is None:
                _worker_manager = ELKWorkerManager(self._resolve_node(), self._worker_script, self._timeout)
            return _worker_manager

    async def is_available(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._check_elkjs)

    def _check_elkjs(self) -> bool:
        node = self._node_path or find_node()
        if node is None:
            return False
        check = "try { require('elkjs'); console.log('ok'); } catch (e) { console.log('missing'); }"
        try:
            result = subprocess.run(
                [node, "-e", check],
                capture_output=True,
                text=True,
                timeout=5,
                cwd=self._worker_script.parent,
            )
        except (subprocess.SubprocessError, OSError) as exc:
            logger.warning("ELK availability check failed: %s", exc)
            return False
        return result.stdout.strip() == "ok"

    async def layout(self, graph: dict[str, Any]) -> dict[str, Any]:
        return await self._get_worker().request(graph)
