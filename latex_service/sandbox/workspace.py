"""Workspace lifecycle — every ephemeral directory is tracked until removed.

A ``WorkspaceRegistry`` owns a dedicated work root. ``acquire`` creates a
fresh directory under it and records the path; ``release`` removes the
directory and forgets the path. ``workspace()`` / ``run()`` pair the two so a
request can never leave its directory behind, whatever the work does.

Removal failures are logged and swallowed: the path is still de-registered so
shutdown sweeps do not retry it forever. ``sweep`` releases everything still
registered; ``purge_orphans`` clears directories left in the work root by a
previous process that died without sweeping.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
import threading
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TypeVar

import structlog

from latex_service.config import settings

logger = structlog.get_logger().bind(component="sandbox.workspace")

T = TypeVar("T")


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass


class WorkspaceRegistry:
    """Creates, tracks and removes per-request workspaces."""

    def __init__(self, root: str | Path | None = None) -> None:
        root_path = Path(root or settings.work_root)
        root_path.mkdir(parents=True, exist_ok=True)
        self.root = root_path.resolve()
        self._pending: set[Path] = set()
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending(self) -> list[Path]:
        with self._lock:
            return sorted(self._pending)

    def acquire(self, kind: str = "job") -> Path:
        """Create a uniquely named directory and register it."""
        path = Path(tempfile.mkdtemp(prefix=f"{kind}-", dir=self.root))
        with self._lock:
            self._pending.add(path)
        logger.debug("workspace_acquired", workspace=path.name)
        return path

    async def release(self, path: Path) -> bool:
        """Remove ``path`` recursively. Idempotent; never raises.

        Returns ``False`` if the directory could not be removed.
        """
        try:
            await asyncio.to_thread(_remove_tree, path)
        except OSError as e:
            logger.error("workspace_cleanup_failed", workspace=path.name, error=str(e))
            return False
        finally:
            with self._lock:
                self._pending.discard(path)
        logger.debug("workspace_released", workspace=path.name)
        return True

    @asynccontextmanager
    async def workspace(self, kind: str = "job") -> AsyncIterator[Path]:
        path = self.acquire(kind)
        try:
            yield path
        finally:
            await self.release(path)

    async def run(self, work: Callable[[Path], Awaitable[T]], kind: str = "job") -> T:
        """Run ``work`` against a fresh workspace; release is unconditional."""
        async with self.workspace(kind) as path:
            return await work(path)

    async def sweep(self) -> dict[str, int]:
        """Release every registered workspace (graceful shutdown)."""
        paths = self.pending()
        logger.info("workspace_sweep_start", pending=len(paths))
        cleaned = failed = 0
        for path in paths:
            if await self.release(path):
                cleaned += 1
            else:
                failed += 1
        logger.info("workspace_sweep_done", cleaned=cleaned, failed=failed)
        return {"cleaned": cleaned, "failed": failed}

    async def purge_orphans(self) -> dict[str, int]:
        """Remove directories in the work root that this process does not own."""
        owned = set(self.pending())
        orphans = [p for p in self.root.iterdir() if p.is_dir() and p not in owned]
        cleaned = failed = 0
        for path in orphans:
            try:
                await asyncio.to_thread(_remove_tree, path)
                cleaned += 1
            except OSError as e:
                logger.error("orphan_cleanup_failed", workspace=path.name, error=str(e))
                failed += 1
        if orphans:
            logger.info("orphans_purged", cleaned=cleaned, failed=failed)
        return {"cleaned": cleaned, "failed": failed}
