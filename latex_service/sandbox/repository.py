"""Reading a cloned repository back out of its workspace.

All functions are synchronous filesystem work; the orchestrator runs them
through ``asyncio.to_thread``. Symlinks are only followed when they point at a
regular file inside the clone; symlinked directories are never entered.
"""

from __future__ import annotations

import base64
import hashlib
import os
from collections.abc import Callable
from pathlib import Path

import structlog

from latex_service.config import Limits
from latex_service.models.errors import RepositoryTooLarge
from latex_service.models.schemas import RepositoryFile, TreeEntry

logger = structlog.get_logger().bind(component="sandbox.repository")

BINARY_EXTENSIONS = frozenset({
    ".pdf", ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".tiff", ".tif", ".ico", ".webp",
    ".eps", ".ps", ".svg", ".zip", ".tar", ".gz", ".7z", ".rar",
    ".exe", ".dll", ".so", ".dylib",
    ".mp3", ".mp4", ".avi", ".mov", ".wav",
    ".ttf", ".otf", ".woff", ".woff2", ".eot",
})

SKIPPED_DIRS = frozenset({".git"})


def is_binary_file(path: str) -> bool:
    return Path(path).suffix.lower() in BINARY_EXTENSIONS


def encode_content(rel_path: str, content: bytes) -> RepositoryFile:
    """Text files as UTF-8, everything else (by extension or content) as base64."""
    if not is_binary_file(rel_path):
        try:
            return RepositoryFile(path=rel_path, content=content.decode("utf-8"), encoding="utf-8")
        except UnicodeDecodeError:
            pass
    return RepositoryFile(
        path=rel_path,
        content=base64.b64encode(content).decode("ascii"),
        encoding="base64",
    )


def _regular_file_inside(root: Path, entry: os.DirEntry) -> bool:
    if not entry.is_symlink():
        return entry.is_file(follow_symlinks=False)
    real_root = os.path.realpath(root)
    real = os.path.realpath(entry.path)
    return real.startswith(real_root + os.sep) and os.path.isfile(real)


def collect_files(
    root: Path,
    start: Path | None = None,
    *,
    limits: Limits,
    include: Callable[[str], bool] | None = None,
) -> list[RepositoryFile]:
    """Every (matching) file under ``start``, paths relative to ``root``.

    Files over the per-resource cap are skipped. Exceeding the repository byte
    or file-count cap aborts with :class:`RepositoryTooLarge`.
    """
    files: list[RepositoryFile] = []
    total_size = 0

    def walk(directory: Path, depth: int) -> None:
        nonlocal total_size
        if depth > limits.max_repo_depth:
            logger.warning("max_depth_exceeded", depth=depth, limit=limits.max_repo_depth)
            return

        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)

        for entry in entries:
            if entry.name in SKIPPED_DIRS:
                continue
            rel_path = Path(entry.path).relative_to(root).as_posix()

            if entry.is_dir(follow_symlinks=False):
                walk(Path(entry.path), depth + 1)
                continue
            if not _regular_file_inside(root, entry):
                continue
            if include is not None and not include(rel_path):
                continue

            size = entry.stat().st_size
            if size > limits.max_resource_bytes:
                logger.info("large_file_skipped", path=rel_path, size=size)
                continue

            content = Path(entry.path).read_bytes()

            total_size += len(content)
            if total_size > limits.max_repo_bytes:
                raise RepositoryTooLarge(
                    "Repository content too large",
                    limit=limits.max_repo_bytes,
                    observed=total_size,
                )
            if len(files) + 1 > limits.max_repo_files:
                raise RepositoryTooLarge(
                    "Too many files in repository",
                    limit=limits.max_repo_files,
                    observed=len(files) + 1,
                )
            files.append(encode_content(rel_path, content))

    walk(start or root, 0)
    return files


def selective_filter(
    extensions: list[str] | None,
    paths: list[str] | None,
) -> tuple[Callable[[str], bool], set[str]]:
    """Predicate matching any of ``extensions`` or exactly one of ``paths``."""
    wanted_ext = {
        (e if e.startswith(".") else f".{e}").lower() for e in (extensions or []) if e
    }
    wanted_paths = {p.lstrip("/") for p in (paths or []) if p}

    def include(rel_path: str) -> bool:
        return Path(rel_path).suffix.lower() in wanted_ext or rel_path in wanted_paths

    return include, wanted_paths


def list_tree(root: Path, directory: Path, prefix: str | None) -> list[TreeEntry]:
    """One directory level, ``.git`` hidden."""
    entries: list[TreeEntry] = []
    with os.scandir(directory) as it:
        for entry in sorted(it, key=lambda e: e.name):
            if entry.name in SKIPPED_DIRS:
                continue
            path = f"{prefix.rstrip('/')}/{entry.name}" if prefix else entry.name
            kind = "dir" if entry.is_dir(follow_symlinks=False) else "file"
            entries.append(TreeEntry(name=entry.name, path=path, type=kind))
    return entries


def git_blob_hash(content: bytes) -> str:
    """SHA-1 object id git assigns to a blob with this content."""
    header = f"blob {len(content)}\0".encode()
    return hashlib.sha1(header + content).hexdigest()
