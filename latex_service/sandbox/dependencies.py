"""Source dependencies of a recorder-mode build.

latexmk ``-recorder`` leaves ``<stem>.fls`` listing every file the engine
opened. Of those we keep the ones that live in the workspace, exist, and are
not build artifacts. Bibliography databases are read by bibtex/biber, not the
engine, so they come from ``\\bibdata`` in ``<stem>.aux`` and
``<bcf:datasource>`` in ``<stem>.bcf``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import structlog

logger = structlog.get_logger().bind(component="sandbox.dependencies")

ARTIFACT_SUFFIXES: tuple[str, ...] = (
    ".aux", ".log", ".fls", ".fdb_latexmk", ".out", ".toc", ".lof", ".lot",
    ".bbl", ".blg", ".bcf", ".run.xml",
)

_BIBDATA = re.compile(r"\\bibdata\{([^}]+)\}")
_DATASOURCE = re.compile(r"<bcf:datasource[^>]*>([^<]+)</bcf:datasource>")


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def _inside(workspace: Path, candidate: Path) -> str | None:
    """Workspace-relative POSIX path of ``candidate`` if it is a file inside the workspace."""
    real_root = os.path.realpath(workspace)
    real = os.path.realpath(candidate)
    if not real.startswith(real_root + os.sep) or not os.path.isfile(real):
        return None
    return Path(os.path.relpath(real, real_root)).as_posix()


def parse_fls(fls_text: str, workspace: Path, target_dir: Path) -> set[str]:
    """Workspace-relative inputs recorded in an ``.fls`` file."""
    pwd = target_dir
    for line in fls_text.splitlines():
        if line.startswith("PWD "):
            pwd = Path(line[4:].strip())
            break

    deps: set[str] = set()
    for line in fls_text.splitlines():
        if not line.startswith("INPUT "):
            continue
        raw = line[6:].strip()
        if raw.endswith(ARTIFACT_SUFFIXES):
            continue
        candidate = Path(raw) if os.path.isabs(raw) else pwd / raw
        rel = _inside(workspace, candidate)
        if rel is not None:
            deps.add(rel)
    return deps


def _bib_name(name: str) -> str:
    name = name.strip()
    return name if name.endswith(".bib") else f"{name}.bib"


def _resolve_bib(name: str, workspace: Path, target_dir: Path) -> str | None:
    bib = _bib_name(name)
    if not bib or os.path.isabs(bib):
        return None
    for base in (workspace, target_dir):
        rel = _inside(workspace, base / bib)
        if rel is not None:
            return rel
    return None


def bibliography_files(aux_text: str | None, bcf_text: str | None, workspace: Path, target_dir: Path) -> set[str]:
    names: list[str] = []
    if aux_text:
        for match in _BIBDATA.finditer(aux_text):
            names += match.group(1).split(",")
    if bcf_text:
        names += [m.group(1) for m in _DATASOURCE.finditer(bcf_text)]

    found: set[str] = set()
    for name in names:
        rel = _resolve_bib(name, workspace, target_dir)
        if rel is not None:
            found.add(rel)
    return found


def collect_dependencies(workspace: Path, target: str) -> list[str]:
    """All source files ``target`` depended on, sorted, relative to ``workspace``."""
    rel_target = Path(target)
    target_dir = workspace / rel_target.parent
    stem = rel_target.stem

    deps: set[str] = set()
    fls = _read(target_dir / f"{stem}.fls")
    if fls:
        deps |= parse_fls(fls, workspace, target_dir)
    deps |= bibliography_files(
        _read(target_dir / f"{stem}.aux"),
        _read(target_dir / f"{stem}.bcf"),
        workspace,
        target_dir,
    )
    logger.debug("dependencies_collected", count=len(deps))
    return sorted(deps)
