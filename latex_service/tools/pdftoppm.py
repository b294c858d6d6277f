"""pdftoppm invocation — first page of a PDF to one PNG or JPEG."""

from __future__ import annotations

import os
from pathlib import Path

from latex_service.tools.subprocess_runner import (
    DEFAULT_MAX_OUTPUT,
    FORCE_KILL_DELAY,
    ProcessResult,
    run_process,
)

THUMBNAIL_TIMEOUT = 30.0

MEDIA_TYPES: dict[str, str] = {"png": "image/png", "jpeg": "image/jpeg"}
_EXTENSIONS: dict[str, str] = {"png": ".png", "jpeg": ".jpg"}


def build_pdftoppm_args(pdf_path: str, output_prefix: str, *, fmt: str, width: int) -> list[str]:
    return [
        "-png" if fmt == "png" else "-jpeg",
        "-f", "1",
        "-l", "1",
        "-singlefile",
        "-scale-to-x", str(width),
        "-scale-to-y", "-1",
        pdf_path,
        output_prefix,
    ]


def thumbnail_path(output_prefix: Path, fmt: str) -> Path:
    """File pdftoppm ``-singlefile`` writes for ``output_prefix``."""
    return output_prefix.with_name(output_prefix.name + _EXTENSIONS[fmt])


async def run_pdftoppm(
    pdf_path: str | os.PathLike[str],
    output_prefix: str | os.PathLike[str],
    *,
    fmt: str = "png",
    width: int = 800,
    cwd: str | os.PathLike[str] | None = None,
    timeout: float = THUMBNAIL_TIMEOUT,
    max_output: int = DEFAULT_MAX_OUTPUT,
    grace_period: float = FORCE_KILL_DELAY,
) -> ProcessResult:
    args = build_pdftoppm_args(os.fspath(pdf_path), os.fspath(output_prefix), fmt=fmt, width=width)
    return await run_process(
        "pdftoppm",
        args,
        cwd=cwd,
        timeout=timeout,
        max_output=max_output,
        grace_period=grace_period,
    )
