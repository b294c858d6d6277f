"""latexmk invocation.

Two mutually exclusive modes:
  - recorder: ``-recorder`` writes ``<stem>.fls`` so the caller can extract the
    files the build actually read
  - full build: bibtex/biber, makeindex and makeglossaries run only when
    latexmk sees the matching auxiliary files
"""

from __future__ import annotations

import os
from pathlib import Path

import structlog

from latex_service.tools.subprocess_runner import (
    DEFAULT_MAX_OUTPUT,
    FORCE_KILL_DELAY,
    ProcessResult,
    run_process,
)

logger = structlog.get_logger().bind(component="tools.latexmk")

COMPILE_TIMEOUT = 180.0

COMPILER_FLAGS: dict[str, str] = {
    "pdflatex": "-pdf",
    "xelatex": "-xelatex",
    "lualatex": "-lualatex",
}

GLOSSARY_RULE = (
    "add_cus_dep('glo', 'gls', 0, 'makeglossaries'); "
    'sub makeglossaries { system("makeglossaries $_[0]"); }'
)


def build_latexmk_args(compiler: str, target: str, *, recorder: bool = False) -> list[str]:
    """Argument vector for ``latexmk``; ``target`` is relative to the working directory."""
    args = [
        COMPILER_FLAGS[compiler],
        "-interaction=nonstopmode",
        "-file-line-error",
        "-no-shell-escape",
        "-cd",
    ]
    if recorder:
        args.append("-recorder")
    else:
        args += ["-bibtex-cond1", "-makeindex", "-e", GLOSSARY_RULE]
    args.append(target)
    return args


def output_path(workspace: Path, target: str, suffix: str) -> Path:
    """Where latexmk ``-cd`` leaves ``<stem><suffix>`` for ``target``."""
    rel = Path(target)
    return workspace / rel.parent / f"{rel.stem}{suffix}"


async def run_latexmk(
    compiler: str,
    target: str,
    *,
    cwd: str | os.PathLike[str],
    recorder: bool = False,
    timeout: float = COMPILE_TIMEOUT,
    max_output: int = DEFAULT_MAX_OUTPUT,
    grace_period: float = FORCE_KILL_DELAY,
) -> ProcessResult:
    args = build_latexmk_args(compiler, target, recorder=recorder)
    logger.info("latexmk_start", compiler=compiler, target=target, recorder=recorder)
    result = await run_process(
        "latexmk",
        args,
        cwd=cwd,
        timeout=timeout,
        max_output=max_output,
        grace_period=grace_period,
    )
    logger.info(
        "latexmk_done",
        exit_code=result.exit_code,
        timed_out=result.timed_out,
        duration_ms=result.duration_ms,
    )
    return result
