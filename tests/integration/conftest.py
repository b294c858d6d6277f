"""Integration-test conftest — real binaries, real workspaces.

Integration tests require:
    LATEX_SERVICE_TEST_INTEGRATION=1   (set in shell before running)
    latexmk, pdftoppm and git on PATH

Tests marked ``network`` additionally need LATEX_SERVICE_TEST_NETWORK=1.

Run with:
    LATEX_SERVICE_TEST_INTEGRATION=1 pytest tests/integration/ -v
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from latex_service.config import LatexServiceSettings
from latex_service.orchestrator import Orchestrator
from latex_service.sandbox.rate_limit import RateLimiter
from latex_service.sandbox.workspace import WorkspaceRegistry


def require(*binaries: str) -> None:
    missing = [b for b in binaries if shutil.which(b) is None]
    if missing:
        pytest.skip(f"not installed: {', '.join(missing)}")


@pytest.fixture
def integration_settings(tmp_path) -> LatexServiceSettings:
    return LatexServiceSettings(
        _env_file=None,
        work_root=str(tmp_path / "work"),
        latex_service_api_key="",
        compile_timeout=120,
    )


@pytest.fixture
def orchestrator(integration_settings) -> Orchestrator:
    registry = WorkspaceRegistry(integration_settings.work_root)
    return Orchestrator(registry, integration_settings, RateLimiter(1000, 60, 100))


@pytest.fixture
def local_repo(tmp_path) -> Path:
    """A one-commit git repository on disk."""
    require("git")
    repo = tmp_path / "origin"
    (repo / "sections").mkdir(parents=True)
    (repo / "main.tex").write_text(
        "\\documentclass{article}\n"
        "\\begin{document}\n"
        "\\input{sections/intro}\n"
        "\\end{document}\n"
    )
    (repo / "sections" / "intro.tex").write_text("Hello from a repository.\n")

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)

    git("init", "--quiet", "--initial-branch=main")
    git("add", ".")
    git(
        "-c", "user.name=Test",
        "-c", "user.email=test@example.com",
        "commit", "--quiet", "-m", "Initial commit",
    )
    return repo


@pytest.fixture
def tools():
    """``tools("latexmk", "pdftoppm")`` skips the test unless all are on PATH."""
    return require
