"""Unit-test conftest — FakeRunner, sandbox fixtures and settings overrides.

All fixtures here are available to every test under tests/unit/ without import.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from latex_service.config import LatexServiceSettings, Limits
from latex_service.sandbox.rate_limit import RateLimiter
from latex_service.sandbox.workspace import WorkspaceRegistry
from latex_service.tools.subprocess_runner import ProcessResult


# ─────────────────────────────────────────────────────────────────────────────
# FakeRunner: drop-in replacement for run_process
# ─────────────────────────────────────────────────────────────────────────────

class FakeRunner:
    """Records every invocation and returns a scripted ``ProcessResult``.

    Args:
        result:   Returned from each call (default: exit 0, empty output).
        effect:   Optional callable ``(program, args, cwd) -> None`` run before
                  returning; use it to drop files into the workspace the way
                  the real tool would.
    """

    def __init__(
        self,
        *,
        result: ProcessResult | None = None,
        effect: Callable[[str, list[str], Path | None], None] | None = None,
    ) -> None:
        self.result = result or ProcessResult(exit_code=0, stdout="", stderr="", timed_out=False)
        self.effect = effect
        self.calls: list[dict] = []

    async def __call__(self, program, args, *, cwd=None, env=None, **kwargs) -> ProcessResult:
        cwd_path = Path(cwd) if cwd is not None else None
        self.calls.append({"program": program, "args": list(args), "cwd": cwd_path, "env": env, **kwargs})
        if self.effect is not None:
            self.effect(program, list(args), cwd_path)
        return self.result


def write_tree(root: Path, files: dict[str, str | bytes]) -> None:
    """Create ``files`` (relative path → content) under ``root``."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path) -> LatexServiceSettings:
    """Settings pointed at a private work root, no .env influence."""
    return LatexServiceSettings(
        _env_file=None,
        work_root=str(tmp_path / "work"),
        latex_service_api_key="",
        kill_grace_period=0.5,
        rate_limit_max_requests=1000,
    )


@pytest.fixture
def limits() -> Limits:
    return Limits()


@pytest.fixture
def registry(test_settings) -> WorkspaceRegistry:
    return WorkspaceRegistry(test_settings.work_root)


@pytest.fixture
def rate_limiter(test_settings) -> RateLimiter:
    return RateLimiter(
        test_settings.rate_limit_max_requests,
        test_settings.rate_limit_window,
        test_settings.rate_limit_max_entries,
    )


@pytest.fixture
def sandbox_root(tmp_path) -> Path:
    root = tmp_path / "sandbox"
    root.mkdir()
    return root


@pytest.fixture
def outside_dir(tmp_path) -> Path:
    """A directory next to the sandbox, i.e. outside it."""
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("host secret", encoding="utf-8")
    return outside


@pytest.fixture
def fake_runner() -> FakeRunner:
    """A FakeRunner that succeeds with no output; set .result / .effect per test."""
    return FakeRunner()


@pytest.fixture
def make_tree() -> Callable[[Path, dict[str, str | bytes]], None]:
    return write_tree


@pytest.fixture
def make_runner() -> type[FakeRunner]:
    """The FakeRunner class, for tests that need more than one runner."""
    return FakeRunner
