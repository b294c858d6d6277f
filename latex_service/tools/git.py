"""git invocation — shallow clones and remote metadata.

Credentials never appear in argv or in the clone's persisted remote URL: they
are handed to git through ``GIT_CONFIG_*`` environment entries as an HTTP
``Authorization`` header. Anything git prints is passed through ``redact``
before it can reach a log line or a response body.
"""

from __future__ import annotations

import base64
import os
import re
from pathlib import Path

import structlog

from latex_service.models.errors import CloneFailure, ToolTimeout
from latex_service.models.schemas import GitAuth
from latex_service.tools.subprocess_runner import (
    DEFAULT_MAX_OUTPUT,
    FORCE_KILL_DELAY,
    ProcessResult,
    run_process,
)

logger = structlog.get_logger().bind(component="tools.git")

CLONE_TIMEOUT = 60.0
METADATA_TIMEOUT = 30.0

_URL_USERINFO = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")
_REDACTED = "***"


def _basic_token(auth: GitAuth) -> str:
    return base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode("ascii")


def _has_credentials(auth: GitAuth | None) -> bool:
    return bool(auth and auth.username and auth.password)


def git_env(auth: GitAuth | None = None) -> dict[str, str]:
    """Child environment for git: no prompts, credentials as an extra header."""
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.pop("GIT_ASKPASS", None)
    env.pop("SSH_ASKPASS", None)
    if _has_credentials(auth):
        env["GIT_CONFIG_COUNT"] = "1"
        env["GIT_CONFIG_KEY_0"] = "http.extraHeader"
        env["GIT_CONFIG_VALUE_0"] = f"Authorization: Basic {_basic_token(auth)}"
    return env


def redact(text: str, auth: GitAuth | None = None) -> str:
    """Strip URL userinfo and any literal credential material from ``text``."""
    text = _URL_USERINFO.sub(lambda m: m.group("scheme") + _REDACTED + "@", text)
    if _has_credentials(auth):
        for secret in (_basic_token(auth), auth.password):
            text = text.replace(secret, _REDACTED)
    return text


def build_clone_args(git_url: str, *, branch: str | None = None, dest: str = ".") -> list[str]:
    args = ["clone", "--depth", "1"]
    if branch:
        args += ["--branch", branch]
    args += ["--", git_url, dest]
    return args


def _raise_for(result: ProcessResult, action: str, auth: GitAuth | None) -> None:
    if result.timed_out:
        raise ToolTimeout(f"git {action} timed out", log=redact(result.stderr, auth) or None)
    if not result.success:
        detail = redact(result.stderr.strip(), auth)
        raise CloneFailure(detail or f"Failed to {action} repository")


async def clone_repository(
    git_url: str,
    dest: str | os.PathLike[str],
    *,
    branch: str | None = None,
    auth: GitAuth | None = None,
    timeout: float = CLONE_TIMEOUT,
    max_output: int = DEFAULT_MAX_OUTPUT,
    grace_period: float = FORCE_KILL_DELAY,
) -> None:
    """Depth-1 clone of ``git_url`` into the existing empty directory ``dest``."""
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    logger.info("clone_start", url=redact(git_url), branch=branch)
    result = await run_process(
        "git",
        build_clone_args(git_url, branch=branch),
        cwd=dest,
        env=git_env(auth),
        timeout=timeout,
        max_output=max_output,
        grace_period=grace_period,
    )
    _raise_for(result, "clone", auth)
    logger.info("clone_done", duration_ms=result.duration_ms)


# ── Remote metadata ───────────────────────────────────────────────────────────


async def ls_remote(
    git_url: str,
    *,
    auth: GitAuth | None = None,
    timeout: float = METADATA_TIMEOUT,
) -> list[tuple[str, str]]:
    """``git ls-remote`` as ``[(sha, ref), ...]``."""
    result = await run_process(
        "git", ["ls-remote", "--", git_url], env=git_env(auth), timeout=timeout
    )
    _raise_for(result, "access", auth)
    refs: list[tuple[str, str]] = []
    for line in result.stdout.splitlines():
        sha, _, ref = line.partition("\t")
        if sha and ref:
            refs.append((sha.strip(), ref.strip()))
    return refs


def resolve_ref(refs: list[tuple[str, str]], branch: str | None) -> tuple[str | None, str]:
    """Pick the commit for ``branch`` (or the default branch) from ls-remote output.

    Returns ``(sha, default_branch)``. ``master``/``main`` are taken as the
    default branch when present; otherwise ``HEAD`` decides the sha.
    """
    head_sha: str | None = None
    branches: dict[str, str] = {}
    for sha, ref in refs:
        if ref == "HEAD":
            head_sha = sha
        elif ref.startswith("refs/heads/"):
            branches.setdefault(ref.removeprefix("refs/heads/"), sha)

    default_branch = next((name for name in branches if name in ("master", "main")), "master")
    return branches.get(branch or default_branch) or head_sha, default_branch


async def fetch_commit_metadata(
    workspace: Path,
    git_url: str,
    *,
    branch: str,
    sha: str,
    auth: GitAuth | None = None,
    timeout: float = METADATA_TIMEOUT,
) -> dict[str, str | None] | None:
    """Date, author and subject of ``sha`` via a bare depth-1 fetch; ``None`` on any failure."""
    env = git_env(auth)
    init = await run_process("git", ["init", "--bare", "--quiet"], cwd=workspace, env=env, timeout=timeout)
    if not init.success:
        return None

    refspec = f"refs/heads/{branch}:refs/heads/{branch}"
    fetch = await run_process(
        "git", ["fetch", "--depth=1", "--", git_url, refspec], cwd=workspace, env=env, timeout=timeout
    )
    if not fetch.success:
        logger.warning("metadata_fetch_failed", stderr=redact(fetch.stderr, auth)[:400])
        return None

    log = await run_process(
        "git", ["log", "-1", "--format=%cI%n%an%n%ae%n%s", sha, "--"], cwd=workspace, env=env, timeout=timeout
    )
    if not log.success or not log.stdout.strip():
        return None

    lines = log.stdout.strip().split("\n")
    return {
        "date": lines[0],
        "author_name": lines[1] if len(lines) > 1 and lines[1] else None,
        "author_email": lines[2] if len(lines) > 2 and lines[2] else None,
        "message": "\n".join(lines[3:]) or "Latest commit",
    }

