"""Orchestrator — sequences one request through the sandbox.

Every operation follows the same shape:

    validate → acquire workspace → populate (resources / clone) → one tool → map result

Validation happens before a workspace exists, so a rejected request never
touches the filesystem. Everything after acquisition runs inside
``WorkspaceRegistry.run`` and the directory is removed on every exit path.
Logs handed back to callers have the workspace location replaced by ``.``.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from latex_service.config import LatexServiceSettings, Limits, settings
from latex_service.models.errors import (
    NotFoundError,
    RepositoryTooLarge,
    ToolFailure,
    ToolTimeout,
    ValidationError,
)
from latex_service.models.schemas import (
    ArchiveResponse,
    CompileFromGitRequest,
    CompileRequest,
    FileHashesResponse,
    FileHashResponse,
    FileResponse,
    GitArchiveRequest,
    GitFileHashRequest,
    GitFileRequest,
    GitRefsRequest,
    GitSelectiveArchiveRequest,
    GitSource,
    GitTreeRequest,
    ProgressCallback,
    RefsResponse,
    SelectiveArchiveResponse,
    ThumbnailRequest,
    TreeResponse,
)
from latex_service.sandbox import repository
from latex_service.sandbox.dependencies import collect_dependencies
from latex_service.sandbox.rate_limit import RateLimiter
from latex_service.sandbox.validation import (
    decode_pdf,
    parse_resources,
    safe_path_async,
    validate_branch,
    validate_compiler,
    validate_file_path,
    validate_git_url,
    validate_target,
    validate_thumbnail_options,
)
from latex_service.sandbox.workspace import WorkspaceRegistry
from latex_service.tools import git
from latex_service.tools.latexmk import output_path, run_latexmk
from latex_service.tools.monitor import system_snapshot
from latex_service.tools.pdftoppm import MEDIA_TYPES, run_pdftoppm, thumbnail_path
from latex_service.tools.progress import ProgressReporter
from latex_service.tools.subprocess_runner import ProcessResult, check_command
from latex_service.utils.clock import now_iso

logger = structlog.get_logger().bind(component="orchestrator")


@dataclass(frozen=True, slots=True)
class CompileResult:
    pdf: bytes
    dependencies: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ThumbnailResult:
    image: bytes
    media_type: str


def scrub_paths(text: str, workspace: Path) -> str:
    """Replace the workspace location (literal and resolved) with ``.``."""
    for location in sorted({os.path.realpath(workspace), str(workspace)}, key=len, reverse=True):
        text = text.replace(location, ".")
    return text


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


class Orchestrator:
    """Runs compile, thumbnail and repository requests end to end."""

    def __init__(
        self,
        registry: WorkspaceRegistry,
        cfg: LatexServiceSettings | None = None,
        rate_limiter: RateLimiter | None = None,
        progress_factory: Callable[[ProgressCallback | None], ProgressReporter] = ProgressReporter,
    ) -> None:
        self.registry = registry
        self.cfg = cfg or settings
        self.limits = Limits.from_settings(self.cfg)
        self.rate_limiter = rate_limiter
        self.progress_factory = progress_factory

    def _run_opts(self) -> dict:
        return {"max_output": self.cfg.max_output_bytes, "grace_period": self.cfg.kill_grace_period}

    # ── Compilation ──────────────────────────────────────────────────────────

    async def compile(self, request: CompileRequest) -> CompileResult:
        target = validate_target(request.target)
        compiler = validate_compiler(request.compiler)
        resources = parse_resources(request.resources, self.limits)

        async def work(workspace: Path) -> CompileResult:
            for rel_path, content in resources:
                dest = await safe_path_async(workspace, rel_path)
                if dest is None:
                    raise ValidationError(f"Invalid resource path: {rel_path}")
                try:
                    await asyncio.to_thread(_write_file, dest, content)
                except OSError as e:
                    logger.info("resource_write_failed", path=rel_path, errno=e.errno)
                    raise ValidationError(f"Invalid resource path: {rel_path}") from None
            return await self._build(
                workspace,
                target,
                compiler,
                recorder=request.recorder,
                timeout=self.cfg.compile_timeout,
            )

        return await self.registry.run(work, kind="compile")

    async def compile_from_git(self, request: CompileFromGitRequest) -> CompileResult:
        git_url = validate_git_url(request.git_url, self.limits)
        branch = validate_branch(request.branch)
        target = validate_target(request.target)
        compiler = validate_compiler(request.compiler)
        progress = self.progress_factory(request.progress_callback)

        async def work(workspace: Path) -> CompileResult:
            await progress.send("Cloning repository...")
            await git.clone_repository(
                git_url,
                workspace,
                branch=branch,
                auth=request.auth,
                timeout=self.cfg.archive_clone_timeout,
                **self._run_opts(),
            )

            target_path = await safe_path_async(workspace, target)
            if target_path is None:
                raise ValidationError("Invalid target path")
            if not await asyncio.to_thread(target_path.is_file):
                raise NotFoundError(f"Target file not found: {target}")

            await progress.send("Starting compilation...")
            result = await self._build(
                workspace,
                target,
                compiler,
                recorder=True,
                timeout=self.cfg.git_compile_timeout,
            )
            await progress.send("Finalizing...")
            return result

        try:
            return await self.registry.run(work, kind="git-compile")
        finally:
            await progress.close()

    async def _build(
        self,
        workspace: Path,
        target: str,
        compiler: str,
        *,
        recorder: bool,
        timeout: float,
    ) -> CompileResult:
        result = await run_latexmk(
            compiler,
            target,
            cwd=workspace,
            recorder=recorder,
            timeout=timeout,
            **self._run_opts(),
        )

        if result.timed_out:
            logger.warning("compile_timed_out", target=target, timeout=timeout)
            raise ToolTimeout("Compilation timed out", log=scrub_paths(result.log, workspace))

        pdf_path = output_path(workspace, target, ".pdf")
        if not await asyncio.to_thread(pdf_path.is_file):
            log = await self._failure_log(workspace, target, result)
            logger.info("compile_failed", target=target, exit_code=result.exit_code)
            raise ToolFailure("Compilation failed", log=log)

        pdf = await asyncio.to_thread(pdf_path.read_bytes)
        dependencies: list[str] = []
        if recorder:
            dependencies = await asyncio.to_thread(collect_dependencies, workspace, target)
        logger.info("compile_succeeded", target=target, pdf_bytes=len(pdf), dependencies=len(dependencies))
        return CompileResult(pdf=pdf, dependencies=dependencies)

    async def _failure_log(self, workspace: Path, target: str, result: ProcessResult) -> str:
        """Engine ``.log`` if one was written, else captured output, never empty."""
        log = await asyncio.to_thread(_read_text, output_path(workspace, target, ".log"))
        if not log:
            log = result.log
        if not log.strip():
            log = f"latexmk exited with status {result.exit_code}"
        return scrub_paths(log, workspace)

    # ── Thumbnails ───────────────────────────────────────────────────────────

    async def thumbnail(self, request: ThumbnailRequest) -> ThumbnailResult:
        pdf = decode_pdf(request.pdf, self.limits)
        width = request.width if request.width is not None else self.cfg.default_thumbnail_width
        validate_thumbnail_options(width, request.format, self.limits)
        fmt = request.format

        async def work(workspace: Path) -> ThumbnailResult:
            await asyncio.to_thread(_write_file, workspace / "input.pdf", pdf)
            result = await run_pdftoppm(
                "input.pdf",
                "thumb",
                fmt=fmt,
                width=width,
                cwd=workspace,
                timeout=self.cfg.thumbnail_timeout,
                **self._run_opts(),
            )
            if result.timed_out:
                raise ToolTimeout("Thumbnail generation timed out", log=scrub_paths(result.log, workspace))
            if not result.success:
                detail = scrub_paths(result.stderr.strip(), workspace)
                raise ToolFailure(
                    f"Thumbnail generation failed: {detail}" if detail else "Thumbnail generation failed",
                    log=detail or None,
                )

            image_path = thumbnail_path(workspace / "thumb", fmt)
            if not await asyncio.to_thread(image_path.is_file):
                raise ToolFailure("Failed to read generated thumbnail")
            image = await asyncio.to_thread(image_path.read_bytes)
            logger.info("thumbnail_generated", format=fmt, width=width, image_bytes=len(image))
            return ThumbnailResult(image=image, media_type=MEDIA_TYPES[fmt])

        return await self.registry.run(work, kind="thumbnail")

    # ── Repositories ─────────────────────────────────────────────────────────

    def _validate_source(self, request: GitSource) -> tuple[str, str | None]:
        return validate_git_url(request.git_url, self.limits), validate_branch(request.branch)

    async def _clone(
        self,
        workspace: Path,
        request: GitSource,
        git_url: str,
        branch: str | None,
        timeout: float,
    ) -> None:
        await git.clone_repository(
            git_url,
            workspace,
            branch=branch,
            auth=request.auth,
            timeout=timeout,
            **self._run_opts(),
        )

    async def git_archive(self, request: GitArchiveRequest) -> ArchiveResponse:
        git_url, branch = self._validate_source(request)
        if request.path:
            validate_file_path(request.path, "path")

        async def work(workspace: Path) -> ArchiveResponse:
            await self._clone(workspace, request, git_url, branch, self.cfg.archive_clone_timeout)
            start = workspace
            if request.path:
                start = await self._directory(workspace, request.path)
            files = await asyncio.to_thread(
                repository.collect_files, workspace, start, limits=self.limits
            )
            logger.info("archive_built", files=len(files))
            return ArchiveResponse(files=files)

        return await self.registry.run(work, kind="git-archive")

    async def git_selective_archive(
        self, request: GitSelectiveArchiveRequest
    ) -> SelectiveArchiveResponse:
        git_url, branch = self._validate_source(request)
        if not request.extensions and not request.paths:
            raise ValidationError("Must provide either 'extensions' or 'paths' array")
        include, wanted_paths = repository.selective_filter(request.extensions, request.paths)

        async def work(workspace: Path) -> SelectiveArchiveResponse:
            await self._clone(workspace, request, git_url, branch, self.cfg.archive_clone_timeout)
            files = await asyncio.to_thread(
                repository.collect_files, workspace, None, limits=self.limits, include=include
            )
            found = {f.path for f in files}
            missing = sorted(p for p in wanted_paths if p not in found)
            logger.info("selective_archive_built", files=len(files), missing=len(missing))
            return SelectiveArchiveResponse(files=files, missing_paths=missing)

        return await self.registry.run(work, kind="git-selective")

    async def git_tree(self, request: GitTreeRequest) -> TreeResponse:
        git_url, branch = self._validate_source(request)
        if request.path:
            validate_file_path(request.path, "path")

        async def work(workspace: Path) -> TreeResponse:
            await self._clone(workspace, request, git_url, branch, self.cfg.clone_timeout)
            directory = workspace
            if request.path:
                directory = await self._directory(workspace, request.path)
            entries = await asyncio.to_thread(
                repository.list_tree, workspace, directory, request.path
            )
            return TreeResponse(files=entries)

        return await self.registry.run(work, kind="git-tree")

    async def _directory(self, workspace: Path, rel_path: str) -> Path:
        directory = await safe_path_async(workspace, rel_path)
        if directory is None:
            raise ValidationError("Invalid path")
        if not await asyncio.to_thread(directory.is_dir):
            raise NotFoundError(f"Path not found: {rel_path}")
        return directory

    async def git_file(self, request: GitFileRequest) -> FileResponse:
        git_url, branch = self._validate_source(request)
        file_path = validate_file_path(request.file_path)

        async def work(workspace: Path) -> FileResponse:
            await self._clone(workspace, request, git_url, branch, self.cfg.clone_timeout)
            resolved = await safe_path_async(workspace, file_path)
            if resolved is None:
                raise ValidationError("Invalid file path")
            if not await asyncio.to_thread(resolved.is_file):
                raise NotFoundError(f"File not found: {file_path}")
            size = (await asyncio.to_thread(resolved.stat)).st_size
            if size > self.limits.max_resource_bytes:
                raise RepositoryTooLarge(
                    f"File too large: {file_path}",
                    limit=self.limits.max_resource_bytes,
                    observed=size,
                )
            content = await asyncio.to_thread(resolved.read_bytes)
            encoded = repository.encode_content(file_path, content)
            return FileResponse(content=encoded.content, encoding=encoded.encoding)

        return await self.registry.run(work, kind="git-file")

    async def git_file_hash(
        self, request: GitFileHashRequest
    ) -> FileHashResponse | FileHashesResponse:
        git_url, branch = self._validate_source(request)
        batch = bool(request.file_paths)
        paths = request.file_paths if batch else ([request.file_path] if request.file_path else [])
        if not paths:
            raise ValidationError("Missing filePath or filePaths")

        async def work(workspace: Path) -> dict[str, str | None]:
            await self._clone(workspace, request, git_url, branch, self.cfg.clone_timeout)
            hashes: dict[str, str | None] = {}
            for rel_path in paths:
                resolved = await safe_path_async(workspace, rel_path)
                if resolved is None or not await asyncio.to_thread(resolved.is_file):
                    hashes[rel_path] = None
                    continue
                content = await asyncio.to_thread(resolved.read_bytes)
                hashes[rel_path] = repository.git_blob_hash(content)
            return hashes

        hashes = await self.registry.run(work, kind="git-hash")
        if batch:
            return FileHashesResponse(hashes=hashes)
        digest = hashes[request.file_path]
        if digest is None:
            raise NotFoundError(f"File not found or invalid: {request.file_path}")
        return FileHashResponse(hash=digest)

    async def git_refs(self, request: GitRefsRequest) -> RefsResponse:
        git_url, branch = self._validate_source(request)
        refs = await git.ls_remote(git_url, auth=request.auth, timeout=self.cfg.git_metadata_timeout)
        sha, default_branch = git.resolve_ref(refs, branch)

        if request.known_sha and sha == request.known_sha:
            return RefsResponse(sha=sha, default_branch=default_branch, unchanged=True)

        metadata = None
        if sha:
            metadata = await self.registry.run(
                lambda workspace: git.fetch_commit_metadata(
                    workspace,
                    git_url,
                    branch=branch or default_branch,
                    sha=sha,
                    auth=request.auth,
                    timeout=self.cfg.git_metadata_timeout,
                ),
                kind="git-refs",
            )
        if metadata is None:
            logger.warning("commit_metadata_unavailable", has_sha=bool(sha))
            metadata = {}

        return RefsResponse(
            sha=sha,
            default_branch=default_branch,
            message=metadata.get("message") or "Latest commit",
            date=metadata.get("date") or now_iso(),
            author_name=metadata.get("author_name"),
            author_email=metadata.get("author_email"),
        )

    # ── Health ───────────────────────────────────────────────────────────────

    async def health(self) -> dict:
        timeout = self.cfg.health_check_timeout
        latexmk, git_check, pdftoppm = await asyncio.gather(
            check_command("latexmk", ["--version"], timeout=timeout),
            check_command("git", ["--version"], timeout=timeout),
            check_command("pdftoppm", ["-v"], timeout=timeout),
        )
        checks = {"latexmk": latexmk, "git": git_check, "pdftoppm": pdftoppm}
        healthy = all(c["ok"] for c in checks.values())
        return {
            "status": "ok" if healthy else "degraded",
            "checks": checks,
            "workspaces": {"pending": self.registry.pending_count},
            "rate_limit": {"entries": self.rate_limiter.size if self.rate_limiter else 0},
            "system": await asyncio.to_thread(system_snapshot, self.registry.root),
        }
