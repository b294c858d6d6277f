"""HTTP endpoints. Each one hands its parsed body to the orchestrator."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

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
    GitTreeRequest,
    RefsResponse,
    SelectiveArchiveResponse,
    ThumbnailRequest,
    TreeResponse,
)
from latex_service.orchestrator import CompileResult, Orchestrator

router = APIRouter()
git_router = APIRouter(prefix="/git", tags=["git"])


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _pdf_response(result: CompileResult) -> Response:
    headers = {}
    if result.dependencies:
        headers["X-Dependencies"] = json.dumps(result.dependencies)
    return Response(content=result.pdf, media_type="application/pdf", headers=headers)


@router.get("/health")
async def health(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    report = await orchestrator.health()
    return JSONResponse(report, status_code=200 if report["status"] == "ok" else 503)


@router.post("/compile")
async def compile_document(
    body: CompileRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Response:
    return _pdf_response(await orchestrator.compile(body))


@router.post("/compile-from-git")
async def compile_from_git(
    body: CompileFromGitRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Response:
    return _pdf_response(await orchestrator.compile_from_git(body))


@router.post("/thumbnail")
async def thumbnail(
    body: ThumbnailRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Response:
    result = await orchestrator.thumbnail(body)
    return Response(content=result.image, media_type=result.media_type)


# ── /git ──────────────────────────────────────────────────────────────────────


@git_router.post("/archive", response_model=ArchiveResponse)
async def git_archive(body: GitArchiveRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.git_archive(body)


@git_router.post("/selective-archive", response_model=SelectiveArchiveResponse)
async def git_selective_archive(
    body: GitSelectiveArchiveRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.git_selective_archive(body)


@git_router.post("/tree", response_model=TreeResponse)
async def git_tree(body: GitTreeRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.git_tree(body)


@git_router.post("/file", response_model=FileResponse)
async def git_file(body: GitFileRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.git_file(body)


@git_router.post("/file-hash", response_model=FileHashResponse | FileHashesResponse)
async def git_file_hash(body: GitFileHashRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.git_file_hash(body)


# Unchanged refs carry only sha/defaultBranch/unchanged.
@git_router.post("/refs", response_model=RefsResponse, response_model_exclude_unset=True)
async def git_refs(body: GitRefsRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.git_refs(body)
