"""Request and response schemas for the HTTP surface.

Wire format is camelCase (``gitUrl``, ``knownSha``, ``missingPaths``) to stay
compatible with the web backend; Python attributes are snake_case. Field types
here are deliberately loose where the sandbox validators give a more precise
rejection reason (compiler names, encodings, widths, paths).
"""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Inputs ────────────────────────────────────────────────────────────────────


class Resource(_Wire):
    """One file to place in the compile workspace."""

    path: str = Field(description="Workspace-relative path")
    content: str | list[int] = Field(
        default="",
        description="File body; a list of byte values is accepted with encoding='bytes'",
    )
    encoding: str = Field(default="text", description="base64 | bytes | text")


class CompileRequest(_Wire):
    target: str = Field(description="Workspace-relative .tex entry point")
    compiler: str = Field(default="pdflatex", description="pdflatex | xelatex | lualatex")
    resources: list[Resource] = Field(default_factory=list)
    recorder: bool = Field(
        default=False,
        description="Dependency-recording mode instead of bibliography/index/glossary hooks",
    )


class GitAuth(_Wire):
    """Credentials for cloning. Never logged, never echoed back."""

    username: str = ""
    password: str = Field(default="", repr=False)


class ProgressCallback(_Wire):
    url: str
    paper_id: str
    secret: str = Field(default="", repr=False)


class GitSource(_Wire):
    git_url: str
    branch: str | None = None
    auth: GitAuth | None = None


class CompileFromGitRequest(GitSource):
    target: str
    compiler: str = "pdflatex"
    progress_callback: ProgressCallback | None = None


class ThumbnailRequest(_Wire):
    pdf: str = Field(
        validation_alias=AliasChoices("pdf", "pdfBase64"),
        description="Base64-encoded PDF",
    )
    format: str = "png"
    width: int | None = None


class GitArchiveRequest(GitSource):
    path: str | None = None


class GitSelectiveArchiveRequest(GitSource):
    extensions: list[str] | None = None
    paths: list[str] | None = None


class GitTreeRequest(GitSource):
    path: str | None = None


class GitFileRequest(GitSource):
    file_path: str


class GitFileHashRequest(GitSource):
    file_path: str | None = None
    file_paths: list[str] | None = None


class GitRefsRequest(GitSource):
    known_sha: str | None = None


# ── Outputs ───────────────────────────────────────────────────────────────────


class RepositoryFile(_Wire):
    path: str
    content: str
    encoding: Literal["utf-8", "base64"] = "utf-8"


class ArchiveResponse(_Wire):
    files: list[RepositoryFile] = Field(default_factory=list)


class SelectiveArchiveResponse(ArchiveResponse):
    missing_paths: list[str] = Field(default_factory=list)


class TreeEntry(_Wire):
    name: str
    path: str
    type: Literal["file", "dir"]


class TreeResponse(_Wire):
    files: list[TreeEntry] = Field(default_factory=list)


class FileResponse(_Wire):
    content: str
    encoding: Literal["utf-8", "base64"]


class FileHashResponse(_Wire):
    hash: str


class FileHashesResponse(_Wire):
    hashes: dict[str, str | None]


class RefsResponse(_Wire):
    sha: str | None
    default_branch: str
    unchanged: bool | None = None
    message: str | None = None
    date: str | None = None
    author_name: str | None = None
    author_email: str | None = None
