"""Sandbox boundary and payload validation.

Pure functions: nothing here touches the filesystem except
``safe_path_async``, which resolves symlinks. Everything a request carries is
checked with these before a workspace is created or a process is spawned.

``safe_path`` / ``safe_path_async`` return ``None`` on rejection; every
``validate_*`` function raises :class:`ValidationError` with a caller-facing
reason.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import os
import re
from pathlib import Path
from urllib.parse import urlsplit

from latex_service.config import Limits, settings
from latex_service.models.errors import ValidationError

ALLOWED_COMPILERS: tuple[str, ...] = ("pdflatex", "xelatex", "lualatex")
ALLOWED_THUMBNAIL_FORMATS: tuple[str, ...] = ("png", "jpeg")
ALLOWED_ENCODINGS: tuple[str, ...] = ("base64", "bytes", "text")
SOURCE_EXTENSION = ".tex"

# Stand-in root for checking relative paths before a workspace exists.
_VIRTUAL_ROOT = "/__sandbox__"

_UNSAFE_BRANCH = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]")


def _limits(limits: Limits | None) -> Limits:
    return limits or Limits.from_settings(settings)


# ── Path containment ──────────────────────────────────────────────────────────


def _contained(root: str, candidate: str) -> bool:
    return candidate == root or candidate.startswith(root.rstrip(os.sep) + os.sep)


def safe_path(root: str | Path, user_path: object) -> Path | None:
    """Resolve ``user_path`` against ``root``; ``None`` if it would escape.

    Lexical only: ``..`` segments are normalised away and the result must be
    the root itself or strictly below it.
    """
    if not isinstance(user_path, str) or not user_path:
        return None
    if "\0" in user_path:
        return None
    if os.path.isabs(user_path):
        return None

    base = os.path.abspath(os.fspath(root))
    resolved = os.path.normpath(os.path.join(base, user_path))
    if not _contained(base, resolved):
        return None
    return Path(resolved)


async def safe_path_async(root: str | Path, user_path: object) -> Path | None:
    """``safe_path`` plus symlink resolution.

    Every component of the resolved path is followed; if the real location
    leaves the real sandbox root the path is rejected. Paths that do not exist
    yet resolve to themselves and pass.
    """
    resolved = safe_path(root, user_path)
    if resolved is None:
        return None

    real_root, real_path = await asyncio.to_thread(
        lambda: (os.path.realpath(root), os.path.realpath(resolved))
    )
    if not _contained(real_root, real_path):
        return None
    return resolved


def _relative_ok(user_path: object) -> bool:
    return safe_path(_VIRTUAL_ROOT, user_path) is not None


# ── Declared options ──────────────────────────────────────────────────────────


def validate_target(target: object) -> str:
    if not isinstance(target, str) or not target:
        raise ValidationError("Missing target file")
    if not target.endswith(SOURCE_EXTENSION):
        raise ValidationError(f"Target must be a {SOURCE_EXTENSION} file")
    if not _relative_ok(target):
        raise ValidationError("Invalid target path")
    return target


def validate_compiler(compiler: object) -> str:
    if compiler not in ALLOWED_COMPILERS:
        raise ValidationError(f"Invalid compiler. Use: {', '.join(ALLOWED_COMPILERS)}")
    return compiler  # type: ignore[return-value]


def validate_thumbnail_options(
    width: object = None,
    fmt: object = None,
    limits: Limits | None = None,
) -> None:
    lim = _limits(limits)
    if width is not None:
        if isinstance(width, bool) or not isinstance(width, int):
            raise ValidationError("Width must be an integer")
        if width < lim.min_thumbnail_width or width > lim.max_thumbnail_width:
            raise ValidationError(
                f"Width must be between {lim.min_thumbnail_width} and {lim.max_thumbnail_width}"
            )
    if fmt is not None and fmt not in ALLOWED_THUMBNAIL_FORMATS:
        raise ValidationError(f"Invalid format. Use: {', '.join(ALLOWED_THUMBNAIL_FORMATS)}")


def validate_file_path(file_path: object, field: str = "filePath") -> str:
    if not isinstance(file_path, str) or not file_path:
        raise ValidationError(f"Missing {field}")
    if not _relative_ok(file_path):
        raise ValidationError(f"Invalid {field}")
    return file_path


def validate_git_url(git_url: object, limits: Limits | None = None) -> str:
    if not isinstance(git_url, str) or not git_url:
        raise ValidationError("Missing gitUrl")
    try:
        parts = urlsplit(git_url)
    except ValueError:
        raise ValidationError("Invalid gitUrl format") from None
    if not parts.scheme or not parts.hostname:
        raise ValidationError("Invalid gitUrl format")
    if parts.scheme.lower() not in _limits(limits).git_schemes:
        raise ValidationError(f"Unsupported gitUrl scheme: {parts.scheme}")
    return git_url


def validate_branch(branch: object) -> str | None:
    if branch is None or branch == "":
        return None
    if not isinstance(branch, str):
        raise ValidationError("Invalid branch")
    if branch.startswith("-") or ".." in branch or _UNSAFE_BRANCH.search(branch):
        raise ValidationError("Invalid branch")
    return branch


# ── Resources ─────────────────────────────────────────────────────────────────


def validate_resources(resources: object, limits: Limits | None = None) -> list:
    lim = _limits(limits)
    if not isinstance(resources, list):
        raise ValidationError("Missing resources array")
    if len(resources) > lim.max_resources:
        raise ValidationError(f"Too many resources. Maximum is {lim.max_resources}")
    return resources


def decode_content(content: object, encoding: object, path: str) -> bytes:
    """Decode a resource body according to its declared encoding."""
    if encoding not in ALLOWED_ENCODINGS:
        raise ValidationError(
            f"Invalid encoding for {path}. Use: {', '.join(ALLOWED_ENCODINGS)}"
        )
    if content is None:
        content = ""

    if encoding == "base64":
        if not isinstance(content, str):
            raise ValidationError(f"Invalid base64 content: {path}")
        try:
            return base64.b64decode(content)
        except (binascii.Error, ValueError):
            raise ValidationError(f"Invalid base64 content: {path}") from None

    if encoding == "bytes" and isinstance(content, list):
        try:
            return bytes(content)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid byte content: {path}") from None

    if not isinstance(content, str):
        raise ValidationError(f"Invalid content: {path}")
    return content.encode("utf-8")


def validate_and_parse_resource(
    resource: object,
    running_total: int,
    limits: Limits | None = None,
) -> tuple[str, bytes, int]:
    """Check one resource against the per-resource and cumulative caps.

    ``running_total`` is the decoded size of every resource already accepted in
    this request. Returns ``(path, content, new_running_total)``.
    """
    lim = _limits(limits)
    path = getattr(resource, "path", None)
    if not isinstance(path, str) or not path:
        raise ValidationError("Invalid resource: missing path")
    if not _relative_ok(path) or safe_path(_VIRTUAL_ROOT, path) == Path(_VIRTUAL_ROOT):
        raise ValidationError(f"Invalid resource path: {path}")

    content = decode_content(
        getattr(resource, "content", ""), getattr(resource, "encoding", "text"), path
    )
    if len(content) > lim.max_resource_bytes:
        raise ValidationError(f"Resource too large: {path}")

    new_total = running_total + len(content)
    if new_total > lim.max_total_bytes:
        raise ValidationError("Total resources size exceeds limit")
    return path, content, new_total


def parse_resources(resources: object, limits: Limits | None = None) -> list[tuple[str, bytes]]:
    """Validate a whole resource array, threading the cumulative size through."""
    items = validate_resources(resources, limits)
    parsed: list[tuple[str, bytes]] = []
    total = 0
    for resource in items:
        path, content, total = validate_and_parse_resource(resource, total, limits)
        parsed.append((path, content))
    return parsed


def decode_pdf(pdf: object, limits: Limits | None = None) -> bytes:
    lim = _limits(limits)
    if not isinstance(pdf, str) or not pdf:
        raise ValidationError("Missing pdfBase64")
    try:
        data = base64.b64decode(pdf)
    except (binascii.Error, ValueError):
        raise ValidationError("Invalid pdfBase64") from None
    if not data:
        raise ValidationError("Missing pdfBase64")
    if len(data) > lim.max_total_bytes:
        raise ValidationError("PDF too large")
    return data
