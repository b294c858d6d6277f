"""Tests for reading a cloned repository back out: archive, tree, hashes."""

from __future__ import annotations

import base64
import hashlib
from pathlib import Path

import pytest

from latex_service.config import Limits
from latex_service.models.errors import RepositoryTooLarge
from latex_service.sandbox.repository import (
    collect_files,
    encode_content,
    git_blob_hash,
    is_binary_file,
    list_tree,
    selective_filter,
)


@pytest.fixture
def repo(tmp_path, make_tree):
    root = tmp_path / "repo"
    make_tree(root, {
        "main.tex": "\\documentclass{article}",
        "refs.bib": "@book{x}",
        "figs/plot.png": b"\x89PNG\r\n",
        "data/latin1.txt": "café".encode("latin-1"),
        ".git/HEAD": "ref: refs/heads/main",
        ".git/objects/ab/cdef": b"\x00",
    })
    return root


def _by_path(files):
    return {f.path: f for f in files}


# ── Encoding ──────────────────────────────────────────────────────────────────


def test_binary_extension_detection():
    assert is_binary_file("figs/A.PNG")
    assert is_binary_file("doc.pdf")
    assert not is_binary_file("main.tex")


def test_encode_content_text_binary_and_undecodable():
    assert encode_content("a.tex", b"hello").encoding == "utf-8"
    png = encode_content("a.png", b"\x89PNG")
    assert png.encoding == "base64"
    assert base64.b64decode(png.content) == b"\x89PNG"
    latin = encode_content("a.txt", "é".encode("latin-1"))
    assert latin.encoding == "base64"


# ── collect_files ─────────────────────────────────────────────────────────────


def test_collect_files_skips_git_dir_and_encodes(repo):
    files = _by_path(collect_files(repo, limits=Limits()))

    assert set(files) == {"main.tex", "refs.bib", "figs/plot.png", "data/latin1.txt"}
    assert files["main.tex"].content == "\\documentclass{article}"
    assert files["main.tex"].encoding == "utf-8"
    assert files["figs/plot.png"].encoding == "base64"
    assert files["data/latin1.txt"].encoding == "base64"


def test_collect_files_from_subdirectory_keeps_repo_relative_paths(repo):
    files = collect_files(repo, repo / "figs", limits=Limits())
    assert [f.path for f in files] == ["figs/plot.png"]


def test_collect_files_skips_oversized_file(repo):
    (repo / "huge.pdf").write_bytes(b"x" * 200)
    files = _by_path(collect_files(repo, limits=Limits(max_resource_bytes=100)))
    assert "huge.pdf" not in files
    assert "main.tex" in files


def test_collect_files_never_reads_oversized_file(repo, monkeypatch):
    (repo / "huge.pdf").write_bytes(b"x" * 200)
    read: list[str] = []
    original = Path.read_bytes

    def spy(self):
        read.append(self.name)
        return original(self)

    monkeypatch.setattr(Path, "read_bytes", spy)
    collect_files(repo, limits=Limits(max_resource_bytes=100))

    assert "huge.pdf" not in read
    assert "main.tex" in read


def test_collect_files_total_size_cap(repo):
    with pytest.raises(RepositoryTooLarge, match="too large") as exc_info:
        collect_files(repo, limits=Limits(max_repo_bytes=20))
    assert exc_info.value.status_code == 413
    assert exc_info.value.limit == 20


def test_collect_files_file_count_cap(repo):
    with pytest.raises(RepositoryTooLarge, match="Too many files"):
        collect_files(repo, limits=Limits(max_repo_files=2))


def test_collect_files_depth_limit(tmp_path, make_tree):
    root = tmp_path / "deep"
    make_tree(root, {"top.tex": "x", "a/b/c/d/deep.tex": "x"})
    files = collect_files(root, limits=Limits(max_repo_depth=2))
    assert [f.path for f in files] == ["top.tex"]


def test_collect_files_never_follows_escaping_symlinks(repo, outside_dir):
    (repo / "leak.txt").symlink_to(outside_dir / "secret.txt")
    (repo / "leakdir").symlink_to(outside_dir, target_is_directory=True)
    (repo / "alias.tex").symlink_to(repo / "main.tex")

    files = _by_path(collect_files(repo, limits=Limits()))

    assert "leak.txt" not in files
    assert not any(p.startswith("leakdir") for p in files)
    assert files["alias.tex"].content == "\\documentclass{article}"
    assert all("host secret" not in f.content for f in files.values())


# ── Selective mode ────────────────────────────────────────────────────────────


def test_selective_filter_by_extension_and_path(repo):
    include, wanted = selective_filter(["TEX", ".bib"], ["/figs/plot.png", "nope.sty"])
    files = _by_path(collect_files(repo, limits=Limits(), include=include))

    assert set(files) == {"main.tex", "refs.bib", "figs/plot.png"}
    assert wanted == {"figs/plot.png", "nope.sty"}


# ── Tree ──────────────────────────────────────────────────────────────────────


def test_list_tree_root_and_subdir(repo):
    root_entries = list_tree(repo, repo, None)
    assert [(e.name, e.type) for e in root_entries] == [
        ("data", "dir"),
        ("figs", "dir"),
        ("main.tex", "file"),
        ("refs.bib", "file"),
    ]
    sub = list_tree(repo, repo / "figs", "figs/")
    assert [(e.path, e.type) for e in sub] == [("figs/plot.png", "file")]


# ── Blob hashes ───────────────────────────────────────────────────────────────


def test_git_blob_hash_matches_git():
    # `printf 'hello\n' | git hash-object --stdin`
    assert git_blob_hash(b"hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"
    assert git_blob_hash(b"") == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"
    assert git_blob_hash(b"abc") == hashlib.sha1(b"blob 3\0abc").hexdigest()
