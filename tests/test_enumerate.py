"""Tests for directory enumeration."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from dupmatch import SUBTREE_UNAVAILABLE, ScanConfig, ScanIssue, enumerate_directory


def _names(entries, root: Path) -> list[str]:
    return [Path(e.path).relative_to(root).as_posix() for e in entries]


@pytest.fixture
def tree(make_tree) -> Path:
    return make_tree(
        "tree",
        {
            "b.txt": b"b",
            "a.txt": b"a",
            "sub/c.jpg": b"c",
            "sub/deeper/d.txt": b"d",
            ".DS_Store": b"junk",
            "sub/Thumbs.db": b"junk",
        },
    )


def test_recursive_walk_collects_regular_files(tree: Path):
    entries = enumerate_directory(ScanConfig(root=str(tree)))

    assert _names(entries, tree) == ["a.txt", "b.txt", "sub/c.jpg", "sub/deeper/d.txt"]


def test_non_recursive_stays_at_root(tree: Path):
    entries = enumerate_directory(ScanConfig(root=str(tree), recursive=False))

    assert _names(entries, tree) == ["a.txt", "b.txt"]


def test_sentinel_files_skipped_even_when_filter_accepts(tree: Path):
    entries = enumerate_directory(ScanConfig(root=str(tree), filter=lambda name: True))

    names = {Path(e.path).name for e in entries}
    assert ".DS_Store" not in names
    assert "Thumbs.db" not in names


def test_filter_rejecting_everything_yields_nothing(tree: Path):
    assert enumerate_directory(ScanConfig(root=str(tree), filter=lambda name: False)) == []


def test_filter_sees_file_names(tree: Path):
    entries = enumerate_directory(
        ScanConfig(root=str(tree), filter=lambda name: name.endswith(".txt"))
    )

    assert _names(entries, tree) == ["a.txt", "b.txt", "sub/deeper/d.txt"]


def test_entries_are_lazy(tree: Path):
    entries = enumerate_directory(ScanConfig(root=str(tree)))

    assert not any(e.is_size_cached or e.is_digest_cached for e in entries)


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_symlinks_are_skipped(tmp_path: Path, make_tree):
    root = make_tree("links", {"real.txt": b"real", "dir/inner.txt": b"inner"})
    os.symlink(root / "real.txt", root / "link.txt")
    os.symlink(root / "dir", root / "linkdir")

    entries = enumerate_directory(ScanConfig(root=str(root)))

    assert _names(entries, root) == ["real.txt", "dir/inner.txt"]


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="fifos unsupported")
def test_fifos_are_skipped(make_tree):
    root = make_tree("fifo", {"real.txt": b"real"})
    os.mkfifo(root / "pipe")

    entries = enumerate_directory(ScanConfig(root=str(root)))

    assert _names(entries, root) == ["real.txt"]


def test_missing_root_is_empty_and_reported(tmp_path: Path):
    issues: list[ScanIssue] = []
    missing = tmp_path / "nope"

    entries = enumerate_directory(ScanConfig(root=str(missing)), issues)

    assert entries == []
    assert len(issues) == 1
    assert issues[0].code == SUBTREE_UNAVAILABLE
    assert issues[0].path == str(missing)


def test_missing_root_without_issue_list(tmp_path: Path):
    assert enumerate_directory(ScanConfig(root=str(tmp_path / "nope"))) == []


def test_empty_directory(tmp_path: Path):
    assert enumerate_directory(ScanConfig(root=str(tmp_path))) == []


def test_verbose_reports_each_folder(tree: Path, caplog):
    caplog.set_level(logging.INFO, logger="dupmatch")

    enumerate_directory(ScanConfig(root=str(tree), verbose=True))

    scanned = [r.getMessage() for r in caplog.records if r.getMessage().startswith("scanning folder")]
    assert scanned == [
        f"scanning folder {tree}",
        f"scanning folder {tree / 'sub'}",
        f"scanning folder {tree / 'sub' / 'deeper'}",
    ]


def test_quiet_by_default(tree: Path, caplog):
    caplog.set_level(logging.INFO, logger="dupmatch")

    enumerate_directory(ScanConfig(root=str(tree)))

    assert not caplog.records


def test_unopenable_subdirectory_is_skipped(make_tree, monkeypatch):
    root = make_tree(
        "locked_tree",
        {"a.txt": b"a", "locked/hidden.txt": b"h", "open/b.txt": b"b"},
    )
    real_scandir = os.scandir

    def scandir(path="."):
        if os.path.basename(os.fspath(path)) == "locked":
            raise PermissionError(13, "Permission denied", os.fspath(path))
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", scandir)
    issues: list[ScanIssue] = []

    entries = enumerate_directory(ScanConfig(root=str(root)), issues)

    assert _names(entries, root) == ["a.txt", "open/b.txt"]
    assert [(i.path, i.code) for i in issues] == [
        (os.path.join(str(root), "locked"), SUBTREE_UNAVAILABLE)
    ]
