"""
Pytest fixtures shared by the dupmatch tests
"""
from pathlib import Path

import pytest


def write_tree(root: Path, files: dict[str, bytes]) -> Path:
    """Create files under root from a {relative path: content} mapping."""
    root.mkdir(parents=True, exist_ok=True)
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


@pytest.fixture
def make_tree(tmp_path: Path):
    def _make(name: str, files: dict[str, bytes]) -> Path:
        return write_tree(tmp_path / name, files)

    return _make
