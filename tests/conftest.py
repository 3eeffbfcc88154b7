"""Shared pytest fixtures for sdk_assembler tests."""

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from sdk_assembler.case_merger import CaseFoldingMerger
from sdk_assembler.content_store import ContentStore

# ============================================================================
# Path Fixtures
# ============================================================================


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """Empty payload source directory."""
    path = tmp_path / "payloads"
    path.mkdir()
    return path


@pytest.fixture
def destination_dir(tmp_path: Path) -> Path:
    """Destination directory (not created)."""
    return tmp_path / "sdk"


# ============================================================================
# Store / Merger Fixtures
# ============================================================================


@pytest.fixture
def store(destination_dir: Path) -> ContentStore:
    s = ContentStore(destination_dir)
    s.ensure_root()
    return s


@pytest.fixture
def merger(destination_dir: Path, store: ContentStore) -> CaseFoldingMerger:
    return CaseFoldingMerger(destination_dir, store)


# ============================================================================
# External Tool Fixtures
# ============================================================================

FAKE_CABEXTRACT = """#!/bin/sh
out=""
while [ "$#" -gt 0 ]; do
    case "$1" in
        -d) out="$2"; shift 2 ;;
        *) shift ;;
    esac
done
mkdir -p "$out"
"""


@pytest.fixture
def fake_cabextract(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[dict[str, str]], Path]:
    """Put a cabextract on PATH that writes the given flat files into its -d directory."""

    def install(files: dict[str, str]) -> Path:
        bin_dir = tmp_path / "fake-bin"
        bin_dir.mkdir(exist_ok=True)
        script = bin_dir / "cabextract"
        lines = [f"printf '%s' '{content}' > \"$out/{name}\"\n" for name, content in files.items()]
        script.write_text(FAKE_CABEXTRACT + "".join(lines))
        script.chmod(0o755)
        monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
        return script

    return install
