"""
Data model shared by the readers, the store, the merger and the driver.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import ArchiveCorrupt


class PayloadFormat(str, Enum):
    CAB = "cab"
    MSI = "msi"
    VSIX = "vsix"
    ZIP = "zip"
    NUPKG = "nupkg"
    TAR = "tar"


# Downloader package type names -> archive family
PACKAGE_TYPES = {
    "cab": PayloadFormat.CAB,
    "msi": PayloadFormat.MSI,
    "vsix": PayloadFormat.VSIX,
    "zip": PayloadFormat.ZIP,
    "nupkg": PayloadFormat.NUPKG,
    "tar": PayloadFormat.TAR,
}

# File name suffix -> archive family, longest suffixes first
ARCHIVE_SUFFIXES = [
    (".tar.zst", PayloadFormat.TAR),
    (".tar.xz", PayloadFormat.TAR),
    (".tar.gz", PayloadFormat.TAR),
    (".tgz", PayloadFormat.TAR),
    (".tar", PayloadFormat.TAR),
    (".msi", PayloadFormat.MSI),
    (".cab", PayloadFormat.CAB),
    (".vsix", PayloadFormat.VSIX),
    (".nupkg", PayloadFormat.NUPKG),
    (".zip", PayloadFormat.ZIP),
]


def normalize_member_path(name: str) -> str | None:
    """
    Normalize an archive member name to a relative posix path.

    Returns None for names that do not denote a file (empty, ".", trailing
    slash). Raises ArchiveCorrupt for names escaping the archive root.
    """
    if name.endswith(("/", "\\")):
        return None
    parts = []
    for part in name.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == ".." or ":" in part:
            raise ArchiveCorrupt(f"unsafe member path: {name!r}")
        parts.append(part)
    if not parts:
        return None
    return "/".join(parts)


def fold_path(path: str) -> str:
    """Case-folded comparison key for a relative path."""
    return path.lower()


def format_from_type(declared_type: str) -> PayloadFormat | None:
    """Map a downloader package type ("Msi", "Vsix", ...) to an archive family."""
    return PACKAGE_TYPES.get(declared_type.strip().lower())


def format_from_name(file_name: str) -> PayloadFormat | None:
    """Map an archive file name to an archive family by its suffix."""
    name = file_name.lower()
    for suffix, fmt in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return fmt
    return None


@dataclass(frozen=True)
class ManifestEntry:
    path: str
    sha256: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class Payload:
    """One installer archive in the source directory."""

    id: str
    archive_path: Path
    format: PayloadFormat | None
    declared_type: str
    priority: int = 0
    manifest_path: Path | None = None
    version: str = ""
    archive_sha256: str | None = None
    load_error: str | None = None


@dataclass(frozen=True)
class ExtractedFile:
    """Decoded bytes of one archive member, with their verified hash."""

    path: str
    data: bytes
    sha256: str


@dataclass(frozen=True)
class MergeFact:
    """A single (path -> content) claim made by a payload."""

    path: str
    content_id: str
    size: int


@dataclass
class FactBatch:
    """All facts produced by one payload, applied to the namespace together."""

    payload_id: str
    priority: int
    facts: list[MergeFact] = field(default_factory=list)


@dataclass(frozen=True)
class ConflictRecord:
    path: str
    winner_payload: str
    loser_payload: str
    winner_path: str
    loser_path: str
    winner_hash: str
    loser_hash: str

    def to_dict(self) -> dict[str, str]:
        return {
            "path": self.path,
            "winner": self.winner_payload,
            "loser": self.loser_payload,
            "winner_path": self.winner_path,
            "loser_path": self.loser_path,
            "winner_hash": self.winner_hash,
            "loser_hash": self.loser_hash,
        }


SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
CANCELLED = "cancelled"


@dataclass
class PayloadOutcome:
    payload_id: str
    status: str
    error_kind: str | None = None
    error: str | None = None
    files: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.payload_id,
            "status": self.status,
            "error_kind": self.error_kind,
            "error": self.error,
            "files": self.files,
        }


EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_SETUP_ERROR = 2
EXIT_TOTAL_FAILURE = 3
EXIT_CANCELLED = 130


@dataclass
class AssemblyReport:
    """Aggregate result of one assembly run."""

    outcomes: list[PayloadOutcome] = field(default_factory=list)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    content_objects: int = 0
    destination_paths: int = 0
    aliases: int = 0
    bytes_written: int = 0
    cancelled: bool = False

    def _count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(FAILED)

    @property
    def skipped(self) -> int:
        return self._count(SKIPPED)

    @property
    def cancelled_payloads(self) -> int:
        return self._count(CANCELLED)

    @property
    def failures(self) -> list[PayloadOutcome]:
        return [o for o in self.outcomes if o.status == FAILED]

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        if self.failed == 0:
            return EXIT_SUCCESS
        if self.succeeded > 0:
            return EXIT_PARTIAL
        return EXIT_TOTAL_FAILURE

    def to_dict(self) -> dict[str, Any]:
        return {
            "payloads": [o.to_dict() for o in self.outcomes],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "stats": {
                "succeeded": self.succeeded,
                "failed": self.failed,
                "skipped": self.skipped,
                "cancelled": self.cancelled_payloads,
                "conflicts": len(self.conflicts),
                "content_objects": self.content_objects,
                "destination_paths": self.destination_paths,
                "aliases": self.aliases,
                "bytes_written": self.bytes_written,
            },
        }
