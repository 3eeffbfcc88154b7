"""
Payload manifests written by the downloader.

Each payload directory may carry a payload.json describing the archive and
the files it contributes:

    {
      "id": "Win11SDK_10.0.22621_Headers",
      "version": "10.0.22621.1",
      "type": "Msi",
      "fileName": "Installers/Windows SDK Desktop Headers x64-x86_en-us.msi",
      "sha256": "…",
      "size": 123456,
      "files": [{"path": "Include/um/Windows.h", "sha256": "…", "size": 2048}]
    }

The ManifestIndex built from the "files" list validates extracted content
(HashMismatch on tampering) and can short-circuit hashing when the declared
hash is trusted.
"""

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ArchiveCorrupt, HashMismatch
from .models import ManifestEntry, fold_path, normalize_member_path

PAYLOAD_MANIFEST_NAME = "payload.json"


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def get_file_hash(filepath: Path | str, algorithm: str = "sha256") -> str:
    """Calculate hash of a file."""
    h = hashlib.new(algorithm)
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


@dataclass
class PayloadManifest:
    id: str | None = None
    version: str = ""
    declared_type: str = ""
    file_name: str | None = None
    sha256: str | None = None
    size: int | None = None
    files: list[ManifestEntry] = field(default_factory=list)


def _optional_hash(value: Any, where: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or len(value) != 64:
        raise ArchiveCorrupt(f"{where}: invalid sha256 {value!r}")
    try:
        bytes.fromhex(value)
    except ValueError as e:
        raise ArchiveCorrupt(f"{where}: invalid sha256 {value!r}") from e
    return value.lower()


def parse_payload_manifest(raw: bytes, source: str = PAYLOAD_MANIFEST_NAME) -> PayloadManifest:
    """Parse payload.json bytes. Pure function of its input."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ArchiveCorrupt(f"{source}: invalid manifest JSON ({e})") from e
    if not isinstance(data, dict):
        raise ArchiveCorrupt(f"{source}: manifest must be a JSON object")

    entries = []
    for index, item in enumerate(data.get("files") or []):
        if not isinstance(item, dict) or not isinstance(item.get("path"), str):
            raise ArchiveCorrupt(f"{source}: files[{index}] has no path")
        path = normalize_member_path(item["path"])
        if path is None:
            raise ArchiveCorrupt(f"{source}: files[{index}] has an empty path")
        size = item.get("size")
        if size is not None and (not isinstance(size, int) or size < 0):
            raise ArchiveCorrupt(f"{source}: files[{index}] has invalid size {size!r}")
        entries.append(ManifestEntry(path, _optional_hash(item.get("sha256"), f"{source}: {path}"), size))

    return PayloadManifest(
        id=data.get("id"),
        version=str(data.get("version") or ""),
        declared_type=str(data.get("type") or ""),
        file_name=data.get("fileName"),
        sha256=_optional_hash(data.get("sha256"), source),
        size=data.get("size"),
        files=entries,
    )


def load_payload_manifest(path: Path) -> PayloadManifest:
    return parse_payload_manifest(path.read_bytes(), source=str(path))


class ManifestIndex:
    """Declared files of one payload, keyed by relative path."""

    def __init__(self, entries: list[ManifestEntry] | None = None) -> None:
        self.entries: dict[str, ManifestEntry] = {}
        self._folded: dict[str, ManifestEntry] = {}
        for entry in entries or []:
            self.entries[entry.path] = entry
            self._folded.setdefault(fold_path(entry.path), entry)

    @classmethod
    def load(cls, manifest_path: Path | None) -> "ManifestIndex":
        if manifest_path is None or not manifest_path.exists():
            return cls()
        return cls(load_payload_manifest(manifest_path).files)

    def __len__(self) -> int:
        return len(self.entries)

    def lookup(self, path: str) -> ManifestEntry | None:
        return self.entries.get(path) or self._folded.get(fold_path(path))

    def verify(self, path: str, data: bytes, trust_declared: bool = False) -> str:
        """
        Validate extracted content against its declaration and return its sha256.

        Without a declaration the hash is computed empirically. With
        trust_declared, a declared hash whose size matches is returned
        without re-hashing.
        """
        entry = self.lookup(path)
        if entry is None:
            return sha256_bytes(data)
        if entry.size is not None and entry.size != len(data):
            raise HashMismatch(path, str(entry.size), str(len(data)), what="size")
        if entry.sha256 is None:
            return sha256_bytes(data)
        if trust_declared:
            return entry.sha256
        actual = sha256_bytes(data)
        if actual != entry.sha256:
            raise HashMismatch(path, entry.sha256, actual)
        return actual

    def missing(self, seen: set[str]) -> list[str]:
        """Declared paths that were not produced by the archive."""
        seen_folded = {fold_path(p) for p in seen}
        return sorted(p for p in self.entries if p not in seen and fold_path(p) not in seen_folded)
