"""
Archive readers, one per payload archive family.

Every reader offers the same two capabilities:
- list_entries(): relative paths of the files the archive contributes
- iter_entries(): lazy (relative path, content) pairs

The reader is picked from the payload's declared format, never by sniffing
file contents. Readers are context managers; scratch space they create is
removed on every exit path.
"""

import gzip
import lzma
import re
import struct
import tarfile
import tempfile
import zipfile
import zlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

from .cab_reader import Cabinet, extract_with_cabextract
from .errors import ArchiveCorrupt, UnsupportedFormat
from .models import Payload, PayloadFormat, normalize_member_path
from .msi_reader import MsiDatabase

# OPC package metadata never contributed to the tree
PACKAGE_METADATA = ("[Content_Types].xml", "_rels/", "package/")
VSIX_CONTENT_ROOT = "Contents/"


class ArchiveReader(ABC):
    """Decoder for one payload archive."""

    def __init__(
        self,
        payload: Payload,
        scratch_root: Path | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self.payload = payload
        self.archive_path = payload.archive_path
        self.scratch_root = scratch_root
        self.should_stop = should_stop
        self._scratch: tempfile.TemporaryDirectory[str] | None = None

    def __enter__(self) -> "ArchiveReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        if self._scratch is not None:
            self._scratch.cleanup()
            self._scratch = None

    def scratch_dir(self) -> Path:
        """Per-reader scratch directory, created on first use."""
        if self._scratch is None:
            if self.scratch_root is not None:
                self.scratch_root.mkdir(parents=True, exist_ok=True)
            prefix = "sdk-" + re.sub(r"[^A-Za-z0-9_.-]", "_", self.payload.id)[:40] + "-"
            self._scratch = tempfile.TemporaryDirectory(prefix=prefix, dir=self.scratch_root)
        return Path(self._scratch.name)

    def stopping(self) -> bool:
        return self.should_stop is not None and self.should_stop()

    def list_entries(self) -> list[str]:
        return [path for path, _ in self.iter_entries()]

    @abstractmethod
    def iter_entries(self) -> Iterator[tuple[str, bytes]]:
        """Yield (relative path, content) pairs."""


class CabinetReader(ArchiveReader):
    def list_entries(self) -> list[str]:
        cabinet = Cabinet.from_file(self.archive_path)
        return [p for p in (normalize_member_path(m.name) for m in cabinet.members) if p]

    def iter_entries(self) -> Iterator[tuple[str, bytes]]:
        cabinet = Cabinet.from_file(self.archive_path)
        if cabinet.needs_external_decoder:
            members: Iterator[tuple[str, bytes]] = extract_with_cabextract(self.archive_path, self.scratch_dir())
        else:
            members = ((m.name, content) for m, content in cabinet.iter_members(self.stopping))
        for name, content in members:
            path = normalize_member_path(name)
            if path is not None:
                yield path, content


class InstallerDatabaseReader(ArchiveReader):
    """Installer databases; external cabinets are looked up next to the .msi."""

    def list_entries(self) -> list[str]:
        with MsiDatabase.open(self.archive_path) as db:
            return sorted(p for p in (normalize_member_path(v) for v in db.file_paths().values()) if p)

    def iter_entries(self) -> Iterator[tuple[str, bytes]]:
        with MsiDatabase.open(self.archive_path) as db:
            for name, content in db.iter_files(self.archive_path.parent, self.scratch_dir, self.stopping):
                path = normalize_member_path(name)
                if path is not None:
                    yield path, content


class PackageArchiveReader(ArchiveReader):
    """Zip-based packages (.zip, .nupkg, .vsix)."""

    content_root = ""

    def _member_path(self, name: str) -> str | None:
        if self.content_root:
            if not name.startswith(self.content_root):
                return None
            name = name[len(self.content_root) :]
        elif name.startswith(PACKAGE_METADATA) or (name.endswith(".nuspec") and "/" not in name):
            return None
        return normalize_member_path(name)

    def _open(self) -> zipfile.ZipFile:
        try:
            return zipfile.ZipFile(self.archive_path, "r")
        except zipfile.BadZipFile as e:
            raise ArchiveCorrupt(f"{self.archive_path.name}: {e}") from e

    def list_entries(self) -> list[str]:
        with self._open() as zf:
            return [p for p in (self._member_path(i.filename) for i in zf.infolist() if not i.is_dir()) if p]

    def iter_entries(self) -> Iterator[tuple[str, bytes]]:
        with self._open() as zf:
            for info in zf.infolist():
                if self.stopping():
                    return
                if info.is_dir():
                    continue
                path = self._member_path(info.filename)
                if path is None:
                    continue
                try:
                    content = zf.read(info)
                except (zipfile.BadZipFile, zlib.error, EOFError) as e:
                    raise ArchiveCorrupt(f"{self.archive_path.name}: {info.filename}: {e}") from e
                yield path, content


class VsixReader(PackageArchiveReader):
    """Visual Studio extensions contribute only their Contents/ subtree."""

    content_root = VSIX_CONTENT_ROOT


class TarballReader(ArchiveReader):
    """Toolchain tarballs: .tar, .tar.gz, .tar.xz, .tar.zst."""

    def _open(self) -> tarfile.TarFile:
        name = self.archive_path.name.lower()
        if name.endswith(".tar.zst"):
            return tarfile.open(self._decompress_zstd(), "r:")
        if name.endswith(".tar.xz"):
            return tarfile.open(self.archive_path, "r:xz")
        if name.endswith((".tar.gz", ".tgz")):
            return tarfile.open(self.archive_path, "r:gz")
        return tarfile.open(self.archive_path, "r:*")

    def _decompress_zstd(self) -> Path:
        """Decompress to a scratch .tar so hard-linked members can be resolved."""
        try:
            import zstandard as zstd
        except ImportError as e:
            raise ImportError("zstandard module required!\n" "Install with: pip install zstandard") from e

        tar_path = self.scratch_dir() / "payload.tar"
        dctx = zstd.ZstdDecompressor()
        try:
            with open(self.archive_path, "rb") as ifh, open(tar_path, "wb") as ofh:
                dctx.copy_stream(ifh, ofh)
        except zstd.ZstdError as e:
            raise ArchiveCorrupt(f"{self.archive_path.name}: {e}") from e
        return tar_path

    def iter_entries(self) -> Iterator[tuple[str, bytes]]:
        try:
            with self._open() as tar:
                for member in tar:
                    if self.stopping():
                        return
                    if not (member.isfile() or member.islnk()):
                        continue
                    path = normalize_member_path(member.name)
                    if path is None:
                        continue
                    fileobj = tar.extractfile(member)
                    if fileobj is None:
                        continue
                    with fileobj:
                        yield path, fileobj.read()
        except (tarfile.TarError, lzma.LZMAError, gzip.BadGzipFile, zlib.error, EOFError, struct.error) as e:
            raise ArchiveCorrupt(f"{self.archive_path.name}: {e}") from e


READERS: dict[PayloadFormat, type[ArchiveReader]] = {
    PayloadFormat.CAB: CabinetReader,
    PayloadFormat.MSI: InstallerDatabaseReader,
    PayloadFormat.ZIP: PackageArchiveReader,
    PayloadFormat.NUPKG: PackageArchiveReader,
    PayloadFormat.VSIX: VsixReader,
    PayloadFormat.TAR: TarballReader,
}


def open_reader(
    payload: Payload,
    scratch_root: Path | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> ArchiveReader:
    """Select the reader for a payload's declared format."""
    reader_cls = READERS.get(payload.format) if payload.format is not None else None
    if reader_cls is None:
        raise UnsupportedFormat(f"{payload.id}: unsupported payload type {payload.declared_type or '?'!r}")
    return reader_cls(payload, scratch_root=scratch_root, should_stop=should_stop)
