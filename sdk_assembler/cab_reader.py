"""
Microsoft cabinet (.cab) decoding.

Stored and MSZIP folders are decoded natively. MSZIP is raw deflate split
into blocks of at most 32 KB, each prefixed with a "CK" signature, with the
previous block's output acting as the preset dictionary of the next one.
LZX and Quantum folders are handed to an external `cabextract` when one is
installed.
"""

import shutil
import struct
import subprocess
import sys
import zlib
from array import array
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from functools import reduce
from operator import xor
from pathlib import Path

from .errors import ArchiveCorrupt

# ============================================================================
# Configuration
# ============================================================================

CAB_SIGNATURE = b"MSCF"

COMPRESSION_NONE = 0
COMPRESSION_MSZIP = 1
COMPRESSION_QUANTUM = 2
COMPRESSION_LZX = 3
COMPRESSION_NAMES = {0: "none", 1: "MSZIP", 2: "Quantum", 3: "LZX"}

FLAG_PREV_CABINET = 0x0001
FLAG_NEXT_CABINET = 0x0002
FLAG_RESERVE_PRESENT = 0x0004

ATTR_NAME_IS_UTF = 0x80

# iFolder values >= this mark files continued across a cabinet set
CONTINUED_FOLDER = 0xFFFD

MSZIP_SIGNATURE = b"CK"
MSZIP_WINDOW = 32 * 1024

_HEADER = struct.Struct("<4sIIIIIBBHHHHH")
_FOLDER = struct.Struct("<IHH")
_FILE = struct.Struct("<IIHHHH")
_DATA = struct.Struct("<IHH")


def cab_checksum(data: bytes, seed: int = 0) -> int:
    """Compute the CFDATA checksum (XOR of little-endian 32-bit words)."""
    whole = len(data) - len(data) % 4
    words = array("I", data[:whole])
    if sys.byteorder == "big":
        words.byteswap()
    csum = reduce(xor, words, seed)
    tail = data[whole:]
    ul = 0
    for byte in tail:
        ul = (ul << 8) | byte
    return (csum ^ ul) & 0xFFFFFFFF


def _read_cstring(data: bytes, offset: int) -> tuple[bytes, int]:
    end = data.find(b"\0", offset)
    if end < 0:
        raise ArchiveCorrupt(f"unterminated string at offset {offset}")
    return data[offset:end], end + 1


@dataclass(frozen=True)
class CabFolder:
    data_offset: int
    block_count: int
    compression: int

    @property
    def compression_name(self) -> str:
        return COMPRESSION_NAMES.get(self.compression, f"unknown({self.compression})")


@dataclass(frozen=True)
class CabMember:
    name: str
    size: int
    folder: int
    offset: int


class Cabinet:
    """A parsed cabinet held in memory."""

    def __init__(self, data: bytes, name: str = "<cabinet>") -> None:
        self.data = data
        self.name = name
        self.folders: list[CabFolder] = []
        self.members: list[CabMember] = []
        self._data_reserve = 0
        try:
            self._parse()
        except struct.error as e:
            raise ArchiveCorrupt(f"{name}: truncated cabinet ({e})") from e

    @classmethod
    def from_file(cls, path: Path | str) -> "Cabinet":
        path = Path(path)
        return cls(path.read_bytes(), name=path.name)

    @property
    def needs_external_decoder(self) -> bool:
        return any(f.compression not in (COMPRESSION_NONE, COMPRESSION_MSZIP) for f in self.folders)

    def _parse(self) -> None:
        data = self.data
        (
            signature,
            _reserved1,
            cabinet_size,
            _reserved2,
            files_offset,
            _reserved3,
            _minor,
            major,
            folder_count,
            file_count,
            flags,
            _set_id,
            _index,
        ) = _HEADER.unpack_from(data, 0)

        if signature != CAB_SIGNATURE:
            raise ArchiveCorrupt(f"{self.name}: bad cabinet signature {signature!r}")
        if major != 1:
            raise ArchiveCorrupt(f"{self.name}: unsupported cabinet version {major}")
        if cabinet_size > len(data):
            raise ArchiveCorrupt(f"{self.name}: cabinet truncated ({len(data)} of {cabinet_size} bytes)")

        offset = _HEADER.size
        folder_reserve = 0
        if flags & FLAG_RESERVE_PRESENT:
            header_reserve, folder_reserve, self._data_reserve = struct.unpack_from("<HBB", data, offset)
            offset += 4 + header_reserve
        if flags & FLAG_PREV_CABINET:
            _, offset = _read_cstring(data, offset)
            _, offset = _read_cstring(data, offset)
        if flags & FLAG_NEXT_CABINET:
            _, offset = _read_cstring(data, offset)
            _, offset = _read_cstring(data, offset)

        for _ in range(folder_count):
            data_offset, block_count, compression = _FOLDER.unpack_from(data, offset)
            offset += _FOLDER.size + folder_reserve
            if data_offset >= len(data) and block_count:
                raise ArchiveCorrupt(f"{self.name}: folder data offset {data_offset} out of range")
            self.folders.append(CabFolder(data_offset, block_count, compression & 0x000F))

        offset = files_offset
        for _ in range(file_count):
            size, folder_offset, folder, _date, _time, attribs = _FILE.unpack_from(data, offset)
            raw_name, offset = _read_cstring(data, offset + _FILE.size)
            name = raw_name.decode("utf-8" if attribs & ATTR_NAME_IS_UTF else "latin-1")
            if folder >= CONTINUED_FOLDER:
                raise ArchiveCorrupt(f"{self.name}: {name} spans multiple cabinets (not supported)")
            if folder >= len(self.folders):
                raise ArchiveCorrupt(f"{self.name}: {name} references missing folder {folder}")
            self.members.append(CabMember(name, size, folder, folder_offset))

    def _iter_blocks(self, folder: CabFolder) -> Iterator[bytes]:
        """Yield the uncompressed blocks of one folder in order."""
        data = self.data
        offset = folder.data_offset
        history = b""
        for index in range(folder.block_count):
            try:
                checksum, packed_size, unpacked_size = _DATA.unpack_from(data, offset)
            except struct.error as e:
                raise ArchiveCorrupt(f"{self.name}: data block {index} header truncated ({e})") from e
            start = offset + _DATA.size + self._data_reserve
            packed = data[start : start + packed_size]
            if len(packed) != packed_size:
                raise ArchiveCorrupt(f"{self.name}: data block {index} truncated")
            if checksum:
                actual = cab_checksum(struct.pack("<HH", packed_size, unpacked_size), cab_checksum(packed))
                if actual != checksum:
                    raise ArchiveCorrupt(f"{self.name}: checksum mismatch in data block {index}")
            offset = start + packed_size

            if folder.compression == COMPRESSION_NONE:
                block = packed
            elif folder.compression == COMPRESSION_MSZIP:
                block = _inflate_mszip(packed, history, self.name, index)
                history = block[-MSZIP_WINDOW:]
            else:
                raise ArchiveCorrupt(f"{self.name}: {folder.compression_name} folders need an external decoder")

            if len(block) != unpacked_size:
                raise ArchiveCorrupt(
                    f"{self.name}: data block {index} decoded to {len(block)} bytes, expected {unpacked_size}"
                )
            yield block

    def iter_members(self, should_stop: Callable[[], bool] | None = None) -> Iterator[tuple[CabMember, bytes]]:
        """Yield (member, content) pairs, decoding each folder once as a stream."""
        by_folder: dict[int, list[CabMember]] = {}
        for member in self.members:
            by_folder.setdefault(member.folder, []).append(member)

        for folder_index in sorted(by_folder):
            pending = sorted(by_folder[folder_index], key=lambda m: (m.offset, m.name))
            buffer = bytearray()
            base = 0
            blocks = self._iter_blocks(self.folders[folder_index])
            for position, member in enumerate(pending):
                end = member.offset + member.size
                while base + len(buffer) < end:
                    if should_stop is not None and should_stop():
                        return
                    block = next(blocks, None)
                    if block is None:
                        raise ArchiveCorrupt(f"{self.name}: {member.name} extends past the end of its folder")
                    buffer += block
                if member.offset < base:
                    raise ArchiveCorrupt(f"{self.name}: {member.name} overlaps an earlier member")
                content = bytes(buffer[member.offset - base : end - base])
                yield member, content
                # Keep bytes the next member may share with this one
                next_offset = pending[position + 1].offset if position + 1 < len(pending) else end
                drop = min(end, next_offset) - base
                if drop > 0:
                    del buffer[:drop]
                    base += drop


def _inflate_mszip(packed: bytes, history: bytes, name: str, index: int) -> bytes:
    if packed[:2] != MSZIP_SIGNATURE:
        raise ArchiveCorrupt(f"{name}: MSZIP block {index} missing CK signature")
    try:
        if history:
            inflater = zlib.decompressobj(-zlib.MAX_WBITS, zdict=history)
        else:
            inflater = zlib.decompressobj(-zlib.MAX_WBITS)
        return inflater.decompress(packed[2:]) + inflater.flush()
    except zlib.error as e:
        raise ArchiveCorrupt(f"{name}: MSZIP block {index} is corrupt ({e})") from e


# ============================================================================
# External decoder (LZX / Quantum)
# ============================================================================


def cabextract_available() -> bool:
    return shutil.which("cabextract") is not None


def extract_with_cabextract(cab_path: Path, scratch_dir: Path) -> Iterator[tuple[str, bytes]]:
    """Extract a cabinet with the external cabextract tool into scratch_dir."""
    if not cabextract_available():
        raise ArchiveCorrupt(
            f"{cab_path.name}: LZX/Quantum cabinets need cabextract.\n"
            "Install cabextract: https://www.cabextract.org.uk/"
        )

    out_dir = scratch_dir / f"{cab_path.name}.d"
    out_dir.mkdir(parents=True, exist_ok=True)
    try:
        subprocess.run(
            ["cabextract", "-q", "-d", str(out_dir), str(cab_path)],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise ArchiveCorrupt(f"{cab_path.name}: cabextract failed: {e.stderr.strip()}") from e

    for item in sorted(out_dir.rglob("*")):
        if item.is_file():
            yield item.relative_to(out_dir).as_posix(), item.read_bytes()
