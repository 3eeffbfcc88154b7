"""Builders for synthetic payload archives used across the test suite."""

import io
import json
import os
import struct
import tarfile
import zipfile
import zlib
from collections.abc import Iterator
from pathlib import Path

from sdk_assembler.cab_reader import cab_checksum
from sdk_assembler.content_store import STORE_DIR_NAME
from sdk_assembler.msi_reader import STREAM_ALPHABET

# ============================================================================
# Cabinets
# ============================================================================


def build_cabinet(
    files: list[tuple[str, bytes]],
    compression: str = "none",
    checksum: bool = True,
    block_size: int = 32 * 1024,
) -> bytes:
    """Build a single-folder cabinet holding files in order."""
    stream = b"".join(content for _, content in files)
    blocks = [stream[i : i + block_size] for i in range(0, len(stream), block_size)]

    packed_blocks = []
    history = b""
    for block in blocks:
        if compression == "mszip":
            if history:
                compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS, zdict=history)
            else:
                compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
            packed = b"CK" + compressor.compress(block) + compressor.flush()
            history = block[-32 * 1024 :]
        else:
            packed = block
        packed_blocks.append((packed, len(block)))

    names = [name.encode("utf-8") + b"\0" for name, _ in files]
    header_size = 36
    folder_size = 8
    files_offset = header_size + folder_size
    files_size = sum(16 + len(name) for name in names)
    data_offset = files_offset + files_size
    data_size = sum(8 + len(packed) for packed, _ in packed_blocks)
    total = data_offset + data_size

    out = bytearray()
    out += struct.pack(
        "<4sIIIIIBBHHHHH",
        b"MSCF",
        0,
        total,
        0,
        files_offset,
        0,
        3,
        1,
        1,
        len(files),
        0,
        0x1234,
        0,
    )
    out += struct.pack("<IHH", data_offset, len(packed_blocks), 1 if compression == "mszip" else 0)

    offset = 0
    for (name, content), raw_name in zip(files, names):
        attribs = 0x80 if not name.isascii() else 0x20
        out += struct.pack("<IIHHHH", len(content), offset, 0, 0x5A21, 0x6000, attribs)
        out += raw_name
        offset += len(content)

    for packed, unpacked_size in packed_blocks:
        csum = cab_checksum(struct.pack("<HH", len(packed), unpacked_size), cab_checksum(packed)) if checksum else 0
        out += struct.pack("<IHH", csum, len(packed), unpacked_size)
        out += packed

    assert len(out) == total
    return bytes(out)


# ============================================================================
# Installer databases
# ============================================================================

# Column type codes
STRING_KEY = 0x0100 | 0x0800 | 0x2000 | 72
STRING = 0x0100 | 0x0800 | 72
STRING_NULLABLE = 0x0100 | 0x0800 | 0x1000 | 72
INT2 = 0x0100 | 2
INT2_KEY = 0x0100 | 0x2000 | 2
INT4 = 0x0100 | 4

STANDARD_SCHEMA = {
    "Directory": [("Directory", STRING_KEY), ("Directory_Parent", STRING_NULLABLE), ("DefaultDir", STRING)],
    "Component": [("Component", STRING_KEY), ("Directory_", STRING)],
    "File": [
        ("File", STRING_KEY),
        ("Component_", STRING),
        ("FileName", STRING),
        ("FileSize", INT4),
        ("Sequence", INT2),
    ],
    "Media": [("DiskId", INT2_KEY), ("LastSequence", INT2), ("Cabinet", STRING_NULLABLE)],
}


def encode_stream_name(name: str) -> str:
    """Mangle a stream name the way installer databases store it."""
    out = []
    if name.startswith("!"):
        out.append(chr(0x4840))
        name = name[1:]
    i = 0
    while i < len(name):
        first = STREAM_ALPHABET.find(name[i])
        if first < 0:
            out.append(name[i])
            i += 1
            continue
        second = STREAM_ALPHABET.find(name[i + 1]) if i + 1 < len(name) else -1
        if second >= 0:
            out.append(chr(0x3800 + first + (second << 6)))
            i += 2
        else:
            out.append(chr(0x4800 + first))
            i += 1
    return "".join(out)


class StringPoolBuilder:
    def __init__(self, codepage: int = 0) -> None:
        self.codepage = codepage
        self.strings: list[str] = []
        self.ids: dict[str, int] = {}

    def ref(self, value: str | None) -> int:
        if value is None:
            return 0
        if value not in self.ids:
            self.strings.append(value)
            self.ids[value] = len(self.strings)
        return self.ids[value]

    def streams(self) -> dict[str, bytes]:
        encoding = "utf-8" if self.codepage == 65001 else "cp1252"
        pool = bytearray(struct.pack("<HH", self.codepage & 0xFFFF, self.codepage >> 16))
        data = bytearray()
        for value in self.strings:
            raw = value.encode(encoding)
            pool += struct.pack("<HH", len(raw), 1)
            data += raw
        return {"!_StringPool": bytes(pool), "!_StringData": bytes(data)}


def _encode_table(pool: StringPoolBuilder, columns: list[tuple[str, int]], rows: list[tuple]) -> bytes:
    out = bytearray()
    for index, (_, col_type) in enumerate(columns):
        for row in rows:
            value = row[index]
            if col_type & 0x0800:
                out += struct.pack("<H", pool.ref(value))
            elif (col_type & 0xFF) <= 2:
                out += struct.pack("<H", 0 if value is None else value + 0x8000)
            else:
                out += struct.pack("<I", 0 if value is None else value + 0x80000000)
    return bytes(out)


def build_msi_streams(
    tables: dict[str, list[tuple]],
    schema: dict[str, list[tuple[str, int]]] | None = None,
    extra_streams: dict[str, bytes] | None = None,
) -> dict[str, bytes]:
    """Build decoded-name -> bytes streams for MsiDatabase.from_streams."""
    schema = schema or STANDARD_SCHEMA
    pool = StringPoolBuilder()
    streams: dict[str, bytes] = {}

    column_rows = []
    for table, columns in schema.items():
        for number, (name, col_type) in enumerate(columns, start=1):
            column_rows.append((table, number, name, col_type))
    system = [("Table", STRING_KEY), ("Number", INT2_KEY), ("Name", STRING), ("Type", INT2)]
    streams["!_Columns"] = _encode_table(pool, system, column_rows)

    for table, rows in tables.items():
        if rows:
            streams["!" + table] = _encode_table(pool, schema[table], rows)

    streams.update(pool.streams())
    streams.update(extra_streams or {})
    return streams


def sdk_msi_tables(files: list[tuple[str, str, str, int]], cabinet: str = "#data.cab") -> dict[str, list[tuple]]:
    """
    Tables for a small SDK installer.

    files are (file key, directory key, long file name, size); directory keys
    are INCLUDE_UM, INCLUDE_SHARED and LIB.
    """
    directories = [
        ("TARGETDIR", None, "SourceDir"),
        ("KITSROOT", "TARGETDIR", "WINDOW~1|Windows Kits:."),
        ("INCLUDE", "KITSROOT", "Include"),
        ("INCLUDE_UM", "INCLUDE", "um"),
        ("INCLUDE_SHARED", "INCLUDE", "shared"),
        ("LIB", "KITSROOT", "Lib"),
    ]
    components = [(f"C_{key}", key) for key in ("INCLUDE_UM", "INCLUDE_SHARED", "LIB")]
    file_rows = [
        (key, f"C_{directory}", f"{key[:6].upper()}~1.H|{name}", size, sequence)
        for sequence, (key, directory, name, size) in enumerate(files, start=1)
    ]
    return {
        "Directory": directories,
        "Component": components,
        "File": file_rows,
        "Media": [(1, len(files), cabinet)],
    }


# ============================================================================
# Package archives and tarballs
# ============================================================================


def build_zip(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def build_tar(files: dict[str, bytes], mode: str = "w") -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


# ============================================================================
# Source directories
# ============================================================================


def write_zip_payload(
    source: Path,
    payload_id: str,
    files: dict[str, bytes],
    manifest: bool = True,
    declared: dict[str, dict] | None = None,
) -> Path:
    """Write <source>/<payload_id>/<payload_id>.zip, with a payload.json when asked."""
    directory = source / payload_id
    directory.mkdir(parents=True, exist_ok=True)
    archive = directory / f"{payload_id}.zip"
    archive.write_bytes(build_zip(files))
    if manifest:
        entries = declared if declared is not None else {path: {} for path in files}
        write_manifest(directory, payload_id, "Zip", archive.name, entries)
    return directory


def write_manifest(
    directory: Path,
    payload_id: str,
    payload_type: str,
    file_name: str,
    entries: dict[str, dict],
    archive_sha256: str | None = None,
) -> Path:
    data = {
        "id": payload_id,
        "version": "1.0",
        "type": payload_type,
        "fileName": file_name,
        "files": [{"path": path, **extra} for path, extra in entries.items()],
    }
    if archive_sha256:
        data["sha256"] = archive_sha256
    path = directory / "payload.json"
    path.write_text(json.dumps(data, indent=2))
    return path


# ============================================================================
# Destination trees
# ============================================================================


def iter_logical_files(destination: Path) -> Iterator[Path]:
    """Walk the assembled tree, skipping the object pool and following no directory links."""
    for dirpath, dirnames, filenames in os.walk(destination):
        if Path(dirpath) == destination and STORE_DIR_NAME in dirnames:
            dirnames.remove(STORE_DIR_NAME)
        dirnames.sort()
        for name in sorted(filenames):
            yield Path(dirpath) / name
