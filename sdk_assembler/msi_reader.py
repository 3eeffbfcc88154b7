"""
Windows Installer database (.msi) decoding.

An MSI is an OLE compound document whose streams hold a small relational
database. The tables never store a file's path directly: a File row names a
Component, the Component names a Directory, and each Directory row names its
parent. File bytes live in cabinets listed by the Media table, either as
embedded "#name" streams or as .cab files next to the .msi, and cabinet
members are named by File table keys.

Decoding steps:
1. Decode OLE stream names (MSI packs two name characters into one)
2. Load the string table from _StringPool / _StringData
3. Read table schemas from _Columns
4. Decode column-major table streams into rows
5. Resolve File -> Component -> Directory into relative paths
6. Pull member bytes out of the cabinets listed in Media
"""

import struct
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import olefile

from .cab_reader import Cabinet, extract_with_cabextract
from .errors import ArchiveCorrupt

# ============================================================================
# Configuration
# ============================================================================

STREAM_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz._"
TABLE_PREFIX = "!"

STRING_POOL_STREAM = "!_StringPool"
STRING_DATA_STREAM = "!_StringData"
COLUMNS_STREAM = "!_Columns"

# Column type bits
MSITYPE_VALID = 0x0100
MSITYPE_STRING = 0x0800
MSITYPE_NULLABLE = 0x1000
MSITYPE_KEY = 0x2000

LONG_STRING_REFS = 0x8000

# Directory keys installed to conventional locations rather than by DefaultDir
WELL_KNOWN_FOLDERS = {
    "ProgramFilesFolder": "Program Files",
    "ProgramFiles64Folder": "Program Files",
    "ProgramFiles6432Folder": "Program Files",
    "CommonFilesFolder": "Program Files/Common Files",
    "CommonFiles64Folder": "Program Files/Common Files",
    "WindowsFolder": "Windows",
    "SystemFolder": "Windows/System32",
    "System64Folder": "Windows/System32",
}


def decode_stream_name(raw: str) -> str:
    """Decode an MSI-mangled OLE stream name; table streams gain a "!" prefix."""
    out = []
    for char in raw:
        code = ord(char)
        if 0x3800 <= code < 0x4800:
            code -= 0x3800
            out.append(STREAM_ALPHABET[code & 0x3F])
            out.append(STREAM_ALPHABET[(code >> 6) & 0x3F])
        elif 0x4800 <= code < 0x4840:
            out.append(STREAM_ALPHABET[code - 0x4800])
        elif code == 0x4840:
            out.append(TABLE_PREFIX)
        else:
            out.append(char)
    return "".join(out)


def _codepage_encoding(codepage: int) -> str:
    if codepage == 65001:
        return "utf-8"
    if codepage == 0:
        return "cp1252"
    encoding = f"cp{codepage}"
    try:
        "".encode(encoding)
    except LookupError:
        return "latin-1"
    return encoding


def parse_string_table(pool: bytes, data: bytes) -> tuple[list[str], bool]:
    """
    Parse the MSI string table.

    Returns the strings indexed by string id (id 0 is the null string) and
    whether string references in tables are 3 bytes wide.
    """
    if len(pool) < 4:
        raise ArchiveCorrupt("string pool too short")
    count = len(pool) // 4
    words = struct.unpack_from(f"<{count * 2}H", pool)
    codepage = words[0] | ((words[1] & 0x7FFF) << 16)
    long_refs = bool(words[1] & LONG_STRING_REFS)
    encoding = _codepage_encoding(codepage)

    strings = [""]
    offset = 0
    i = 1
    while i < count:
        length, refs = words[i * 2], words[i * 2 + 1]
        if length == 0 and refs == 0:
            strings.append("")
            i += 1
            continue
        if length == 0:
            # Strings of 64K or more borrow the following entry for the length
            if i + 1 >= count:
                raise ArchiveCorrupt("string pool ends inside a long string entry")
            length = (words[i * 2 + 3] << 16) + words[i * 2 + 2]
            i += 2
        else:
            i += 1
        chunk = data[offset : offset + length]
        if len(chunk) != length:
            raise ArchiveCorrupt(f"string data truncated at string {len(strings)}")
        strings.append(chunk.decode(encoding, errors="replace"))
        offset += length
    return strings, long_refs


def _column_width(col_type: int, ref_size: int) -> int:
    if (col_type & ~MSITYPE_NULLABLE) == (MSITYPE_STRING | MSITYPE_VALID):
        return 2  # binary stream reference
    if col_type & MSITYPE_STRING:
        return ref_size
    return 2 if (col_type & 0xFF) <= 2 else 4


class TableRow(dict):
    """A decoded row. Reading a column the table does not have is a corrupt database."""

    def __init__(self, table: str) -> None:
        super().__init__()
        self.table = table

    def __missing__(self, column: str) -> Any:
        raise ArchiveCorrupt(f"{self.table} table has no {column} column")


class MsiDatabase:
    """Read-only view of the tables of an installer database."""

    def __init__(self, streams: dict[str, Callable[[], bytes]], name: str = "<msi>", ole: Any = None) -> None:
        self.name = name
        self._streams = streams
        self._ole = ole
        self._strings: list[str] | None = None
        self._ref_size = 2
        self._schema: dict[str, list[tuple[str, int]]] | None = None

    @classmethod
    def open(cls, path: Path | str) -> "MsiDatabase":
        path = Path(path)
        if not olefile.isOleFile(str(path)):
            raise ArchiveCorrupt(f"{path.name}: not an OLE compound document")
        try:
            ole = olefile.OleFileIO(str(path))
        except (OSError, ValueError) as e:
            raise ArchiveCorrupt(f"{path.name}: unreadable OLE container ({e})") from e

        streams = {}
        for entry in ole.listdir(streams=True, storages=False):
            if len(entry) != 1:
                continue
            streams[decode_stream_name(entry[0])] = lambda entry=entry: ole.openstream(entry).read()
        return cls(streams, name=path.name, ole=ole)

    @classmethod
    def from_streams(cls, streams: dict[str, bytes], name: str = "<msi>") -> "MsiDatabase":
        return cls({key: (lambda value=value: value) for key, value in streams.items()}, name=name)

    def close(self) -> None:
        if self._ole is not None:
            self._ole.close()
            self._ole = None

    def __enter__(self) -> "MsiDatabase":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def has_stream(self, name: str) -> bool:
        return name in self._streams

    def read_stream(self, name: str) -> bytes:
        if name not in self._streams:
            raise ArchiveCorrupt(f"{self.name}: missing stream {name}")
        return self._streams[name]()

    @property
    def strings(self) -> list[str]:
        if self._strings is None:
            self._strings, long_refs = parse_string_table(
                self.read_stream(STRING_POOL_STREAM), self.read_stream(STRING_DATA_STREAM)
            )
            self._ref_size = 3 if long_refs else 2
        return self._strings

    def _string(self, ref: int) -> str | None:
        if ref == 0:
            return None
        if ref >= len(self.strings):
            raise ArchiveCorrupt(f"{self.name}: string reference {ref} out of range")
        return self.strings[ref]

    def _decode_columns(self, table: str, data: bytes, columns: list[tuple[str, int]]) -> list[dict[str, Any]]:
        widths = [_column_width(col_type, self._ref_size) for _, col_type in columns]
        row_size = sum(widths)
        if row_size == 0:
            return []
        row_count = len(data) // row_size
        if row_count * row_size != len(data):
            raise ArchiveCorrupt(f"{self.name}: table stream size {len(data)} is not a multiple of {row_size}")

        rows: list[dict[str, Any]] = [TableRow(table) for _ in range(row_count)]
        offset = 0
        for (name, col_type), width in zip(columns, widths):
            for row in rows:
                raw = int.from_bytes(data[offset : offset + width], "little")
                offset += width
                if (col_type & ~MSITYPE_NULLABLE) == (MSITYPE_STRING | MSITYPE_VALID):
                    row[name] = raw or None
                elif col_type & MSITYPE_STRING:
                    row[name] = self._string(raw)
                elif raw == 0:
                    row[name] = None
                elif width == 2:
                    row[name] = raw - 0x8000
                else:
                    row[name] = raw - 0x80000000
        return rows

    @property
    def schema(self) -> dict[str, list[tuple[str, int]]]:
        """Table name -> ordered (column name, column type) pairs."""
        if self._schema is None:
            self.strings  # resolves the string reference width
            system = [
                ("Table", MSITYPE_VALID | MSITYPE_STRING | MSITYPE_KEY | 64),
                ("Number", MSITYPE_VALID | MSITYPE_KEY | 2),
                ("Name", MSITYPE_VALID | MSITYPE_STRING | 64),
                ("Type", MSITYPE_VALID | 2),
            ]
            numbered: dict[str, list[tuple[int, str, int]]] = {}
            for row in self._decode_columns("_Columns", self.read_stream(COLUMNS_STREAM), system):
                if row["Table"] is None or row["Name"] is None or row["Number"] is None:
                    raise ArchiveCorrupt(f"{self.name}: malformed _Columns row {row}")
                numbered.setdefault(row["Table"], []).append((row["Number"], row["Name"], row["Type"] or 0))
            self._schema = {
                table: [(name, col_type) for _, name, col_type in sorted(cols)] for table, cols in numbered.items()
            }
        return self._schema

    def table(self, name: str) -> list[dict[str, Any]]:
        """Decode all rows of a table; tables without a stream are empty."""
        columns = self.schema.get(name)
        if columns is None:
            raise ArchiveCorrupt(f"{self.name}: no {name} table")
        stream = TABLE_PREFIX + name
        if not self.has_stream(stream):
            return []
        try:
            return self._decode_columns(name, self.read_stream(stream), columns)
        except struct.error as e:
            raise ArchiveCorrupt(f"{self.name}: table {name} is corrupt ({e})") from e

    # ------------------------------------------------------------------------
    # Relational resolution
    # ------------------------------------------------------------------------

    def directory_paths(self) -> dict[str, str]:
        """Resolve every Directory key to a relative target path."""
        rows = {row["Directory"]: row for row in self.table("Directory")}
        resolved: dict[str, str] = {}

        def resolve(key: str, visiting: frozenset[str]) -> str:
            if key in resolved:
                return resolved[key]
            if key in WELL_KNOWN_FOLDERS:
                resolved[key] = WELL_KNOWN_FOLDERS[key]
                return resolved[key]
            if key in visiting:
                raise ArchiveCorrupt(f"{self.name}: Directory table cycle at {key}")
            row = rows.get(key)
            if row is None:
                raise ArchiveCorrupt(f"{self.name}: unknown directory {key}")
            parent = row["Directory_Parent"]
            if not parent or parent == key:
                path = ""
            else:
                base = resolve(parent, visiting | {key})
                name = target_long_name(row["DefaultDir"] or ".")
                path = base if name == "." else "/".join(p for p in (base, name) if p)
            resolved[key] = path
            return path

        for key in rows:
            resolve(key, frozenset())
        return resolved

    def file_paths(self) -> dict[str, str]:
        """Map File table keys to relative target paths."""
        directories = self.directory_paths()
        components = {row["Component"]: row for row in self.table("Component")}
        paths = {}
        for row in self.table("File"):
            component = components.get(row["Component_"])
            if component is None:
                raise ArchiveCorrupt(f"{self.name}: file {row['File']} references unknown component")
            directory = directories.get(component["Directory_"])
            if directory is None:
                raise ArchiveCorrupt(f"{self.name}: component {row['Component_']} references unknown directory")
            name = target_long_name(row["FileName"] or "")
            paths[row["File"]] = "/".join(p for p in (directory, name) if p)
        return paths

    def cabinet_names(self) -> list[str]:
        """Cabinet references from the Media table, in disk order."""
        if "Media" not in self.schema:
            return []
        media = sorted(self.table("Media"), key=lambda row: row["DiskId"] or 0)
        return [row["Cabinet"] for row in media if row.get("Cabinet")]

    def iter_files(
        self,
        msi_dir: Path,
        scratch_dir: Callable[[], Path],
        should_stop: Callable[[], bool] | None = None,
    ) -> Iterator[tuple[str, bytes]]:
        """Yield (relative path, content) for every file stored in the database's cabinets."""
        paths = self.file_paths()
        found: set[str] = set()
        for cabinet_name in self.cabinet_names():
            for key, content in self._iter_cabinet(cabinet_name, msi_dir, scratch_dir, should_stop):
                if should_stop is not None and should_stop():
                    return
                path = paths.get(key)
                if path is None:
                    print(f"  ⚠️  {self.name}: cabinet member {key} has no File row, skipping")
                    continue
                found.add(key)
                yield path, content

        missing = sorted(set(paths) - found)
        if missing:
            print(f"  ⚠️  {self.name}: {len(missing)} files are not stored in any cabinet (e.g. {missing[0]})")

    def _iter_cabinet(
        self,
        cabinet_name: str,
        msi_dir: Path,
        scratch_dir: Callable[[], Path],
        should_stop: Callable[[], bool] | None,
    ) -> Iterator[tuple[str, bytes]]:
        if cabinet_name.startswith("#"):
            stream = cabinet_name[1:]
            data = self.read_stream(stream)
            cabinet = Cabinet(data, name=stream)
            if cabinet.needs_external_decoder:
                cab_path = scratch_dir() / "embedded" / stream
                cab_path.parent.mkdir(parents=True, exist_ok=True)
                cab_path.write_bytes(data)
                yield from extract_with_cabextract(cab_path, scratch_dir())
                return
        else:
            cab_path = find_case_insensitive(msi_dir, cabinet_name)
            if cab_path is None:
                raise ArchiveCorrupt(f"{self.name}: external cabinet {cabinet_name} not found in {msi_dir}")
            cabinet = Cabinet.from_file(cab_path)
            if cabinet.needs_external_decoder:
                yield from extract_with_cabextract(cab_path, scratch_dir())
                return

        for member, content in cabinet.iter_members(should_stop):
            yield member.name, content


def target_long_name(value: str) -> str:
    """Pick the long target name from "target:source" and "short|long" forms."""
    target = value.split(":", 1)[0]
    return target.split("|")[-1]


def find_case_insensitive(directory: Path, name: str) -> Path | None:
    candidate = directory / name
    if candidate.is_file():
        return candidate
    wanted = name.lower()
    for item in directory.iterdir():
        if item.name.lower() == wanted and item.is_file():
            return item
    return None
