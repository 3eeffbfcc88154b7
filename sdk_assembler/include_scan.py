"""
Alias headers under the casings that #include directives actually use.

Vendor headers include each other with inconsistent casing
(#include <WinDef.h> next to a windef.h on disk). After all payloads are
merged, every header in the namespace is scanned and each referenced name
that matches a header case-insensitively, but not exactly, gets an alias.

Linkers and compilers on case-sensitive hosts also ask for names like
kernel32.lib where the kit ships Kernel32.Lib, so every header and import
library is additionally exposed under its all-lowercase path.
"""

import re

from .case_merger import CaseFoldingMerger, DestinationEntry
from .models import fold_path

# ============================================================================
# Configuration
# ============================================================================

HEADER_SUFFIXES = (".h", ".hh", ".hpp", ".hxx", ".inl", ".idl")
IMPORT_LIBRARY_SUFFIXES = (".lib",)

INCLUDE_RE = re.compile(rb'^[ \t]*#[ \t]*include[ \t]*["<]([^">\r\n]+)[">]', re.MULTILINE)


def is_header(path: str) -> bool:
    return path.lower().endswith(HEADER_SUFFIXES)


def is_import_library(path: str) -> bool:
    return path.lower().endswith(IMPORT_LIBRARY_SUFFIXES)


def find_include_names(data: bytes) -> set[str]:
    """Return the normalized names referenced by #include directives."""
    names = set()
    for match in INCLUDE_RE.finditer(data):
        name = match.group(1).decode("latin-1").strip().replace("\\", "/")
        parts = [p for p in name.split("/") if p not in ("", ".")]
        if not parts or ".." in parts:
            continue
        names.add("/".join(parts))
    return names


def add_include_aliases(merger: CaseFoldingMerger, quiet: bool = False) -> int:
    """Scan merged headers and add aliases for referenced casings. Returns aliases added."""
    by_name: dict[str, list[DestinationEntry]] = {}
    headers: dict[str, DestinationEntry] = {}
    for entry in merger.entries.values():
        if is_header(entry.canonical):
            by_name.setdefault(fold_path(entry.canonical.rpartition("/")[2]), []).append(entry)
            headers.setdefault(entry.content_id, entry)

    referenced: set[str] = set()
    for content_id in headers:
        referenced |= find_include_names(merger.store.read(content_id))

    added = 0
    for name in sorted(referenced):
        folded = fold_path(name)
        for entry in by_name.get(folded.rpartition("/")[2], []):
            canonical_folded = fold_path(entry.canonical)
            if canonical_folded != folded and not canonical_folded.endswith("/" + folded):
                continue
            variant = entry.canonical[: len(entry.canonical) - len(name)] + name
            if merger.add_alias(variant):
                added += 1
                if not quiet:
                    print(f"  Alias:    {variant} -> {entry.canonical}")
    return added


def add_lowercase_aliases(merger: CaseFoldingMerger, quiet: bool = False) -> int:
    """Expose every header and import library under its lowercase path. Returns file aliases added."""
    added = 0
    for entry in sorted(merger.entries.values(), key=lambda e: e.canonical):
        if not (is_header(entry.canonical) or is_import_library(entry.canonical)):
            continue
        lowered = entry.canonical.lower()
        if lowered == entry.canonical:
            continue
        if merger.add_alias(lowered):
            added += 1
            if not quiet:
                print(f"  Lowercase: {lowered} -> {entry.canonical}")
    return added
