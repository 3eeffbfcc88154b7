"""Tests for #include casing aliases."""

from sdk_assembler.case_merger import CaseFoldingMerger
from sdk_assembler.include_scan import (
    add_include_aliases,
    add_lowercase_aliases,
    find_include_names,
    is_header,
    is_import_library,
)
from sdk_assembler.models import FactBatch, MergeFact


def apply_files(merger: CaseFoldingMerger, files: dict[str, bytes]) -> None:
    facts = [MergeFact(path, merger.store.intern(data), len(data)) for path, data in files.items()]
    merger.apply(FactBatch("sdk", 0, facts))


class TestFindIncludeNames:
    def test_angle_and_quote_forms(self):
        source = b'#include <WinDef.h>\n  #  include "sub\\Helper.H"\n#define X 1\n'
        assert find_include_names(source) == {"WinDef.h", "sub/Helper.H"}

    def test_parent_references_ignored(self):
        assert find_include_names(b'#include "../shared/sal.h"\n') == set()

    def test_is_header(self):
        assert is_header("Include/um/Windows.H")
        assert is_header("Include/um/objidl.idl")
        assert not is_header("Lib/x64/kernel32.lib")


class TestAddIncludeAliases:
    def test_aliases_referenced_casing(self, merger: CaseFoldingMerger, destination_dir):
        apply_files(
            merger,
            {
                "Include/um/windows.h": b"#include <WinDef.h>\n#include <winbase.h>\n",
                "Include/shared/windef.h": b"typedef int BOOL;\n",
                "Include/um/winbase.h": b"",
            },
        )

        added = add_include_aliases(merger, quiet=True)

        assert added == 1
        assert (destination_dir / "Include/shared/WinDef.h").read_bytes() == b"typedef int BOOL;\n"
        assert not (destination_dir / "Include/um/WinBase.h").exists()

    def test_nested_reference_matches_trailing_components(self, merger: CaseFoldingMerger, destination_dir):
        apply_files(
            merger,
            {
                "include/gl/gl.h": b"",
                "include/app.h": b'#include "GL/GL.h"\n',
            },
        )

        assert add_include_aliases(merger, quiet=True) == 1
        assert (destination_dir / "include/GL/GL.h").exists()

    def test_rerun_adds_nothing(self, merger: CaseFoldingMerger):
        apply_files(merger, {"inc/a.h": b"#include <A.h>\n"})
        assert add_include_aliases(merger, quiet=True) == 1
        assert add_include_aliases(merger, quiet=True) == 0


class TestLowercaseAliases:
    def test_import_library_resolves_lowercase(self, merger: CaseFoldingMerger, destination_dir):
        apply_files(merger, {"Lib/x64/Kernel32.Lib": b"LIB", "Lib/x64/readme.TXT": b"text"})

        assert add_lowercase_aliases(merger, quiet=True) == 1

        assert (destination_dir / "lib/x64/kernel32.lib").read_bytes() == b"LIB"
        assert (destination_dir / "Lib/x64/kernel32.lib").is_symlink()
        assert not (destination_dir / "Lib/x64/readme.txt").exists()

    def test_headers_and_already_lowercase_names(self, merger: CaseFoldingMerger, destination_dir):
        apply_files(merger, {"Include/um/WinDef.h": b"BOOL", "Include/um/winbase.h": b""})

        assert add_lowercase_aliases(merger, quiet=True) == 1
        assert (destination_dir / "include/um/windef.h").read_bytes() == b"BOOL"
        assert add_lowercase_aliases(merger, quiet=True) == 0

    def test_is_import_library(self):
        assert is_import_library("Lib/x64/Kernel32.Lib")
        assert is_import_library("lib/uuid.lib")
        assert not is_import_library("bin/kernel32.dll")
