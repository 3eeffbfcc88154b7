"""Tests for payload manifests and content validation."""

import hashlib
import json

import pytest

from sdk_assembler.errors import ArchiveCorrupt, HashMismatch
from sdk_assembler.manifest_index import ManifestIndex, get_file_hash, parse_payload_manifest
from sdk_assembler.models import ManifestEntry


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class TestParsePayloadManifest:
    def test_full_manifest(self):
        raw = json.dumps(
            {
                "id": "Win11SDK_Headers",
                "version": "10.0.22621.1",
                "type": "Msi",
                "fileName": "Installers\\Headers.msi",
                "sha256": sha(b"archive").upper(),
                "size": 7,
                "files": [{"path": "Include\\um\\Windows.h", "sha256": sha(b"w"), "size": 1}],
            }
        ).encode()

        manifest = parse_payload_manifest(raw)

        assert manifest.id == "Win11SDK_Headers"
        assert manifest.declared_type == "Msi"
        assert manifest.sha256 == sha(b"archive")
        assert manifest.files == [ManifestEntry("Include/um/Windows.h", sha(b"w"), 1)]

    def test_minimal_manifest(self):
        manifest = parse_payload_manifest(b"{}")
        assert manifest.files == []
        assert manifest.declared_type == ""
        assert manifest.sha256 is None

    @pytest.mark.parametrize(
        "raw",
        [
            b"{not json",
            b"[]",
            b'{"files": [{"sha256": null}]}',
            b'{"files": [{"path": "a.h", "sha256": "abc"}]}',
            b'{"files": [{"path": "a.h", "size": -1}]}',
            b'{"files": [{"path": "../a.h"}]}',
        ],
    )
    def test_invalid_manifest(self, raw):
        with pytest.raises(ArchiveCorrupt):
            parse_payload_manifest(raw)


class TestManifestIndex:
    def test_undeclared_file_is_hashed(self):
        assert ManifestIndex().verify("any.h", b"data") == sha(b"data")

    def test_declared_hash_matches(self):
        index = ManifestIndex([ManifestEntry("a.h", sha(b"a"), 1)])
        assert index.verify("a.h", b"a") == sha(b"a")

    def test_hash_mismatch(self):
        index = ManifestIndex([ManifestEntry("a.h", sha(b"a"), None)])
        with pytest.raises(HashMismatch) as exc_info:
            index.verify("a.h", b"tampered")
        assert exc_info.value.expected == sha(b"a")
        assert exc_info.value.actual == sha(b"tampered")

    def test_size_mismatch(self):
        index = ManifestIndex([ManifestEntry("a.h", None, 10)])
        with pytest.raises(HashMismatch, match="size"):
            index.verify("a.h", b"short")

    def test_trusted_hash_skips_rehash(self):
        declared = sha(b"something else")
        index = ManifestIndex([ManifestEntry("a.h", declared, 1)])
        assert index.verify("a.h", b"a", trust_declared=True) == declared

    def test_lookup_falls_back_to_folded_path(self):
        index = ManifestIndex([ManifestEntry("Include/Windows.h", sha(b"w"), 1)])
        assert index.lookup("include/windows.h").path == "Include/Windows.h"
        with pytest.raises(HashMismatch):
            index.verify("INCLUDE/WINDOWS.H", b"x")

    def test_missing_entries(self):
        index = ManifestIndex([ManifestEntry("a.h"), ManifestEntry("B.h"), ManifestEntry("c.h")])
        assert index.missing({"a.h", "b.h"}) == ["c.h"]

    def test_load_without_manifest(self, tmp_path):
        assert len(ManifestIndex.load(None)) == 0
        assert len(ManifestIndex.load(tmp_path / "payload.json")) == 0


def test_get_file_hash(tmp_path):
    path = tmp_path / "archive.bin"
    path.write_bytes(b"x" * 3_000_000)
    assert get_file_hash(path) == sha(b"x" * 3_000_000)
