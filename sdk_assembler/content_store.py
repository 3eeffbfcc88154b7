"""
Content-addressed object pool used for hard-link deduplication.

Every distinct byte sequence is written once to
<destination>/.sdk-objects/<sha256[:2]>/<sha256>; destination paths are
hard links to those objects (or copies where the filesystem cannot link).
Objects left by a previous run are reused without rewriting.
"""

import hashlib
import os
import shutil
import threading
from pathlib import Path

from .errors import PayloadIOError

STORE_DIR_NAME = ".sdk-objects"


class ContentStore:
    """Thread-safe, idempotent store keyed by the sha256 of file bytes."""

    def __init__(self, destination: Path | str) -> None:
        self.destination = Path(destination)
        self.root = self.destination / STORE_DIR_NAME
        self._lock = threading.Lock()
        self._known: set[str] = set()
        self._pending: dict[str, threading.Lock] = {}
        self.objects_written = 0
        self.bytes_written = 0
        self.links_created = 0
        self.copies_created = 0

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def content_id(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def object_path(self, content_id: str) -> Path:
        return self.root / content_id[:2] / content_id

    @property
    def object_count(self) -> int:
        """Distinct objects interned during this run."""
        with self._lock:
            return len(self._known)

    def intern(self, data: bytes, content_id: str | None = None) -> str:
        """Store data once and return its content id."""
        content_id = content_id or self.content_id(data)
        with self._lock:
            if content_id in self._known:
                return content_id
            object_lock = self._pending.setdefault(content_id, threading.Lock())

        with object_lock:
            path = self.object_path(content_id)
            if not path.exists():
                tmp = path.with_name(f"{path.name}.{threading.get_ident()}.tmp")
                try:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    tmp.write_bytes(data)
                    os.replace(tmp, path)
                except OSError as e:
                    tmp.unlink(missing_ok=True)
                    raise PayloadIOError(f"cannot write object {content_id[:16]}: {e}") from e
                with self._lock:
                    self.objects_written += 1
                    self.bytes_written += len(data)
            with self._lock:
                self._known.add(content_id)
                self._pending.pop(content_id, None)
        return content_id

    def read(self, content_id: str) -> bytes:
        return self.object_path(content_id).read_bytes()

    def is_materialized(self, content_id: str, dest: Path) -> bool:
        """True if dest already holds this object (same inode, or an identical copy)."""
        if dest.is_symlink() or not dest.is_file():
            return False
        src = self.object_path(content_id)
        if os.path.samefile(src, dest):
            return True
        if dest.stat().st_size != src.stat().st_size:
            return False
        h = hashlib.sha256()
        with open(dest, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                h.update(chunk)
        return h.hexdigest() == content_id

    def materialize(self, content_id: str, dest: Path) -> bool:
        """
        Make dest hold the object's content, preferring a hard link.

        Returns False when dest already held it. Falls back to a copy when
        the filesystem refuses the hard link.
        """
        src = self.object_path(content_id)
        try:
            if self.is_materialized(content_id, dest):
                return False
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp = dest.with_name(f".{dest.name}.{threading.get_ident()}.tmp")
            tmp.unlink(missing_ok=True)
            try:
                os.link(src, tmp)
                self.links_created += 1
            except OSError:
                # Hard link failed, copy instead
                shutil.copy2(src, tmp)
                self.copies_created += 1
            os.replace(tmp, dest)
        except OSError as e:
            raise PayloadIOError(f"cannot materialize {dest}: {e}") from e
        return True
