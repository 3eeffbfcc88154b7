"""
Single writer of the destination namespace.

Vendor payloads refer to the same header or import library with different
letter casing (Windows.h / windows.h, Include / include). The destination
may sit on a case-sensitive filesystem, so every casing that any payload
uses has to resolve, while only one canonical path per case-folded path
holds the content.

For each (path, content, priority) fact:
1. No entry for the case-folded path: the path becomes canonical
2. Same content, different casing: add an alias link
3. Different content: record a conflict; the higher-priority payload's
   fact becomes canonical and existing aliases are re-pointed to it

Directories are folded the same way: the first casing seen is created,
later casings become directory symlinks next to it.
"""

import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path

from .content_store import ContentStore
from .errors import PayloadIOError
from .models import ConflictRecord, FactBatch, MergeFact, fold_path


@dataclass
class DestinationEntry:
    canonical: str
    content_id: str
    payload_id: str
    priority: int
    aliases: set[str] = field(default_factory=set)
    # (payload id, path, content id) of facts that lost a conflict
    superseded: list[tuple[str, str, str]] = field(default_factory=list)


class CaseFoldingMerger:
    def __init__(self, destination: Path, store: ContentStore) -> None:
        self.destination = Path(destination)
        self.store = store
        self.entries: dict[str, DestinationEntry] = {}
        self.directories: dict[str, str] = {}
        self.directory_aliases: set[str] = set()
        self.conflicts: list[ConflictRecord] = []
        self._lock = threading.Lock()
        # Entry states from before the batch being applied, None for new keys
        self._journal: dict[str, DestinationEntry | None] | None = None

    @property
    def alias_count(self) -> int:
        return sum(len(e.aliases) for e in self.entries.values()) + len(self.directory_aliases)

    def lookup(self, path: str) -> DestinationEntry | None:
        return self.entries.get(fold_path(path))

    def apply(self, batch: FactBatch) -> None:
        """
        Apply all facts of one payload before any other payload's.

        A batch is all or nothing: if a write fails, the entries and links the
        batch made are undone and the error is re-raised. Directory casings it
        registered stay, they hold no files of their own.
        """
        with self._lock:
            self._journal = {}
            conflicts_before = len(self.conflicts)
            try:
                for fact in batch.facts:
                    self._register(fact, batch.payload_id, batch.priority)
            except PayloadIOError:
                self._rollback(self._journal, conflicts_before)
                raise
            finally:
                self._journal = None

    def add_alias(self, path: str) -> bool:
        """Expose another casing of an existing entry. Returns True if a new alias was added."""
        with self._lock:
            entry = self.entries.get(fold_path(path))
            if entry is None:
                return False
            requested = self._requested_path(path)
            if requested == entry.canonical or requested in entry.aliases:
                return False
            self._link_alias(requested, entry)
            entry.aliases.add(requested)
            return True

    # ------------------------------------------------------------------------

    def _rollback(self, journal: dict[str, DestinationEntry | None], conflicts_before: int) -> None:
        """Restore the entries a failed batch touched, on disk and in memory."""
        for key, previous in journal.items():
            current = self.entries.get(key)
            if current is not None:
                kept = previous.aliases if previous is not None else set()
                for alias in sorted(current.aliases - kept):
                    self._remove(alias)
                if previous is None or current.canonical != previous.canonical:
                    self._remove(current.canonical)
            if previous is None:
                self.entries.pop(key, None)
                continue
            self.entries[key] = previous
            self.store.materialize(previous.content_id, self.destination / previous.canonical)
            for alias in sorted(previous.aliases):
                self._link_alias(alias, previous)
        del self.conflicts[conflicts_before:]

    def _requested_path(self, path: str) -> str:
        """Rewrite the directory part to canonical casing, keeping the file name as requested."""
        parent, _, name = path.rpartition("/")
        if not parent:
            return name
        return f"{self._canonical_dir(parent)}/{name}"

    def _canonical_dir(self, rel_dir: str) -> str:
        canonical_parts: list[str] = []
        requested_parts: list[str] = []
        for part in rel_dir.split("/"):
            requested_parts.append(part)
            key = fold_path("/".join(requested_parts))
            canonical = self.directories.get(key)
            wanted = "/".join(canonical_parts + [part])
            if canonical is None:
                self.directories[key] = canonical = wanted
            elif wanted != canonical and wanted not in self.directory_aliases:
                self._link_directory_alias(wanted, canonical)
                self.directory_aliases.add(wanted)
            canonical_parts = canonical.split("/")
        return "/".join(canonical_parts)

    def _register(self, fact: MergeFact, payload_id: str, priority: int) -> None:
        requested = self._requested_path(fact.path)
        key = fold_path(requested)
        entry = self.entries.get(key)
        if self._journal is not None and key not in self._journal:
            self._journal[key] = None if entry is None else replace(
                entry, aliases=set(entry.aliases), superseded=list(entry.superseded)
            )

        if entry is None:
            self.store.materialize(fact.content_id, self.destination / requested)
            self.entries[key] = DestinationEntry(requested, fact.content_id, payload_id, priority)
            return

        if entry.content_id == fact.content_id:
            if requested != entry.canonical and requested not in entry.aliases:
                self._link_alias(requested, entry)
                entry.aliases.add(requested)
            return

        if priority > entry.priority:
            self.conflicts.append(
                ConflictRecord(
                    path=requested,
                    winner_payload=payload_id,
                    loser_payload=entry.payload_id,
                    winner_path=requested,
                    loser_path=entry.canonical,
                    winner_hash=fact.content_id,
                    loser_hash=entry.content_id,
                )
            )
            entry.superseded.append((entry.payload_id, entry.canonical, entry.content_id))
            old_canonical = entry.canonical
            entry.content_id = fact.content_id
            entry.payload_id = payload_id
            entry.priority = priority
            if requested != old_canonical:
                self._remove(old_canonical)
                entry.aliases.discard(requested)
                entry.aliases.add(old_canonical)
                entry.canonical = requested
            self.store.materialize(entry.content_id, self.destination / entry.canonical)
            for alias in sorted(entry.aliases):
                self._link_alias(alias, entry)
            return

        # A payload colliding with itself keeps its first fact without a conflict record
        if entry.payload_id != payload_id:
            self.conflicts.append(
                ConflictRecord(
                    path=entry.canonical,
                    winner_payload=entry.payload_id,
                    loser_payload=payload_id,
                    winner_path=entry.canonical,
                    loser_path=requested,
                    winner_hash=entry.content_id,
                    loser_hash=fact.content_id,
                )
            )
        entry.superseded.append((payload_id, requested, fact.content_id))
        if requested != entry.canonical and requested not in entry.aliases:
            self._link_alias(requested, entry)
            entry.aliases.add(requested)

    def _remove(self, rel_path: str) -> None:
        path = self.destination / rel_path
        try:
            if path.is_symlink() or path.is_file():
                path.unlink()
        except OSError as e:
            raise PayloadIOError(f"cannot remove superseded {rel_path}: {e}") from e

    def _link_alias(self, alias: str, entry: DestinationEntry) -> None:
        """Point alias (same directory as the canonical path) at the canonical file."""
        alias_path = self.destination / alias
        canonical_path = self.destination / entry.canonical
        target = canonical_path.name
        try:
            if os.path.lexists(alias_path):
                if alias_path.is_symlink():
                    if os.readlink(alias_path) == target:
                        return
                elif os.path.samefile(alias_path, canonical_path):
                    # Case-insensitive filesystem: the alias is the canonical file
                    return
            tmp = alias_path.with_name(f".{alias_path.name}.alias.tmp")
            tmp.unlink(missing_ok=True)
            try:
                os.symlink(target, tmp)
            except OSError:
                # No symlink support, fall back to a hard link or copy of the object
                self.store.materialize(entry.content_id, alias_path)
                return
            os.replace(tmp, alias_path)
        except OSError as e:
            raise PayloadIOError(f"cannot create alias {alias}: {e}") from e

    def _link_directory_alias(self, alias: str, canonical: str) -> None:
        alias_path = self.destination / alias
        canonical_path = self.destination / canonical
        target = canonical_path.name
        try:
            canonical_path.mkdir(parents=True, exist_ok=True)
            if os.path.lexists(alias_path):
                if alias_path.is_symlink() and os.readlink(alias_path) == target:
                    return
                if not alias_path.is_symlink() and os.path.samefile(alias_path, canonical_path):
                    return
                if alias_path.is_symlink():
                    alias_path.unlink()
                else:
                    raise PayloadIOError(f"cannot alias directory {alias}: a different entry already exists")
            os.symlink(target, alias_path, target_is_directory=True)
        except OSError as e:
            raise PayloadIOError(f"cannot create directory alias {alias}: {e}") from e
