"""
Bounded-parallel payload extraction with an ordered, single-writer merge.

Workers decode archives, validate against the manifest and intern content
concurrently. Their fact batches are applied to the merger strictly in
payload priority order, so the result does not depend on which worker
finishes first.
"""

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path

from .archive_readers import open_reader
from .case_merger import CaseFoldingMerger
from .content_store import ContentStore
from .errors import ArchiveCorrupt, AssemblyCancelled, AssemblyError, HashMismatch, UnsupportedFormat
from .manifest_index import ManifestIndex, get_file_hash
from .models import (
    CANCELLED,
    FAILED,
    SKIPPED,
    SUCCEEDED,
    ExtractedFile,
    FactBatch,
    MergeFact,
    Payload,
    PayloadOutcome,
)


def default_jobs() -> int:
    return os.cpu_count() or 4


class ExtractionScheduler:
    def __init__(
        self,
        store: ContentStore,
        merger: CaseFoldingMerger,
        jobs: int | None = None,
        scratch_root: Path | None = None,
        trust_manifest_hashes: bool = False,
        quiet: bool = False,
    ) -> None:
        self.store = store
        self.merger = merger
        self.jobs = max(1, jobs or default_jobs())
        self.scratch_root = scratch_root
        self.trust_manifest_hashes = trust_manifest_hashes
        self.quiet = quiet
        self.cancel_event = threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _log(self, payload: Payload, message: str) -> None:
        if not self.quiet:
            print(f"  [{payload.id}] {message}", flush=True)

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise AssemblyCancelled("cancelled")

    # ------------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------------

    def extract_payload(self, payload: Payload) -> FactBatch:
        """Decode, validate and intern one payload. Runs on a worker thread."""
        self._check_cancelled()
        if payload.load_error:
            raise ArchiveCorrupt(payload.load_error)

        reader = open_reader(payload, scratch_root=self.scratch_root, should_stop=self.cancel_event.is_set)
        index = ManifestIndex.load(payload.manifest_path)

        if payload.archive_sha256 and not self.trust_manifest_hashes:
            actual = get_file_hash(payload.archive_path)
            if actual != payload.archive_sha256:
                raise HashMismatch(payload.archive_path.name, payload.archive_sha256, actual)

        self._log(payload, f"extracting {payload.format.value} {payload.archive_path.name}")
        batch = FactBatch(payload.id, payload.priority)
        seen: set[str] = set()
        with reader:
            for path, data in reader.iter_entries():
                self._check_cancelled()
                sha256 = index.verify(path, data, trust_declared=self.trust_manifest_hashes)
                extracted = ExtractedFile(path, data, sha256)
                content_id = self.store.intern(extracted.data, extracted.sha256)
                batch.facts.append(MergeFact(extracted.path, content_id, len(extracted.data)))
                seen.add(path)
        self._check_cancelled()

        missing = index.missing(seen)
        if missing:
            raise ArchiveCorrupt(f"{len(missing)} declared files missing from archive (first: {missing[0]})")
        return batch

    def _guarded_extract(self, payload: Payload) -> tuple[PayloadOutcome, FactBatch | None]:
        """Worker boundary: payload errors are recorded, never propagated."""
        try:
            batch = self.extract_payload(payload)
        except UnsupportedFormat as e:
            self._log(payload, f"⚠️  skipped: {e}")
            return PayloadOutcome(payload.id, SKIPPED, e.kind, str(e)), None
        except AssemblyCancelled:
            return PayloadOutcome(payload.id, CANCELLED), None
        except AssemblyError as e:
            self._log(payload, f"✗ {e.kind}: {e}")
            return PayloadOutcome(payload.id, FAILED, e.kind, str(e)), None
        except OSError as e:
            self._log(payload, f"✗ IOError: {e}")
            return PayloadOutcome(payload.id, FAILED, "IOError", str(e)), None
        except Exception as e:
            # Decoder internals (struct, zipfile, tarfile) failing on malformed input
            message = f"{type(e).__name__}: {e}"
            self._log(payload, f"✗ {ArchiveCorrupt.kind}: {message}")
            return PayloadOutcome(payload.id, FAILED, ArchiveCorrupt.kind, message), None
        self._log(payload, f"✓ {len(batch.facts)} files")
        return PayloadOutcome(payload.id, SUCCEEDED, files=len(batch.facts)), batch

    # ------------------------------------------------------------------------
    # Merge stage
    # ------------------------------------------------------------------------

    def _merge(self, outcome: PayloadOutcome, batch: FactBatch | None) -> PayloadOutcome:
        if batch is None:
            return outcome
        if self.cancel_event.is_set():
            return PayloadOutcome(outcome.payload_id, CANCELLED)
        try:
            self.merger.apply(batch)
        except AssemblyError as e:
            print(f"  [{outcome.payload_id}] ✗ {e.kind} while merging: {e}", flush=True)
            return PayloadOutcome(outcome.payload_id, FAILED, e.kind, str(e))
        return outcome

    def run(self, payloads: list[Payload]) -> list[PayloadOutcome]:
        """Extract all payloads in parallel and merge them in priority order."""
        ordered = sorted(payloads, key=lambda p: p.priority)
        outcomes = []
        executor = ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="extract")
        try:
            futures: list[tuple[Payload, Future[tuple[PayloadOutcome, FactBatch | None]]]] = [
                (payload, executor.submit(self._guarded_extract, payload)) for payload in ordered
            ]
            for payload, future in futures:
                if self.cancel_event.is_set() and future.cancel():
                    outcomes.append(PayloadOutcome(payload.id, CANCELLED))
                    continue
                outcome, batch = future.result()
                outcomes.append(self._merge(outcome, batch))
        except KeyboardInterrupt:
            self.cancel()
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return outcomes
