#!/usr/bin/env python3
"""
Assemble an SDK/toolchain tree from downloaded installer payloads.

This script:
1. Enumerates payload directories in the source directory
2. Orders them by declaration order (index.json), later payloads winning
3. Extracts payloads in parallel, validating against their manifests
4. Interns every file into a content-addressed pool (one copy per content)
5. Merges paths into the destination, folding letter case and adding aliases
6. Aliases headers under the casings used by #include directives, and
   headers and import libraries under their lowercase paths
7. Prints a summary and optionally writes a JSON report

Usage:
    python -m sdk_assembler --source payloads --destination sdk
    python -m sdk_assembler --source payloads --destination sdk --report report.json --jobs 8

Exit codes:
    0  all payloads succeeded
    1  some payloads failed, at least one succeeded
    2  fatal setup error (bad source or destination)
    3  no payload succeeded
    130 cancelled
"""

import argparse
import json
import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path

from .case_merger import CaseFoldingMerger
from .content_store import ContentStore
from .errors import ArchiveCorrupt, DestinationNotWritable, SourceDirectoryInvalid
from .include_scan import add_include_aliases, add_lowercase_aliases
from .manifest_index import PAYLOAD_MANIFEST_NAME, load_payload_manifest
from .models import (
    EXIT_CANCELLED,
    EXIT_PARTIAL,
    EXIT_SETUP_ERROR,
    AssemblyReport,
    Payload,
    PayloadFormat,
    format_from_name,
    format_from_type,
)
from .scheduler import ExtractionScheduler, default_jobs

# ============================================================================
# Configuration
# ============================================================================

SOURCE_INDEX_NAME = "index.json"


@dataclass
class AssemblyOptions:
    source: Path
    destination: Path
    jobs: int | None = None
    report_path: Path | None = None
    prefer: list[str] = field(default_factory=list)
    scratch_dir: Path | None = None
    include_aliases: bool = True
    lowercase_aliases: bool = True
    trust_manifest_hashes: bool = False
    quiet: bool = False


# ============================================================================
# Utility Functions
# ============================================================================


def print_section(title: str) -> None:
    """Print a formatted section header."""
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70)


# ============================================================================
# Payload Discovery
# ============================================================================


def _payloads_from_manifest(directory: Path, manifest_path: Path) -> list[Payload]:
    try:
        manifest = load_payload_manifest(manifest_path)
    except (ArchiveCorrupt, OSError) as e:
        return [Payload(directory.name, directory, None, "", manifest_path=manifest_path, load_error=str(e))]

    if manifest.file_name:
        relative = manifest.file_name.replace("\\", "/")
        archive = directory / relative
        if not archive.exists() and (directory / Path(relative).name).exists():
            archive = directory / Path(relative).name
    else:
        candidates = _archives_in(directory)
        archive = candidates[0] if candidates else directory / "<missing archive>"

    if manifest.declared_type:
        fmt = format_from_type(manifest.declared_type)
    else:
        fmt = format_from_name(archive.name)

    return [
        Payload(
            id=directory.name,
            archive_path=archive,
            format=fmt,
            declared_type=manifest.declared_type or archive.suffix,
            manifest_path=manifest_path,
            version=manifest.version,
            archive_sha256=manifest.sha256,
        )
    ]


def _archives_in(directory: Path) -> list[Path]:
    archives = [f for f in sorted(directory.iterdir()) if f.is_file() and format_from_name(f.name) is not None]
    installers = [f for f in archives if format_from_name(f.name) == PayloadFormat.MSI]
    # Cabinets next to an installer database are its media, not payloads
    return installers or archives


def discover_payloads(source: Path) -> list[Payload]:
    """Enumerate payload directories; unrecognized entries are skipped."""
    payloads = []
    for directory in sorted(source.iterdir()):
        if not directory.is_dir() or directory.name.startswith("."):
            continue
        manifest_path = directory / PAYLOAD_MANIFEST_NAME
        if manifest_path.exists():
            payloads.extend(_payloads_from_manifest(directory, manifest_path))
            continue
        archives = _archives_in(directory)
        if len(archives) == 1:
            archive = archives[0]
            payloads.append(Payload(directory.name, archive, format_from_name(archive.name), archive.suffix))
        else:
            for archive in archives:
                payload_id = f"{directory.name}/{archive.name}"
                payloads.append(Payload(payload_id, archive, format_from_name(archive.name), archive.suffix))
    return payloads


def load_declared_order(source: Path) -> list[str]:
    """Payload ids in declaration order from <source>/index.json, if present."""
    index_path = source / SOURCE_INDEX_NAME
    if not index_path.exists():
        return []
    try:
        data = json.loads(index_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SourceDirectoryInvalid(f"{index_path}: {e}") from e
    if isinstance(data, dict):
        data = data.get("payloads", [])
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise SourceDirectoryInvalid(f"{index_path}: expected a list of payload ids")
    return data


def assign_priorities(payloads: list[Payload], declared: list[str], prefer: list[str]) -> list[Payload]:
    """
    Order payloads and number their priorities (higher wins conflicts).

    Declared payloads come first in declaration order, then the rest by id;
    preferred payloads are moved to the end in the order given.
    """
    position = {payload_id: i for i, payload_id in enumerate(declared)}
    ordered = sorted(payloads, key=lambda p: (p.id not in position, position.get(p.id, 0), p.id))
    by_id = {p.id: p for p in ordered}
    preferred = [by_id[pid] for pid in dict.fromkeys(prefer) if pid in by_id]
    ordered = [p for p in ordered if p not in preferred] + preferred
    return [replace(payload, priority=priority) for priority, payload in enumerate(ordered)]


# ============================================================================
# Setup Checks
# ============================================================================


def check_source(source: Path) -> None:
    if not source.is_dir():
        raise SourceDirectoryInvalid(f"source directory not found: {source}")
    if not os.access(source, os.R_OK | os.X_OK):
        raise SourceDirectoryInvalid(f"source directory not readable: {source}")


def check_destination(destination: Path, store: ContentStore) -> None:
    if destination.exists() and not destination.is_dir():
        raise DestinationNotWritable(f"destination is not a directory: {destination}")
    try:
        destination.mkdir(parents=True, exist_ok=True)
        store.ensure_root()
        probe = store.root / ".write-probe"
        probe.write_bytes(b"")
        probe.unlink()
    except OSError as e:
        raise DestinationNotWritable(f"destination not writable: {destination} ({e})") from e


# ============================================================================
# Main Pipeline
# ============================================================================


def assemble(options: AssemblyOptions) -> AssemblyReport:
    """Run a full assembly. Setup problems raise; payload problems are reported."""
    source = Path(options.source)
    destination = Path(options.destination)

    check_source(source)
    store = ContentStore(destination)
    check_destination(destination, store)

    payloads = assign_priorities(discover_payloads(source), load_declared_order(source), options.prefer)

    if not options.quiet:
        print_section("STEP 1: DISCOVER PAYLOADS")
        print(f"Source:      {source}")
        print(f"Destination: {destination}")
        print(f"Payloads:    {len(payloads)}")
        for payload in payloads:
            fmt = payload.format.value if payload.format else payload.declared_type or "?"
            print(f"  {payload.priority:3d}. {payload.id} ({fmt})")

    merger = CaseFoldingMerger(destination, store)
    scheduler = ExtractionScheduler(
        store,
        merger,
        jobs=options.jobs,
        scratch_root=options.scratch_dir,
        trust_manifest_hashes=options.trust_manifest_hashes,
        quiet=options.quiet,
    )

    if not options.quiet:
        print_section(f"STEP 2: EXTRACT AND MERGE ({scheduler.jobs} workers)")
    outcomes = scheduler.run(payloads)

    if (options.include_aliases or options.lowercase_aliases) and not scheduler.cancelled:
        if not options.quiet:
            print_section("STEP 3: ALIAS HEADERS AND IMPORT LIBRARIES")
        if options.include_aliases:
            added = add_include_aliases(merger, quiet=options.quiet)
            if not options.quiet:
                print(f"Added {added} include aliases")
        if options.lowercase_aliases:
            added = add_lowercase_aliases(merger, quiet=options.quiet)
            if not options.quiet:
                print(f"Added {added} lowercase aliases")

    report = AssemblyReport(
        outcomes=outcomes,
        conflicts=list(merger.conflicts),
        content_objects=store.object_count,
        destination_paths=len(merger.entries),
        aliases=merger.alias_count,
        bytes_written=store.bytes_written,
        cancelled=scheduler.cancelled,
    )

    if options.report_path:
        write_report(report, options.report_path)
    return report


def write_report(report: AssemblyReport, report_path: Path) -> None:
    report_path = Path(report_path)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    with open(report_path, "w") as f:
        json.dump(report.to_dict(), f, indent=2)


def print_summary(report: AssemblyReport) -> None:
    print_section("ASSEMBLY SUMMARY")
    print(f"Payloads succeeded:  {report.succeeded}")
    print(f"Payloads failed:     {report.failed}")
    print(f"Payloads skipped:    {report.skipped}")
    if report.cancelled_payloads:
        print(f"Payloads cancelled:  {report.cancelled_payloads}")
    print(f"Conflicts resolved:  {len(report.conflicts)}")
    print(f"Content objects:     {report.content_objects}")
    print(f"Destination paths:   {report.destination_paths}")
    print(f"Alias links:         {report.aliases}")
    print(f"Bytes written:       {report.bytes_written / (1024*1024):.2f} MB")

    for conflict in report.conflicts:
        print(f"  ⚠️  {conflict.path}: {conflict.winner_payload} wins over {conflict.loser_payload}")

    if report.failures:
        print("\nFailed payloads:")
        for outcome in report.failures:
            print(f"  ✗ {outcome.payload_id}: {outcome.error_kind}: {outcome.error}")

    print()
    if report.exit_code == 0:
        print("✅ Done!")
    elif report.succeeded:
        print("⚠️  Partial result: the successfully merged payloads are usable")
    else:
        print("❌ No payload was assembled")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Assemble an SDK/toolchain tree from downloaded installer payloads",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m sdk_assembler --source payloads --destination sdk
  python -m sdk_assembler --source payloads --destination sdk --report report.json
  python -m sdk_assembler --source payloads --destination sdk --prefer Win11SDK_Headers

Note: Press Ctrl+C at any time to cancel; already merged payloads are kept.
        """,
    )
    parser.add_argument("--source", required=True, type=Path, help="Directory with one subdirectory per payload")
    parser.add_argument("--destination", required=True, type=Path, help="Target directory (created if absent)")
    parser.add_argument("--jobs", type=int, default=None, help=f"Parallel workers (default: {default_jobs()})")
    parser.add_argument("--report", type=Path, default=None, help="Write a JSON report to this path")
    parser.add_argument(
        "--prefer",
        action="append",
        default=[],
        metavar="PAYLOAD_ID",
        help="Give a payload the highest priority in conflicts (repeatable, last wins)",
    )
    parser.add_argument("--scratch-dir", type=Path, default=None, help="Directory for temporary decompression files")
    parser.add_argument(
        "--no-include-aliases", action="store_true", help="Do not alias headers by #include casing"
    )
    parser.add_argument(
        "--no-lowercase-aliases",
        action="store_true",
        help="Do not expose headers and import libraries under lowercase paths",
    )
    parser.add_argument(
        "--trust-manifest-hashes",
        action="store_true",
        help="Use declared hashes without re-hashing extracted content",
    )
    parser.add_argument("--quiet", action="store_true", help="Only print the final summary")

    args = parser.parse_args(argv)

    options = AssemblyOptions(
        source=args.source,
        destination=args.destination,
        jobs=args.jobs,
        report_path=args.report,
        prefer=args.prefer,
        scratch_dir=args.scratch_dir,
        include_aliases=not args.no_include_aliases,
        lowercase_aliases=not args.no_lowercase_aliases,
        trust_manifest_hashes=args.trust_manifest_hashes,
        quiet=args.quiet,
    )

    try:
        report = assemble(options)
    except (SourceDirectoryInvalid, DestinationNotWritable) as e:
        print(f"\n❌ Error: {e}", file=sys.stderr)
        return EXIT_SETUP_ERROR
    except KeyboardInterrupt:
        print("\n\n" + "=" * 70)
        print("❌ OPERATION CANCELLED BY USER")
        print("=" * 70)
        print("Already merged payloads are kept in the destination.")
        return EXIT_CANCELLED
    except Exception as e:
        print(f"\n❌ Error: {e}", file=sys.stderr)
        import traceback

        traceback.print_exc()
        return EXIT_PARTIAL

    print_summary(report)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
