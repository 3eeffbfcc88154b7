"""
SDK tree assembly from downloaded installer payloads.

This package provides tools for:
- Reading installer payload archives (cabinets, installer databases, packages, tarballs)
- Validating extracted files against payload manifests
- Deduplicating identical files through a content-addressed object pool
- Merging payloads into one tree with case-insensitive path resolution
- Aliasing headers under the casings used by #include directives

Main modules:
- assemble: Complete pipeline and command line entry point
- scheduler: Parallel extraction with an ordered merge
- archive_readers: One reader per archive family
- cab_reader: Cabinet container decoding
- msi_reader: Installer database decoding
- content_store: Content-addressed object pool
- case_merger: Case-folding destination namespace
"""

from .assemble import AssemblyOptions, assemble, main
from .models import AssemblyReport

__all__ = ["AssemblyOptions", "AssemblyReport", "assemble", "main"]
