"""
Error taxonomy for SDK tree assembly.

Payload-scoped errors are caught at the worker boundary and recorded against
the payload; setup errors abort the run before any work starts.
"""


class AssemblyError(Exception):
    """Base class for all assembly errors."""

    kind = "AssemblyError"


class UnsupportedFormat(AssemblyError):
    """The payload's declared archive format is not recognized."""

    kind = "UnsupportedFormat"


class ArchiveCorrupt(AssemblyError):
    """The container failed a structural integrity check."""

    kind = "ArchiveCorrupt"


class HashMismatch(AssemblyError):
    """Declared and actual content hashes differ."""

    kind = "HashMismatch"

    def __init__(self, path: str, expected: str, actual: str, what: str = "sha256") -> None:
        super().__init__(f"{path}: expected {what} {expected}, got {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class PayloadIOError(AssemblyError):
    """Disk or permission failure while writing a payload's content."""

    kind = "IOError"


class SourceDirectoryInvalid(AssemblyError):
    kind = "SourceDirectoryInvalid"


class DestinationNotWritable(AssemblyError):
    kind = "DestinationNotWritable"


class AssemblyCancelled(AssemblyError):
    """Raised inside workers when the run-wide cancel signal is set."""

    kind = "Cancelled"
