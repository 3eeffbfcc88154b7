"""
Entry point for running the assembler as a module.

Usage:
    python -m sdk_assembler --source payloads --destination sdk
"""

import sys

from .assemble import main

if __name__ == "__main__":
    sys.exit(main())
