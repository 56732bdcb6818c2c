"""kubewatcher command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``kubewatcher`` script).
"""

from kubewatcher.cli.main import cli

__all__ = ["cli"]
