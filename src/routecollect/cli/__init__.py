"""
CLI layer for routecollect.

Provides a Typer application that loads schedule files, previews the
occurrences they produce, and runs the scheduler until interrupted. All
scheduling logic lives in ``routecollect.scheduling``; this package handles
only terminal transport: argument parsing, coloured output, and signals.

Entry point::

    routecollect --help
"""

from routecollect.cli.app import app

__all__ = ["app"]
