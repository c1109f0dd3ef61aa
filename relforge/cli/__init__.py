"""Relforge CLI — Typer-based command-line interface.

Provides the ``relforge`` command with subcommands for creating dev and
final releases, listing allocated release versions, and registering job
metadata from a release manifest.

All output uses Rich for formatted terminal display.
"""
