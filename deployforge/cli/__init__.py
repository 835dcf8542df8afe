"""Deployforge CLI — Typer-based command-line interface.

Provides the ``deployforge`` command with subcommands for building an
artifact, deploying it, rolling back, checking health, and inspecting
backups and deployment history.

All output uses Rich for formatted terminal display. Exit codes:
0 success, 1 failure, 2 rolled back, 3 deployed but unhealthy.
"""
