"""Deployforge CLI — Typer-based command-line interface.

Provides the ``deployforge`` command with subcommands ``package``,
``store``, ``resolve-target``, ``deploy``, ``verify`` and ``history``.
Each exits with a status code distinct per failure kind.

All output uses Rich for formatted terminal display.
"""
