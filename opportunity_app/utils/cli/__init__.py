"""Command-line helpers for running discovery passes."""

from __future__ import annotations

from .discover_runner import DiscoverCLI, main

__all__ = ["DiscoverCLI", "main"]
