"""Command-line launcher for the opportunity discovery engine."""

from __future__ import annotations

from opportunity_app.utils.cli.discover_runner import main

if __name__ == "__main__":  # pragma: no cover - manual execution path
    raise SystemExit(main())
