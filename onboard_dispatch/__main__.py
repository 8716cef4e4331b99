"""Entry point for running the CLI as a module."""
from __future__ import annotations

import sys

try:
    from .cli import run
except ModuleNotFoundError as exc:  # pragma: no cover - missing optional deps
    missing = getattr(exc, "name", None)
    if missing in {"typer", "flask", "msal", "requests", "yaml"}:
        sys.stderr.write(
            f"Missing dependency '{missing}'. Install the project requirements with\n"
            "    pip install -r requirements.txt\n"
        )
        raise SystemExit(1) from exc
    raise

run()
