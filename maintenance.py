"""Command-line interface for maintaining the classroom data store."""
from __future__ import annotations

from services.maintenance import main


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
