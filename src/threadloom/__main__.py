"""Allow ``python -m threadloom``."""

from .app import main

if __name__ == "__main__":  # pragma: no cover - exercised via the console script
    raise SystemExit(main())
