"""Console entrypoint shim; the CLI lives in `process_engine.engine.main`."""

from __future__ import annotations

from process_engine.engine.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
