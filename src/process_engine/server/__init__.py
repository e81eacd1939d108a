"""FastAPI observer API for the process engine.

This module exposes a read-only REST API over engine state.

Design intent:
- Keep execution logic in `process_engine.engine.*`
- Keep server-specific concerns (routing, CORS, response shapes) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from process_engine.server.app import create_app
