"""Process Engine.

Executes business processes modeled as graphs of activities and transitions:
- configuration loaded from `.env`
- structured logging
- instance state and audit trail persisted as local JSON
"""

__version__ = "0.1.0"

from process_engine.engine.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
