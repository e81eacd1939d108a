"""Workflow execution core.

This package holds the process scheduler and its collaborators:
- Definition and instance records
- Transition routing and condition evaluation
- Join tracking for parallel branches
- Timers, leases and the audit trail
"""

__all__: list[str] = []
