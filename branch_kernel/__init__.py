"""
Branch Kernel

Lifecycle and convergence engine for isolated content branches:
- Table-driven branch state machine with append-only transition history
- Multi-reviewer consensus with a single-veto rule
- Reviewer/collaborator mutual exclusion and approval thresholds
- Validate-then-merge convergence with conflict detection
"""

__version__ = "0.1.0"
