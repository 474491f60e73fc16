"""
branch_services -- Package init and public API.

Responsibility:
    Transaction-boundary orchestration over the branch kernel, plus the
    identity and audit collaborators the kernel consumes through protocols.
    This is the **only** layer that commits.

Architecture position:
    Services -- above the kernel and configuration.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        branch_services/ -> branch_kernel/   (allowed)
        branch_services/ -> branch_config/   (allowed)
        branch_kernel/   -> branch_services/ (FORBIDDEN)

Invariants enforced:
    - DI transparency: kernel service wiring lives in ``BranchServices``; no
      kernel service constructs its own dependencies.
"""

from branch_services.audit import AuditSink, CollectingAuditSink, LoggingAuditSink
from branch_services.identity import StaticIdentityProvider
from branch_services.workflow_orchestrator import (
    BranchServices,
    BranchWorkflowOrchestrator,
    SubmissionResult,
)

__all__ = [
    "AuditSink",
    "BranchServices",
    "BranchWorkflowOrchestrator",
    "CollectingAuditSink",
    "LoggingAuditSink",
    "StaticIdentityProvider",
    "SubmissionResult",
]
