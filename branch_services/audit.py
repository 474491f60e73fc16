"""
Audit sink for accepted branch transitions.

Emits one structured log event per history record so log aggregators can
build the audit trail without reading the database:

- ``branch_audit``: every accepted event, with ``audit_event`` set to the
  event name (SUBMIT_FOR_REVIEW, APPROVE, CREATE, ...).

The orchestrator calls the sink only after the unit of work commits, so a
record that reaches the sink is durable.

Usage:
    from branch_services.audit import LoggingAuditSink

    sink = LoggingAuditSink()
    sink.record_transition(record)
"""

from __future__ import annotations

from typing import Protocol

from branch_kernel.domain.workflow import TransitionRecord
from branch_kernel.logging_config import get_logger

logger = get_logger("audit")

EVENT_BRANCH_AUDIT = "branch_audit"


class AuditSink(Protocol):
    """Receives committed history records."""

    def record_transition(self, record: TransitionRecord) -> None:
        ...


class LoggingAuditSink:
    """Writes each committed transition as a structured log line."""

    def record_transition(self, record: TransitionRecord) -> None:
        logger.info(
            EVENT_BRANCH_AUDIT,
            extra={
                "audit_event": record.event,
                "transition_id": str(record.id),
                "branch_id": str(record.branch_id),
                "sequence": record.sequence,
                "from_state": record.from_state.value,
                "to_state": record.to_state.value,
                "actor_id": str(record.actor_id),
                "actor_type": record.actor_type.value,
                "reason": record.reason,
                "transition_metadata": record.metadata,
            },
        )


class CollectingAuditSink:
    """Keeps delivered records in memory."""

    def __init__(self) -> None:
        self.records: list[TransitionRecord] = []

    def record_transition(self, record: TransitionRecord) -> None:
        self.records.append(record)
