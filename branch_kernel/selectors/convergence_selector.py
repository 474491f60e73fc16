"""
Module: branch_kernel.selectors.convergence_selector
Responsibility: Read access to convergence operations and status polling.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - An operation stuck in ``in_progress`` is reported as overdue once it
      exceeds the alert window; the selector never changes its status.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select

from branch_kernel.domain.convergence import (
    ACTIVE_CONVERGENCE_STATUSES,
    ConvergenceOperationRecord,
    ConvergenceStatus,
    ConvergenceStatusReport,
)
from branch_kernel.exceptions import ConvergenceOperationNotFoundError
from branch_kernel.models.convergence import ConvergenceOperationModel
from branch_kernel.selectors.base import BaseSelector


class ConvergenceSelector(BaseSelector):
    """Convergence operation lookups."""

    def get(self, operation_id: UUID) -> ConvergenceOperationRecord:
        model = self.session.get(ConvergenceOperationModel, operation_id)
        if model is None:
            raise ConvergenceOperationNotFoundError(operation_id)
        return model.to_dto()

    def list_for_branch(self, branch_id: UUID) -> list[ConvergenceOperationRecord]:
        rows = self.session.scalars(
            select(ConvergenceOperationModel)
            .where(ConvergenceOperationModel.branch_id == branch_id)
            .order_by(ConvergenceOperationModel.created_at.desc(), ConvergenceOperationModel.id)
        )
        return [r.to_dto() for r in rows]

    def latest_for_branch(self, branch_id: UUID) -> ConvergenceOperationRecord | None:
        operations = self.list_for_branch(branch_id)
        return operations[0] if operations else None

    def active_for_branch(self, branch_id: UUID) -> ConvergenceOperationRecord | None:
        row = self.session.scalars(
            select(ConvergenceOperationModel).where(
                ConvergenceOperationModel.branch_id == branch_id,
                ConvergenceOperationModel.status.in_(
                    [s.value for s in ACTIVE_CONVERGENCE_STATUSES]
                ),
            )
        ).one_or_none()
        return row.to_dto() if row is not None else None

    def status(
        self,
        operation_id: UUID,
        now: datetime,
        alert_after_seconds: int,
        poll_interval_seconds: int,
    ) -> ConvergenceStatusReport:
        operation = self.get(operation_id)
        elapsed = None
        if operation.started_at is not None:
            end = operation.completed_at or now
            elapsed = (end - operation.started_at).total_seconds()
        overdue = (
            operation.status is ConvergenceStatus.IN_PROGRESS
            and elapsed is not None
            and elapsed > alert_after_seconds
        )
        return ConvergenceStatusReport(
            operation=operation,
            elapsed_seconds=elapsed,
            is_overdue=overdue,
            poll_interval_seconds=poll_interval_seconds,
        )
