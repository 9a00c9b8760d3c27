from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flowkernel.logging import get_logger
from flowkernel.service.errors import OrphanedExecutionError
from flowkernel.storage.errors import IllegalTransition
from flowkernel.storage.models import ExecutionStatus, utcnow

logger = get_logger(__name__)

ORPHANED_EXECUTION_MESSAGE = "Execution interrupted by service restart"

_IN_FLIGHT = (ExecutionStatus.RUNNING, ExecutionStatus.PENDING)


@dataclass
class ReconciliationReport:
    scanned: int = 0
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"scanned": self.scanned, "failed": self.failed, "skipped": self.skipped}


async def reconcile_stuck_executions(
    store,
    *,
    stale_after: Optional[timedelta] = None,
    organization_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReconciliationReport:
    """Force RUNNING/PENDING executions to FAILED.

    At startup nothing can still be in flight, so ``stale_after`` is None and
    every such execution is swept. While the process is live, pass a
    threshold so only executions created before ``now - stale_after`` are
    touched. Executions that reach a terminal state between the scan and the
    update are reported as skipped.
    """
    cutoff = (now or utcnow()) - stale_after if stale_after is not None else None
    candidates = store.list_executions(
        statuses=_IN_FLIGHT, organization_id=organization_id, created_before=cutoff
    )
    report = ReconciliationReport(scanned=len(candidates))
    orphaned = OrphanedExecutionError(ORPHANED_EXECUTION_MESSAGE)
    for execution in candidates:
        try:
            store.transition_execution(execution.id, ExecutionStatus.FAILED, error=orphaned.message)
        except IllegalTransition:
            report.skipped.append(execution.id)
            continue
        report.failed.append(execution.id)
        logger.warning(
            "execution_reconciled",
            execution_id=execution.id,
            previous_status=execution.status.value,
            workflow_id=execution.workflow_id,
        )
    logger.info(
        "execution_reconciliation_complete",
        scanned=report.scanned,
        failed=len(report.failed),
        skipped=len(report.skipped),
    )
    return report
