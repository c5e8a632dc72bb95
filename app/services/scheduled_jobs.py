"""
Construction Document Workflow Engine
Scheduled Jobs: concrete job implementations run on a schedule.

Jobs:
    - workflow_sla_sweep: flags overdue workflow stages, records SLA
      violations and raises escalations

Importing this module registers the jobs with the scheduler.
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job
from app.services.sla_tracker import sweep_overdue

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Workflow SLA Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("workflow_sla_sweep")
def sweep_workflow_sla(app) -> dict[str, Any]:
    """Flag overdue workflow stages and record SLA violations."""
    summary = sweep_overdue()
    result = {
        "checked": summary["checked"],
        "flagged": summary["flagged"],
        "skipped": summary["skipped"],
        "escalations_created": len(summary["escalations"]),
        "instance_ids": [v["instance_id"] for v in summary["violations"]],
        "swept_at": summary["swept_at"],
    }
    logger.info("workflow_sla_sweep: %s", {k: v for k, v in result.items() if k != "instance_ids"})
    return result
