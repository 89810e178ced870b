"""
Read-only progress queries for dashboards.

    get_status_summary(proposal_id)  → approver counts for one proposal
    get_project_progress(project_id) → per-stage completion and overall %
"""

from approval_engine.core.exceptions import NotFoundError
from approval_engine.models import db
from approval_engine.models.approval import ApproverStatus, Proposal
from approval_engine.models.project import Project
from approval_engine.services.decision_ledger import derive_approver_status
from approval_engine.services.stage_gate import stage_completion


def get_status_summary(proposal_id) -> dict:
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None or proposal.deleted_at is not None:
        raise NotFoundError(resource="Proposal", resource_id=proposal_id)

    statuses = [derive_approver_status(a.decisions) for a in proposal.approvers]
    return {
        "proposal_id": proposal.id,
        "status": proposal.status,
        "total": len(statuses),
        "approved": statuses.count(ApproverStatus.APPROVED),
        "waiting": statuses.count(ApproverStatus.NOT_RESPONDED),
        "rejected": statuses.count(ApproverStatus.REJECTED),
    }


def get_project_progress(project_id) -> dict:
    """
    Stage-by-stage progress of a project.

    A stage is completed once the pointer has moved past it.  The overall
    percentage counts completed stages only; the current stage's own
    approval rate is reported separately.
    """
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)

    current_position = project.current_stage_position
    stages = []
    current_rate = 0.0
    for stage in project.stages:
        counts = stage_completion(stage.id)
        rate = counts["approved"] / counts["total"] if counts["total"] else 0.0
        is_current = stage.position == current_position
        if is_current:
            current_rate = rate
        stages.append({
            "stage_id": stage.id,
            "name": stage.name,
            "position": stage.position,
            "total": counts["total"],
            "approved": counts["approved"],
            "completion_rate": rate,
            "is_completed": stage.position < current_position,
            "is_current": is_current,
        })

    total = len(stages)
    completed = sum(1 for s in stages if s["is_completed"])
    return {
        "project_id": project.id,
        "current_stage_position": current_position,
        "stage_count": total,
        "completed_stages": completed,
        "current_stage_progress": current_rate,
        "overall_percentage": round(completed / total * 100) if total else 0,
        "stages": stages,
    }
