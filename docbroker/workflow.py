"""
User workflow stages and approval statuses.

A user record carries two coupled fields, ``workflowStage`` and
``approvalStatus``. Only the pairs listed in ``ALLOWED_STATUSES`` may be
persisted; ``validate`` enforces this before every write that touches them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from docbroker.services.errors import InconsistentStateError

STAGE_FIELD = "workflowStage"
STATUS_FIELD = "approvalStatus"


class WorkflowStage(str, Enum):
    NO_PASSKEY = "no_passkey"
    REQUEST_EMAIL_SENT = "request_email_sent"
    AWAITING_APPROVAL = "awaiting_approval"
    REJECTED = "rejected"
    SUSPENDED = "suspended"
    APPROVED = "approved"
    WAITING_FOR_DEPLOYMENT = "waiting_for_deployment"
    AGENT_ASSIGNED = "agent_assigned"
    HAS_BUCKET = "has_bucket"
    HAS_FILES = "has_files"
    HAS_KB = "has_kb"
    ADDING_FILES = "adding_files"
    COMPLETE = "complete"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


_APPROVED_ONLY = frozenset({ApprovalStatus.APPROVED})

# None stands for "status not set"
ALLOWED_STATUSES: dict[WorkflowStage, frozenset[ApprovalStatus | None]] = {
    WorkflowStage.NO_PASSKEY: frozenset({None}),
    WorkflowStage.REQUEST_EMAIL_SENT: frozenset({None, ApprovalStatus.PENDING}),
    WorkflowStage.AWAITING_APPROVAL: frozenset({None, ApprovalStatus.PENDING}),
    WorkflowStage.REJECTED: frozenset({ApprovalStatus.REJECTED}),
    WorkflowStage.SUSPENDED: frozenset({ApprovalStatus.SUSPENDED}),
    WorkflowStage.APPROVED: _APPROVED_ONLY,
    WorkflowStage.WAITING_FOR_DEPLOYMENT: _APPROVED_ONLY,
    WorkflowStage.AGENT_ASSIGNED: _APPROVED_ONLY,
    WorkflowStage.HAS_BUCKET: _APPROVED_ONLY,
    WorkflowStage.HAS_FILES: _APPROVED_ONLY,
    WorkflowStage.HAS_KB: _APPROVED_ONLY,
    WorkflowStage.ADDING_FILES: _APPROVED_ONLY,
    WorkflowStage.COMPLETE: _APPROVED_ONLY,
}

TRANSITIONS: dict[WorkflowStage, tuple[WorkflowStage, ...]] = {
    WorkflowStage.NO_PASSKEY: (
        WorkflowStage.REQUEST_EMAIL_SENT,
        WorkflowStage.AWAITING_APPROVAL,
    ),
    WorkflowStage.REQUEST_EMAIL_SENT: (
        WorkflowStage.AWAITING_APPROVAL,
        WorkflowStage.APPROVED,
        WorkflowStage.REJECTED,
    ),
    WorkflowStage.AWAITING_APPROVAL: (
        WorkflowStage.APPROVED,
        WorkflowStage.REJECTED,
        WorkflowStage.SUSPENDED,
    ),
    WorkflowStage.REJECTED: (WorkflowStage.AWAITING_APPROVAL,),
    WorkflowStage.APPROVED: (
        WorkflowStage.WAITING_FOR_DEPLOYMENT,
        WorkflowStage.AGENT_ASSIGNED,
        WorkflowStage.HAS_BUCKET,
        WorkflowStage.SUSPENDED,
    ),
    WorkflowStage.WAITING_FOR_DEPLOYMENT: (
        WorkflowStage.AGENT_ASSIGNED,
        WorkflowStage.SUSPENDED,
    ),
    WorkflowStage.AGENT_ASSIGNED: (WorkflowStage.HAS_BUCKET, WorkflowStage.SUSPENDED),
    WorkflowStage.HAS_BUCKET: (WorkflowStage.HAS_FILES, WorkflowStage.SUSPENDED),
    WorkflowStage.HAS_FILES: (WorkflowStage.HAS_KB, WorkflowStage.SUSPENDED),
    WorkflowStage.HAS_KB: (
        WorkflowStage.ADDING_FILES,
        WorkflowStage.COMPLETE,
        WorkflowStage.SUSPENDED,
    ),
    WorkflowStage.ADDING_FILES: (WorkflowStage.COMPLETE, WorkflowStage.SUSPENDED),
    WorkflowStage.SUSPENDED: (
        WorkflowStage.AWAITING_APPROVAL,
        WorkflowStage.APPROVED,
        WorkflowStage.HAS_BUCKET,
        WorkflowStage.HAS_FILES,
        WorkflowStage.HAS_KB,
    ),
    WorkflowStage.COMPLETE: (),
}


@dataclass(frozen=True)
class StageInfo:
    step: int
    name: str
    requires_action: str  # 'user' | 'admin' | 'system' | 'none'


STAGE_INFO: dict[WorkflowStage, StageInfo] = {
    WorkflowStage.NO_PASSKEY: StageInfo(1, "Create Passkey", "user"),
    WorkflowStage.REQUEST_EMAIL_SENT: StageInfo(2, "Request Email Sent", "admin"),
    WorkflowStage.AWAITING_APPROVAL: StageInfo(2, "Request Pending", "admin"),
    WorkflowStage.REJECTED: StageInfo(2, "Request Rejected", "user"),
    WorkflowStage.SUSPENDED: StageInfo(0, "Account Suspended", "admin"),
    WorkflowStage.APPROVED: StageInfo(3, "Agent Creation", "system"),
    WorkflowStage.WAITING_FOR_DEPLOYMENT: StageInfo(4, "Agent Deployment", "system"),
    WorkflowStage.AGENT_ASSIGNED: StageInfo(4, "Agent Assigned", "user"),
    WorkflowStage.HAS_BUCKET: StageInfo(4, "Bucket Ready", "system"),
    WorkflowStage.HAS_FILES: StageInfo(5, "Files Uploaded", "user"),
    WorkflowStage.HAS_KB: StageInfo(6, "Knowledge Base Created", "system"),
    WorkflowStage.ADDING_FILES: StageInfo(6, "Adding Files", "user"),
    WorkflowStage.COMPLETE: StageInfo(7, "Complete", "none"),
}

MAX_STEP = 7


def _parse(record: dict[str, Any]) -> tuple[WorkflowStage | None, ApprovalStatus | None]:
    raw_stage = record.get(STAGE_FIELD)
    raw_status = record.get(STATUS_FIELD)
    try:
        stage = WorkflowStage(raw_stage) if raw_stage is not None else None
        status = ApprovalStatus(raw_status) if raw_status is not None else None
    except ValueError:
        raise InconsistentStateError(raw_stage, raw_status, record.get("_id")) from None
    return stage, status


def is_consistent(stage: WorkflowStage, status: ApprovalStatus | None) -> bool:
    return status in ALLOWED_STATUSES[stage]


def validate(record: dict[str, Any]) -> None:
    """
    Check that the record's (stage, status) pair is allow-listed.

    Records without a stage are legacy records whose stage is derived from
    the status (see ``legacy_stage``), so they pass.

    Raises:
        InconsistentStateError: On any pair not in ALLOWED_STATUSES, or on an
            unknown stage/status value
    """
    stage, status = _parse(record)
    if stage is None:
        return
    if not is_consistent(stage, status):
        logger.warning(
            f"Inconsistent workflow state on {record.get('_id')}: "
            f"stage={stage.value} status={status.value if status else None}"
        )
        raise InconsistentStateError(
            stage.value, status.value if status else None, record.get("_id")
        )


def legacy_stage(record: dict[str, Any]) -> WorkflowStage:
    """Derive a stage for records written before workflowStage existed."""
    if not record.get("credentialID"):
        return WorkflowStage.NO_PASSKEY

    status = record.get(STATUS_FIELD)
    return {
        ApprovalStatus.REJECTED.value: WorkflowStage.REJECTED,
        ApprovalStatus.SUSPENDED.value: WorkflowStage.SUSPENDED,
        ApprovalStatus.APPROVED.value: WorkflowStage.APPROVED,
    }.get(status, WorkflowStage.AWAITING_APPROVAL)


def current_stage(record: dict[str, Any]) -> WorkflowStage:
    stage, _ = _parse(record)
    return stage or legacy_stage(record)


def can_transition(from_stage: WorkflowStage, to_stage: WorkflowStage) -> bool:
    return to_stage in TRANSITIONS[from_stage]


def transition(
    record: dict[str, Any],
    to_stage: WorkflowStage,
    status: ApprovalStatus | None = None,
) -> dict[str, Any]:
    """
    Move a record to ``to_stage`` along the transition graph.

    ``status`` sets the companion field; when omitted the current status is
    kept and must already be legal for the new stage. Returns a new dict.

    Raises:
        ValueError: If the transition is not in the graph
        InconsistentStateError: If the resulting pair is not allow-listed
    """
    from_stage = current_stage(record)
    if from_stage != to_stage and not can_transition(from_stage, to_stage):
        raise ValueError(
            f"Illegal workflow transition {from_stage.value} -> {to_stage.value}"
        )
    if status is None:
        status = record.get(STATUS_FIELD)
    return apply_state(record, to_stage, status)


def apply_state(
    record: dict[str, Any],
    stage: WorkflowStage,
    status: ApprovalStatus | str | None,
) -> dict[str, Any]:
    """Set both fields together and validate the result (no graph check)."""
    updated = dict(record)
    updated[STAGE_FIELD] = stage.value
    if status is None:
        updated.pop(STATUS_FIELD, None)
    else:
        updated[STATUS_FIELD] = ApprovalStatus(status).value
    validate(updated)
    return updated


def progress(record: dict[str, Any]) -> int:
    """Percentage through the workflow, by step number."""
    info = STAGE_INFO[current_stage(record)]
    return round(info.step / MAX_STEP * 100)
