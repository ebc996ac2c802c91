from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, get_args

Phase = Literal["planning", "plan_review", "implementing", "code_review", "ready_to_merge"]
ReviewPhase = Literal["plan_review", "code_review"]
ReviewRole = Literal["architect", "developer", "product"]
ReviewDecision = Literal["approved", "changes_requested", "pending"]

PLANNING: Phase = "planning"
PLAN_REVIEW: Phase = "plan_review"
IMPLEMENTING: Phase = "implementing"
CODE_REVIEW: Phase = "code_review"
READY_TO_MERGE: Phase = "ready_to_merge"

PHASES: tuple[str, ...] = get_args(Phase)
REVIEW_PHASES: tuple[str, ...] = get_args(ReviewPhase)
REVIEW_ROLES: tuple[ReviewRole, ...] = ("architect", "developer", "product")
REVIEW_DECISIONS: tuple[str, ...] = get_args(ReviewDecision)

TERMINAL_STATUSES = {"killed", "done", "terminated", "merged"}
COMPLETED_STATUSES = {"done", "merged"}
TERMINAL_ACTIVITIES = {"exited"}
REVIEW_READY_STATUSES = {"review_pending"}

# Metadata keys owned by the phase manager.
PHASE_KEY = "phase"
PLAN_ROUND_KEY = "planRound"
REVIEW_ROUND_KEY = "reviewRound"
IMPLEMENTATION_ROUND_KEY = "implementationRound"
CODE_REVIEW_ROUND_KEY = "codeReviewRound"
IMPLEMENTATION_SWARM_ROUND_KEY = "implementationSwarmRound"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def parse_round(raw: str | None, fallback: int = 1) -> int:
    """Parse a persisted round counter; anything unusable falls back."""
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return fallback
    return value if value > 0 else fallback


def is_phase(value: str | None) -> bool:
    return value in PHASES


@dataclass(slots=True, frozen=True)
class SubSessionInfo:
    parent_session_id: str
    role: str
    phase: Phase
    round: int


@dataclass(slots=True)
class Session:
    id: str
    project_id: str
    phase: Phase = PLANNING
    status: str = "working"
    activity: str = "active"
    branch: str | None = None
    workspace_path: str | None = None
    issue_id: str | None = None
    pr: str | None = None
    sub_session_info: SubSessionInfo | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES or self.activity in TERMINAL_ACTIVITIES

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES


@dataclass(slots=True)
class SpawnRequest:
    project_id: str
    phase: Phase
    prompt: str
    sub_session_info: SubSessionInfo
    branch: str | None = None
    issue_id: str | None = None
    agent: str | None = None


@dataclass(slots=True)
class ReviewArtifact:
    phase: ReviewPhase
    round: int
    role: ReviewRole
    decision: ReviewDecision
    timestamp: str = ""
    content: str = ""
    path: str | None = None
