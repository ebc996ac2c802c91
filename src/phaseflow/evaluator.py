"""Phase decisions for one primary session.

``evaluate`` is a pure function: it sees the durable round counters, the
artifacts found in the workspace and what the roster says about the
implementation swarm, and returns the next phase together with the round
counters and the swarm that should be live. It never touches disk or the
session manager; :mod:`phaseflow.phase_manager` does that around it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Literal

from phaseflow.config import WorkflowConfig
from phaseflow.models import (
    CODE_REVIEW,
    CODE_REVIEW_ROUND_KEY,
    IMPLEMENTATION_ROUND_KEY,
    IMPLEMENTATION_SWARM_ROUND_KEY,
    IMPLEMENTING,
    PLAN_REVIEW,
    PLAN_ROUND_KEY,
    PLANNING,
    READY_TO_MERGE,
    REVIEW_READY_STATUSES,
    REVIEW_ROLES,
    REVIEW_ROUND_KEY,
    Phase,
    ReviewArtifact,
    parse_round,
)
from phaseflow.state.artifacts import plan_round

SwarmKind = Literal["planning", "review", "implementation"]

PLAN_ITEM_PATTERN = re.compile(r"^(?:[-*]|\d+[.)])\s+(.+)$")

# Higher wins when a role left more than one artifact in a round.
DECISION_WEIGHT = {"pending": 0, "approved": 1, "changes_requested": 2}


@dataclass(slots=True, frozen=True)
class Rounds:
    plan: int = 1
    review: int = 1
    implementation: int = 1
    code_review: int = 1

    @classmethod
    def from_metadata(cls, record: Mapping[str, str] | None) -> Rounds:
        record = record or {}
        return cls(
            plan=parse_round(record.get(PLAN_ROUND_KEY)),
            review=parse_round(record.get(REVIEW_ROUND_KEY)),
            implementation=parse_round(record.get(IMPLEMENTATION_ROUND_KEY)),
            code_review=parse_round(record.get(CODE_REVIEW_ROUND_KEY)),
        )

    def to_metadata(self) -> dict[str, str]:
        return {
            PLAN_ROUND_KEY: str(self.plan),
            REVIEW_ROUND_KEY: str(self.review),
            IMPLEMENTATION_ROUND_KEY: str(self.implementation),
            CODE_REVIEW_ROUND_KEY: str(self.code_review),
        }


@dataclass(slots=True)
class SwarmPlan:
    kind: SwarmKind
    phase: Phase
    round: int
    roles: list[str]
    assignments: dict[str, str] = field(default_factory=dict)
    max_agents: int | None = None


@dataclass(slots=True)
class EvaluationInput:
    phase: Phase
    rounds: Rounds
    workflow: WorkflowConfig
    plan: str | None = None
    reviews: list[ReviewArtifact] = field(default_factory=list)
    status: str = ""
    pr: str | None = None
    implementation_swarm_round: int | None = None
    completed_roles: frozenset[str] = frozenset()


@dataclass(slots=True)
class Decision:
    phase: Phase
    rounds: Rounds
    updates: dict[str, str] = field(default_factory=dict)
    swarm: SwarmPlan | None = None
    reason: str = ""


def extract_plan_items(content: str) -> list[str]:
    """Top-level bullet and numbered list items of a plan, in document order.

    Indented items are details of the item above them, not work items.
    """
    items: list[str] = []
    for raw_line in content.splitlines():
        match = PLAN_ITEM_PATTERN.match(raw_line.rstrip())
        if match:
            items.append(match.group(1).strip())
    return items


def assign_work_items(roles: Iterable[str], items: Iterable[str]) -> dict[str, str]:
    """Item i goes to role i; surplus roles get nothing, surplus items are dropped."""
    return dict(zip(roles, items))


def decisive_reviews(reviews: Iterable[ReviewArtifact]) -> dict[str, ReviewArtifact]:
    by_role: dict[str, ReviewArtifact] = {}
    for review in reviews:
        current = by_role.get(review.role)
        if current is None or DECISION_WEIGHT[review.decision] > DECISION_WEIGHT[current.decision]:
            by_role[review.role] = review
    return by_role


def _evaluate_planning(data: EvaluationInput) -> Decision:
    rounds = data.rounds
    swarm_config = data.workflow.planning_swarm
    planning_swarm = None
    if swarm_config is not None and swarm_config.roles:
        planning_swarm = SwarmPlan(
            kind="planning",
            phase=PLANNING,
            round=rounds.plan,
            roles=list(swarm_config.roles),
            max_agents=swarm_config.max_agents,
        )

    if data.plan is None or not data.plan.strip():
        return Decision(PLANNING, rounds, swarm=planning_swarm, reason="no plan yet")

    if rounds.plan > 1 and plan_round(data.plan) != rounds.plan:
        return Decision(
            PLANNING,
            rounds,
            swarm=planning_swarm,
            reason=f"plan revision {rounds.plan} not written yet",
        )

    return Decision(PLAN_REVIEW, rounds, reason="plan ready for review")


def _evaluate_review(data: EvaluationInput) -> Decision:
    rounds = data.rounds
    is_plan = data.phase == PLAN_REVIEW
    round = rounds.review if is_plan else rounds.code_review
    by_role = decisive_reviews(
        review for review in data.reviews if review.phase == data.phase and review.round == round
    )

    rejected = sorted(
        role for role, review in by_role.items() if review.decision == "changes_requested"
    )
    if rejected:
        if is_plan:
            bumped = replace(rounds, review=round + 1, plan=rounds.plan + 1)
            back: Phase = PLANNING
        else:
            bumped = replace(
                rounds, code_review=round + 1, implementation=rounds.implementation + 1
            )
            back = IMPLEMENTING
        return Decision(back, bumped, reason=f"changes requested by {', '.join(rejected)}")

    approved = {role for role, review in by_role.items() if review.decision == "approved"}
    if approved.issuperset(REVIEW_ROLES):
        forward: Phase = IMPLEMENTING if is_plan else READY_TO_MERGE
        return Decision(forward, rounds, reason="all reviewers approved")

    missing = [role for role in REVIEW_ROLES if role not in by_role]
    swarm = None
    if missing:
        swarm = SwarmPlan(kind="review", phase=data.phase, round=round, roles=missing)
    return Decision(data.phase, rounds, swarm=swarm, reason="waiting for reviews")


def _evaluate_implementing(data: EvaluationInput) -> Decision:
    rounds = data.rounds
    updates: dict[str, str] = {}
    swarm_config = data.workflow.implementation_swarm

    if (
        swarm_config is not None
        and swarm_config.roles
        and data.implementation_swarm_round != rounds.implementation
    ):
        assignments = assign_work_items(swarm_config.roles, extract_plan_items(data.plan or ""))
        pending = [role for role in assignments if role not in data.completed_roles]
        if pending:
            return Decision(
                IMPLEMENTING,
                rounds,
                swarm=SwarmPlan(
                    kind="implementation",
                    phase=IMPLEMENTING,
                    round=rounds.implementation,
                    roles=pending,
                    assignments={role: assignments[role] for role in pending},
                    max_agents=swarm_config.max_agents,
                ),
                reason=f"implementation swarm working on {len(pending)} item(s)",
            )
        if assignments:
            updates[IMPLEMENTATION_SWARM_ROUND_KEY] = str(rounds.implementation)

    if data.workflow.auto_code_review and data.status in REVIEW_READY_STATUSES and data.pr:
        return Decision(CODE_REVIEW, rounds, updates=updates, reason="pull request awaits review")

    return Decision(IMPLEMENTING, rounds, updates=updates, reason="implementation in progress")


def evaluate(data: EvaluationInput) -> Decision:
    if data.workflow.mode != "full":
        return Decision(PLANNING, data.rounds, reason="simple workflow mode")
    if data.phase == PLANNING:
        return _evaluate_planning(data)
    if data.phase in (PLAN_REVIEW, CODE_REVIEW):
        return _evaluate_review(data)
    if data.phase == IMPLEMENTING:
        return _evaluate_implementing(data)
    return Decision(data.phase, data.rounds, reason="terminal phase")
