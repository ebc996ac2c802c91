from __future__ import annotations

from phaseflow.config import OrchestratorConfig, ProjectConfig, ReviewConfig, SwarmConfig
from phaseflow.models import (
    CODE_REVIEW,
    IMPLEMENTING,
    PLAN_REVIEW,
    PLANNING,
    SubSessionInfo,
)


def _review_config(project: ProjectConfig, phase: str) -> ReviewConfig | None:
    if phase == PLAN_REVIEW:
        return project.workflow.plan_review
    if phase == CODE_REVIEW:
        return project.workflow.code_review
    return None


def _execution_config(project: ProjectConfig, phase: str) -> SwarmConfig | None:
    if phase == PLANNING:
        return project.workflow.planning_swarm
    if phase == IMPLEMENTING:
        return project.workflow.implementation_swarm
    return None


def resolve_agent_name(
    config: OrchestratorConfig,
    project: ProjectConfig,
    phase: str | None = None,
    sub_session_info: SubSessionInfo | None = None,
) -> str:
    """Pick the agent for a session in its phase/role context.

    Review sub-sessions: role override, then review agent, then coding agent.
    Execution swarm members: role override, then swarm agent, then coding agent.
    Without a phase the project (or default) agent is returned.
    """
    default_agent = project.agent or config.defaults.agent
    workflow = project.workflow
    coding_agent = workflow.coding_agent or default_agent

    if workflow.mode != "full":
        return coding_agent
    if phase is None:
        return default_agent

    review = _review_config(project, phase)
    if review is None or sub_session_info is None:
        execution = _execution_config(project, phase)
        if execution is not None and sub_session_info is not None:
            role = sub_session_info.role
            return execution.role_agents.get(role) or execution.agent or coding_agent
        return coding_agent

    return review.role_agents.get(sub_session_info.role) or review.agent or coding_agent
