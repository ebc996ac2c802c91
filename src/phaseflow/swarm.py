from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from phaseflow.evaluator import SwarmPlan
from phaseflow.models import Session, SpawnRequest
from phaseflow.sessions import SessionManager, SwarmSpawnError

logger = logging.getLogger(__name__)

RequestBuilder = Callable[[str], SpawnRequest]


@dataclass(slots=True)
class SwarmReport:
    covered: list[str] = field(default_factory=list)
    spawned: list[Session] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)


def swarm_members(
    roster: Iterable[Session], parent_id: str, phase: str, round: int
) -> list[Session]:
    members: list[Session] = []
    for candidate in roster:
        info = candidate.sub_session_info
        if info is None:
            continue
        if info.parent_session_id == parent_id and info.phase == phase and info.round == round:
            members.append(candidate)
    return members


def covered_roles(members: Iterable[Session]) -> set[str]:
    """Roles with at least one live sub-session."""
    return {
        member.sub_session_info.role
        for member in members
        if member.sub_session_info is not None and not member.is_terminal
    }


def completed_roles(members: Iterable[Session]) -> set[str]:
    return {
        member.sub_session_info.role
        for member in members
        if member.sub_session_info is not None and member.is_completed
    }


class SwarmSpawner:
    """Keeps one live sub-session per role for a (parent, phase, round) swarm.

    Coverage is joined from the roster on every call, so a role whose
    sub-session died is simply spawned again and nothing has to be remembered
    between evaluation cycles.
    """

    def __init__(self, session_manager: SessionManager) -> None:
        self.session_manager = session_manager

    async def roster(self, project_id: str) -> list[Session]:
        return await self.session_manager.list(project_id)

    async def _spawn_one(
        self, plan: SwarmPlan, role: str, build_request: RequestBuilder
    ) -> Session:
        request = build_request(role)
        try:
            return await self.session_manager.spawn(request)
        except SwarmSpawnError:
            raise
        except Exception as exc:
            raise SwarmSpawnError(
                f"Failed to spawn {plan.kind} sub-session for role '{role}' "
                f"({plan.phase} round {plan.round}): {exc}",
                role=role,
                phase=plan.phase,
                round=plan.round,
            ) from exc

    async def ensure(
        self,
        parent: Session,
        plan: SwarmPlan,
        build_request: RequestBuilder,
        *,
        roster: list[Session] | None = None,
    ) -> SwarmReport:
        if roster is None:
            roster = await self.roster(parent.project_id)
        members = swarm_members(roster, parent.id, plan.phase, plan.round)
        covered = covered_roles(members)

        to_spawn = [role for role in dict.fromkeys(plan.roles) if role not in covered]
        report = SwarmReport(covered=sorted(covered & set(plan.roles)))

        if plan.max_agents is not None:
            live = sum(1 for member in members if not member.is_terminal)
            budget = max(0, plan.max_agents - live)
            if len(to_spawn) > budget:
                report.deferred = to_spawn[budget:]
                to_spawn = to_spawn[:budget]
                logger.warning(
                    "Deferring %d %s role(s) for %s (max_agents=%d): %s",
                    len(report.deferred),
                    plan.kind,
                    parent.id,
                    plan.max_agents,
                    ", ".join(report.deferred),
                )

        if not to_spawn:
            return report

        logger.info(
            "Spawning %s swarm for %s (%s round %d): %s",
            plan.kind,
            parent.id,
            plan.phase,
            plan.round,
            ", ".join(to_spawn),
        )
        spawned = await asyncio.gather(
            *(self._spawn_one(plan, role, build_request) for role in to_spawn)
        )
        report.spawned = list(spawned)
        return report
