from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import cast

from phaseflow.config import OrchestratorConfig, ProjectConfig
from phaseflow.evaluator import Decision, EvaluationInput, Rounds, SwarmPlan, evaluate
from phaseflow.models import (
    IMPLEMENTATION_SWARM_ROUND_KEY,
    IMPLEMENTING,
    PHASE_KEY,
    PLAN_REVIEW,
    REVIEW_PHASES,
    Phase,
    ReviewArtifact,
    Session,
    SpawnRequest,
    SubSessionInfo,
    is_phase,
    parse_round,
)
from phaseflow.prompts import (
    build_implementation_prompt,
    build_planning_prompt,
    build_review_prompt,
)
from phaseflow.routing import resolve_agent_name
from phaseflow.sessions import SessionManager
from phaseflow.state.artifacts import ArtifactStore
from phaseflow.state.metadata import MetadataStore
from phaseflow.swarm import SwarmReport, SwarmSpawner, completed_roles, swarm_members

logger = logging.getLogger(__name__)

MetadataStoreFactory = Callable[[str], MetadataStore]


class PhaseManager:
    """Runs one evaluation cycle per ``check`` call.

    The persisted metadata record is the source of truth for phase and round
    counters; the ``Session`` object handed in by the scheduler is only used
    for identity, workspace location and externally observed status. Calls
    for the same session must be serialized by the caller.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        session_manager: SessionManager | None = None,
        *,
        metadata_store_factory: MetadataStoreFactory | None = None,
    ) -> None:
        self.config = config
        self.session_manager = session_manager
        self.spawner = SwarmSpawner(session_manager) if session_manager is not None else None
        self._metadata_store_factory = metadata_store_factory or self._default_metadata_store

    def _default_metadata_store(self, project_id: str) -> MetadataStore:
        return MetadataStore(self.config.sessions_dir(project_id))

    def metadata_store(self, project_id: str) -> MetadataStore:
        return self._metadata_store_factory(project_id)

    @staticmethod
    def _review_round(phase: str, rounds: Rounds) -> int:
        return rounds.review if phase == PLAN_REVIEW else rounds.code_review

    @staticmethod
    def _needs_implementation_roster(
        project: ProjectConfig, phase: str, rounds: Rounds, record: dict[str, str]
    ) -> bool:
        swarm = project.workflow.implementation_swarm
        if phase != IMPLEMENTING or swarm is None or not swarm.roles:
            return False
        distributed = record.get(IMPLEMENTATION_SWARM_ROUND_KEY)
        return distributed is None or parse_round(distributed, 0) != rounds.implementation

    async def check(self, session: Session) -> Phase:
        project = self.config.projects.get(session.project_id)
        if project is None:
            logger.debug(
                "Session %s belongs to unknown project %s", session.id, session.project_id
            )
            return session.phase

        store = self.metadata_store(session.project_id)
        stored = await asyncio.to_thread(store.read, session.id)
        record = dict(stored or {})
        stored_phase = record.get(PHASE_KEY)
        current = cast(Phase, stored_phase) if is_phase(stored_phase) else session.phase
        rounds = Rounds.from_metadata(record)
        workflow = project.workflow

        if workflow.mode == "full" and not session.workspace_path:
            logger.debug("Session %s has no workspace yet", session.id)
            return current

        plan: str | None = None
        reviews: list[ReviewArtifact] = []
        roster: list[Session] | None = None
        completed: frozenset[str] = frozenset()
        if workflow.mode == "full":
            artifacts = ArtifactStore(session.workspace_path)
            if current in REVIEW_PHASES:
                plan, reviews = await asyncio.gather(
                    asyncio.to_thread(artifacts.read_plan),
                    asyncio.to_thread(
                        artifacts.read_reviews, current, self._review_round(current, rounds)
                    ),
                )
            else:
                plan = await asyncio.to_thread(artifacts.read_plan)

            if self.spawner is not None and self._needs_implementation_roster(
                project, current, rounds, record
            ):
                roster = await self.spawner.roster(session.project_id)
                members = swarm_members(roster, session.id, IMPLEMENTING, rounds.implementation)
                completed = frozenset(completed_roles(members))

        distributed_raw = record.get(IMPLEMENTATION_SWARM_ROUND_KEY)
        decision = evaluate(
            EvaluationInput(
                phase=current,
                rounds=rounds,
                workflow=workflow,
                plan=plan,
                reviews=reviews,
                status=session.status,
                pr=session.pr,
                implementation_swarm_round=(
                    parse_round(distributed_raw, 0) if distributed_raw is not None else None
                ),
                completed_roles=completed,
            )
        )

        await self._persist(store, session, record, stored is None, current, decision)

        if decision.swarm is not None:
            await self._ensure_swarm(session, project, decision.swarm, plan, roster)
        return decision.phase

    async def _persist(
        self,
        store: MetadataStore,
        session: Session,
        record: dict[str, str],
        is_new: bool,
        previous: Phase,
        decision: Decision,
    ) -> None:
        updated = dict(record)
        if is_new:
            for key, value in (
                ("project", session.project_id),
                ("branch", session.branch),
                ("issue", session.issue_id),
                ("worktree", session.workspace_path),
            ):
                if value:
                    updated[key] = value
        updated[PHASE_KEY] = decision.phase
        updated.update(decision.rounds.to_metadata())
        updated.update(decision.updates)

        if updated != record:
            await asyncio.to_thread(store.write, session.id, updated)

        if decision.phase != previous:
            logger.info(
                "Session %s: %s -> %s (%s)", session.id, previous, decision.phase, decision.reason
            )
        else:
            logger.debug("Session %s stays in %s (%s)", session.id, previous, decision.reason)

        session.phase = decision.phase
        session.metadata.update(updated)

    def _build_request(
        self,
        session: Session,
        project: ProjectConfig,
        swarm: SwarmPlan,
        role: str,
        plan_content: str | None,
    ) -> SpawnRequest:
        info = SubSessionInfo(
            parent_session_id=session.id,
            role=role,
            phase=swarm.phase,
            round=swarm.round,
        )
        workflow = project.workflow
        if swarm.kind == "review":
            review = workflow.plan_review if swarm.phase == PLAN_REVIEW else workflow.code_review
            tag = "plan" if swarm.phase == PLAN_REVIEW else "code"
            branch = f"review/{session.id}-{tag}-r{swarm.round}-{role}"
            prompt = build_review_prompt(
                session,
                phase=swarm.phase,
                role=role,
                round=swarm.round,
                plan_content=plan_content,
                role_prompt=review.role_prompts.get(role),
            )
        elif swarm.kind == "planning":
            role_prompts = workflow.planning_swarm.role_prompts if workflow.planning_swarm else {}
            branch = f"plan/{session.id}-r{swarm.round}-{role}"
            prompt = build_planning_prompt(
                session, role=role, round=swarm.round, role_prompt=role_prompts.get(role)
            )
        else:
            swarm_config = workflow.implementation_swarm
            role_prompts = swarm_config.role_prompts if swarm_config else {}
            branch = f"impl/{session.id}-r{swarm.round}-{role}"
            prompt = build_implementation_prompt(
                session,
                role=role,
                round=swarm.round,
                work_item=swarm.assignments[role],
                plan_content=plan_content,
                role_prompt=role_prompts.get(role),
            )

        return SpawnRequest(
            project_id=session.project_id,
            phase=swarm.phase,
            prompt=prompt,
            sub_session_info=info,
            branch=branch,
            issue_id=session.issue_id,
            agent=resolve_agent_name(self.config, project, swarm.phase, info),
        )

    async def _ensure_swarm(
        self,
        session: Session,
        project: ProjectConfig,
        swarm: SwarmPlan,
        plan_content: str | None,
        roster: list[Session] | None,
    ) -> SwarmReport | None:
        if self.spawner is None:
            logger.warning(
                "No session manager configured; cannot spawn %s swarm for %s",
                swarm.kind,
                session.id,
            )
            return None
        return await self.spawner.ensure(
            session,
            swarm,
            lambda role: self._build_request(session, project, swarm, role, plan_content),
            roster=roster,
        )

    async def check_all(self, sessions: Iterable[Session]) -> dict[str, Phase | Exception]:
        """Evaluate distinct sessions concurrently, one evaluation per session id.

        Sub-sessions are skipped. A failing session maps to its exception so
        the caller can log it and retry on the next tick.
        """
        unique: dict[str, Session] = {}
        for session in sessions:
            if session.sub_session_info is None:
                unique.setdefault(session.id, session)
        results = await asyncio.gather(
            *(self.check(session) for session in unique.values()),
            return_exceptions=True,
        )
        outcome: dict[str, Phase | Exception] = {}
        for session_id, result in zip(unique, results):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            outcome[session_id] = result
        return outcome
