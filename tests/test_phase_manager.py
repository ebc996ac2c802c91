from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from phaseflow.config import OrchestratorConfig, ProjectConfig, SwarmConfig, WorkflowConfig
from phaseflow.models import ReviewArtifact, Session, SpawnRequest, SubSessionInfo
from phaseflow.phase_manager import PhaseManager
from phaseflow.sessions import SessionManager, SwarmSpawnError
from phaseflow.state import ArtifactStore, MetadataError, MetadataStore


class FakeSessionManager(SessionManager):
    def __init__(self, fail: bool = False) -> None:
        self.sessions: list[Session] = []
        self.requests: list[SpawnRequest] = []
        self.fail = fail

    async def list(self, project_id: str | None = None) -> list[Session]:
        return [s for s in self.sessions if project_id is None or s.project_id == project_id]

    async def spawn(self, request: SpawnRequest) -> Session:
        if self.fail:
            raise RuntimeError("tmux is gone")
        self.requests.append(request)
        session = Session(
            id=f"app-{len(self.sessions) + 100}",
            project_id=request.project_id,
            phase=request.phase,
            status="spawning",
            branch=request.branch,
            sub_session_info=request.sub_session_info,
        )
        self.sessions.append(session)
        return session

    def roles(self) -> list[str]:
        return [request.sub_session_info.role for request in self.requests]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "my-app"
    path.mkdir()
    return path


@pytest.fixture
def config(workspace: Path) -> OrchestratorConfig:
    return OrchestratorConfig(
        projects={
            "my-app": ProjectConfig(path=str(workspace), workflow=WorkflowConfig(mode="full"))
        }
    )


def _session(workspace: Path, phase: str = "planning", **overrides) -> Session:
    fields = {
        "id": "app-1",
        "project_id": "my-app",
        "phase": phase,
        "branch": "feat/test",
        "workspace_path": str(workspace),
        "metadata": {},
    }
    fields.update(overrides)
    return Session(**fields)


def _store(config: OrchestratorConfig) -> MetadataStore:
    return MetadataStore(config.sessions_dir("my-app"))


def _seed(config: OrchestratorConfig, **fields: str) -> None:
    record = {"branch": "feat/test", "project": "my-app", "status": "working"}
    record.update(fields)
    _store(config).write("app-1", record)


def _review(workspace: Path, phase: str, round: int, role: str, decision: str) -> None:
    ArtifactStore(workspace).write_review(
        ReviewArtifact(
            phase=phase,  # type: ignore[arg-type]
            round=round,
            role=role,  # type: ignore[arg-type]
            decision=decision,  # type: ignore[arg-type]
            timestamp="2026-02-23T10:30:00Z",
            content="notes",
        )
    )


def _check(manager: PhaseManager, session: Session) -> str:
    return asyncio.run(manager.check(session))


def test_simple_mode_stays_in_planning(config, workspace) -> None:
    config.projects["my-app"].workflow.mode = "simple"
    manager = PhaseManager(config, FakeSessionManager())
    _seed(config, phase="planning")
    ArtifactStore(workspace).write_plan("# Plan")
    _review(workspace, "plan_review", 1, "architect", "approved")

    assert _check(manager, _session(workspace)) == "planning"
    assert _store(config).read("app-1")["phase"] == "planning"


def test_planning_transitions_to_plan_review(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager())
    _seed(config, phase="planning")
    ArtifactStore(workspace).write_plan("# Plan\n\ntext")

    assert _check(manager, _session(workspace)) == "plan_review"

    raw = _store(config).read("app-1")
    assert raw["phase"] == "plan_review"
    assert raw["reviewRound"] == "1"
    assert raw["branch"] == "feat/test"


def test_plan_review_all_approved_moves_to_implementing(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager())
    _seed(config, phase="plan_review", reviewRound="1")
    for role in ("architect", "developer", "product"):
        _review(workspace, "plan_review", 1, role, "approved")

    assert _check(manager, _session(workspace, "plan_review")) == "implementing"
    assert _store(config).read("app-1")["phase"] == "implementing"


def test_plan_review_changes_requested_returns_to_planning(config, workspace) -> None:
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    _seed(config, phase="plan_review", reviewRound="2")
    _review(workspace, "plan_review", 2, "architect", "changes_requested")

    assert _check(manager, _session(workspace, "plan_review")) == "planning"

    raw = _store(config).read("app-1")
    assert raw["phase"] == "planning"
    assert raw["reviewRound"] == "3"
    assert sessions.requests == []


def test_plan_review_spawns_all_reviewers(config, workspace) -> None:
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    _seed(config, phase="plan_review", reviewRound="1")
    ArtifactStore(workspace).write_plan("# Plan\n\n- Step 1\n")

    assert _check(manager, _session(workspace, "plan_review")) == "plan_review"

    assert sorted(sessions.roles()) == ["architect", "developer", "product"]
    request = sessions.requests[0]
    assert request.phase == "plan_review"
    assert request.sub_session_info == SubSessionInfo("app-1", "architect", "plan_review", 1)
    assert request.branch == "review/app-1-plan-r1-architect"
    assert request.agent == "claude-code"
    assert "plan_review-round-1-architect.md" in request.prompt
    assert "- Step 1" in request.prompt


def test_plan_review_skips_live_reviewer(config, workspace) -> None:
    sessions = FakeSessionManager()
    sessions.sessions.append(
        Session(
            id="app-7",
            project_id="my-app",
            phase="plan_review",
            sub_session_info=SubSessionInfo("app-1", "architect", "plan_review", 1),
        )
    )
    manager = PhaseManager(config, sessions)
    _seed(config, phase="plan_review", reviewRound="1")

    _check(manager, _session(workspace, "plan_review"))

    assert sorted(sessions.roles()) == ["developer", "product"]


def test_code_review_changes_requested_bumps_rounds(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager())
    _seed(config, phase="code_review", codeReviewRound="2", implementationRound="1")
    _review(workspace, "code_review", 2, "architect", "changes_requested")

    assert _check(manager, _session(workspace, "code_review")) == "implementing"

    raw = _store(config).read("app-1")
    assert raw["codeReviewRound"] == "3"
    assert raw["implementationRound"] == "2"


def test_second_check_is_idempotent(config, workspace) -> None:
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    _seed(config, phase="plan_review", reviewRound="1")
    session = _session(workspace, "plan_review")

    _check(manager, session)
    metadata_file = config.sessions_dir("my-app") / "app-1"
    first_write = metadata_file.stat().st_mtime_ns
    assert _check(manager, session) == "plan_review"

    assert len(sessions.requests) == 3
    assert metadata_file.stat().st_mtime_ns == first_write


def test_terminated_reviewer_is_respawned_once(config, workspace) -> None:
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    _seed(config, phase="plan_review", reviewRound="1")
    session = _session(workspace, "plan_review")

    _check(manager, session)
    for sub in sessions.sessions:
        if sub.sub_session_info.role == "developer":
            sub.status = "killed"
    _check(manager, session)

    assert sessions.roles().count("developer") == 2
    assert sessions.roles().count("architect") == 1
    assert sessions.roles().count("product") == 1


def test_reviewer_with_artifact_is_not_respawned(config, workspace) -> None:
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    _seed(config, phase="plan_review", reviewRound="1")
    session = _session(workspace, "plan_review")

    _check(manager, session)
    for sub in sessions.sessions:
        sub.status = "done"
    _review(workspace, "plan_review", 1, "product", "approved")
    _check(manager, session)

    assert sorted(sessions.roles()) == [
        "architect",
        "architect",
        "developer",
        "developer",
        "product",
    ]


def test_durable_metadata_wins_over_session_snapshot(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager())
    _seed(config, phase="plan_review", reviewRound="1")
    for role in ("architect", "developer", "product"):
        _review(workspace, "plan_review", 1, role, "approved")
    session = _session(workspace, "planning")

    assert _check(manager, session) == "implementing"
    assert session.phase == "implementing"
    assert session.metadata["phase"] == "implementing"


def test_missing_metadata_defaults_rounds(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager())
    ArtifactStore(workspace).write_plan("# Plan")

    assert _check(manager, _session(workspace, issue_id="42")) == "plan_review"

    raw = _store(config).read("app-1")
    assert raw["phase"] == "plan_review"
    assert raw["planRound"] == "1"
    assert raw["reviewRound"] == "1"
    assert raw["project"] == "my-app"
    assert raw["issue"] == "42"


def test_corrupted_round_falls_back_to_one(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager())
    _seed(config, phase="plan_review", reviewRound="banana")
    _review(workspace, "plan_review", 1, "architect", "changes_requested")

    assert _check(manager, _session(workspace, "plan_review")) == "planning"
    assert _store(config).read("app-1")["reviewRound"] == "2"


def test_replanning_waits_for_marked_revision(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager())
    store = ArtifactStore(workspace)
    store.write_plan("# Plan v1")
    _seed(config, phase="plan_review", reviewRound="1")
    _review(workspace, "plan_review", 1, "developer", "changes_requested")
    session = _session(workspace, "plan_review")

    assert _check(manager, session) == "planning"
    assert _check(manager, session) == "planning"

    store.write_plan("# Plan v2", round=2)
    assert _check(manager, session) == "plan_review"
    assert _store(config).read("app-1")["reviewRound"] == "2"


def test_planning_swarm_spawns_under_cap_and_respawns(config, workspace) -> None:
    config.projects["my-app"].workflow.planning_swarm = SwarmConfig(
        roles=["backend", "frontend", "qa"], max_agents=2
    )
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    _seed(config, phase="planning")
    session = _session(workspace, issue_id="42")

    assert _check(manager, session) == "planning"
    assert sessions.roles() == ["backend", "frontend"]
    request = sessions.requests[0]
    assert request.phase == "planning"
    assert request.sub_session_info == SubSessionInfo("app-1", "backend", "planning", 1)
    assert request.branch == "plan/app-1-r1-backend"
    assert request.agent == "claude-code"
    assert "for issue 42" in request.prompt
    assert "<!-- round: 1 -->" in request.prompt

    for sub in sessions.sessions:
        if sub.sub_session_info.role == "frontend":
            sub.status = "terminated"
    assert _check(manager, session) == "planning"
    assert sessions.roles() == ["backend", "frontend", "frontend"]

    assert _check(manager, session) == "planning"
    assert len(sessions.requests) == 3


def test_planning_swarm_redrafts_stale_revision(config, workspace) -> None:
    config.projects["my-app"].workflow.planning_swarm = SwarmConfig(
        roles=["backend", "frontend"], max_agents=2
    )
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    store = ArtifactStore(workspace)
    store.write_plan("# Plan v1\n- Build API\n")
    _seed(config, phase="planning", planRound="2", reviewRound="2")
    session = _session(workspace)

    assert _check(manager, session) == "planning"
    assert sessions.roles() == ["backend", "frontend"]
    assert all(r.sub_session_info.round == 2 for r in sessions.requests)
    assert sessions.requests[1].branch == "plan/app-1-r2-frontend"
    assert "<!-- round: 2 -->" in sessions.requests[0].prompt
    assert "phaseflow plan submit --workspace . --round 2" in sessions.requests[0].prompt

    store.write_plan("# Plan v2\n- Build API\n", round=2)
    assert _check(manager, session) == "plan_review"
    assert len(sessions.requests) == 2


def test_implementation_swarm_then_code_review(config, workspace) -> None:
    config.projects["my-app"].workflow.implementation_swarm = SwarmConfig(
        roles=["backend", "frontend"], max_agents=2
    )
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    ArtifactStore(workspace).write_plan("# Plan\n- Build API\n- Build UI\n- Write docs\n")
    _seed(config, phase="implementing")
    session = _session(workspace, "implementing", status="review_pending", pr="https://x/pr/9")

    assert _check(manager, session) == "implementing"
    assert sessions.roles() == ["backend", "frontend"]
    assert "Your assigned work item: Build API" in sessions.requests[0].prompt
    assert "Your assigned work item: Build UI" in sessions.requests[1].prompt
    assert sessions.requests[0].branch == "impl/app-1-r1-backend"

    assert _check(manager, session) == "implementing"
    assert len(sessions.requests) == 2

    for sub in sessions.sessions:
        sub.status = "done"
    assert _check(manager, session) == "code_review"
    raw = _store(config).read("app-1")
    assert raw["implementationSwarmRound"] == "1"
    assert raw["codeReviewRound"] == "1"
    assert len(sessions.requests) == 2


def test_code_review_spawns_reviewers_for_pr(config, workspace) -> None:
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    _seed(config, phase="code_review", codeReviewRound="2")
    session = _session(workspace, "code_review", pr="https://x/pr/9")

    _check(manager, session)

    assert sorted(sessions.roles()) == ["architect", "developer", "product"]
    assert all(r.sub_session_info.round == 2 for r in sessions.requests)
    assert "https://x/pr/9" in sessions.requests[0].prompt
    assert sessions.requests[0].branch.startswith("review/app-1-code-r2-")


def test_ready_to_merge_is_left_alone(config, workspace) -> None:
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    _seed(config, phase="ready_to_merge", reviewRound="1", planRound="1",
          implementationRound="1", codeReviewRound="1")
    before = (config.sessions_dir("my-app") / "app-1").stat().st_mtime_ns

    assert _check(manager, _session(workspace, "ready_to_merge")) == "ready_to_merge"
    assert sessions.requests == []
    assert (config.sessions_dir("my-app") / "app-1").stat().st_mtime_ns == before


def test_spawn_failure_propagates_after_persisting(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager(fail=True))
    _seed(config, phase="plan_review", reviewRound="1")

    with pytest.raises(SwarmSpawnError, match="tmux is gone"):
        _check(manager, _session(workspace, "plan_review"))
    assert _store(config).read("app-1")["phase"] == "plan_review"


def test_metadata_errors_propagate(config, workspace) -> None:
    sessions_dir = config.sessions_dir("my-app")
    sessions_dir.mkdir(parents=True)
    (sessions_dir / "app-1").mkdir()
    manager = PhaseManager(config, FakeSessionManager())

    with pytest.raises(MetadataError):
        _check(manager, _session(workspace))


def test_leftover_lock_file_does_not_block_check(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager())
    _seed(config, phase="planning")
    (config.sessions_dir("my-app") / ".app-1.lock").write_text("999", encoding="utf-8")
    ArtifactStore(workspace).write_plan("# Plan")

    assert _check(manager, _session(workspace)) == "plan_review"
    assert _store(config).read("app-1")["phase"] == "plan_review"


def test_unknown_project_and_missing_workspace(config, workspace) -> None:
    manager = PhaseManager(config, FakeSessionManager())

    assert _check(manager, _session(workspace, project_id="other")) == "planning"
    assert _check(manager, _session(workspace, "implementing", workspace_path=None)) == (
        "implementing"
    )
    assert _store(config).read("app-1") is None


def test_check_all_evaluates_each_primary_session_once(config, workspace) -> None:
    sessions = FakeSessionManager()
    manager = PhaseManager(config, sessions)
    ArtifactStore(workspace).write_plan("# Plan")
    primary = _session(workspace)
    duplicate = _session(workspace)
    reviewer = _session(
        workspace,
        id="app-9",
        sub_session_info=SubSessionInfo("app-1", "architect", "plan_review", 1),
    )

    results = asyncio.run(manager.check_all([primary, duplicate, reviewer]))

    assert results == {"app-1": "plan_review"}
