from phaseflow.config import OrchestratorConfig, load_config, save_config
from phaseflow.evaluator import Decision, EvaluationInput, Rounds, SwarmPlan, evaluate
from phaseflow.models import (
    CODE_REVIEW,
    IMPLEMENTING,
    PLAN_REVIEW,
    PLANNING,
    READY_TO_MERGE,
    ReviewArtifact,
    Session,
    SpawnRequest,
    SubSessionInfo,
)
from phaseflow.phase_manager import PhaseManager
from phaseflow.sessions import SessionManager, SwarmSpawnError
from phaseflow.state import ArtifactStore, MetadataStore, StateError
from phaseflow.swarm import SwarmSpawner

__version__ = "0.3.0"

__all__ = [
    "CODE_REVIEW",
    "IMPLEMENTING",
    "PLANNING",
    "PLAN_REVIEW",
    "READY_TO_MERGE",
    "ArtifactStore",
    "Decision",
    "EvaluationInput",
    "MetadataStore",
    "OrchestratorConfig",
    "PhaseManager",
    "ReviewArtifact",
    "Rounds",
    "Session",
    "SessionManager",
    "SpawnRequest",
    "StateError",
    "SubSessionInfo",
    "SwarmPlan",
    "SwarmSpawnError",
    "SwarmSpawner",
    "__version__",
    "evaluate",
    "load_config",
    "save_config",
]
