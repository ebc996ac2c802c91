from phaseflow.state.artifacts import ArtifactError, ArtifactStore, plan_round
from phaseflow.state.metadata import MetadataError, MetadataStore, StateError

__all__ = [
    "ArtifactError",
    "ArtifactStore",
    "MetadataError",
    "MetadataStore",
    "StateError",
    "plan_round",
]
