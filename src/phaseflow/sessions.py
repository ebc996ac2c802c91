from __future__ import annotations

from abc import ABC, abstractmethod

from phaseflow.models import Session, SpawnRequest


class SwarmSpawnError(RuntimeError):
    """Raised when the session manager fails to create a sub-session."""

    def __init__(
        self,
        message: str,
        *,
        role: str | None = None,
        phase: str | None = None,
        round: int | None = None,
    ) -> None:
        super().__init__(message)
        self.role = role
        self.phase = phase
        self.round = round


class SessionManager(ABC):
    @abstractmethod
    async def list(self, project_id: str | None = None) -> list[Session]:
        """Return every known session, including terminated sub-sessions."""

    @abstractmethod
    async def spawn(self, request: SpawnRequest) -> Session:
        """Create a session for ``request`` and return it."""
