"""
Application Layer - Session Registry

Process-wide registry of live orchestration sessions, used by the HTTP API.
All sessions created through the registry share one ProjectLockRegistry, so
plans against the same project serialize across sessions.
"""

import structlog

from weaver.core.domain.executor import ProjectLockRegistry
from weaver.core.domain.session import OrchestrationSession

logger = structlog.get_logger()


class SessionRegistry:
    """Live sessions by id."""

    def __init__(self, locks: ProjectLockRegistry | None = None):
        self.locks = locks or ProjectLockRegistry()
        self._sessions: dict[str, OrchestrationSession] = {}
        self.logger = logger.bind(component="session_registry")

    def add(self, session: OrchestrationSession) -> None:
        if session.session_id in self._sessions:
            raise ValueError(f"Session already registered: {session.session_id}")
        self._sessions[session.session_id] = session
        self.logger.info("session_registered", session_id=session.session_id)

    def get(self, session_id: str) -> OrchestrationSession:
        """
        Raises:
            KeyError: If no live session has this id
        """
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown session: {session_id}") from None

    def list(self) -> list[OrchestrationSession]:
        return list(self._sessions.values())

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            session.cancel("server shutdown")
            await session.close()
        self._sessions.clear()
