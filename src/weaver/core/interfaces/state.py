"""
Session Store Protocol

Persistence port for orchestration session snapshots. Sessions call
`save_session` after each committed transition when a store is configured.
"""

from typing import Any, Protocol


class SessionStoreProtocol(Protocol):
    """Protocol for persisting session snapshots."""

    async def save_session(self, session_id: str, data: dict[str, Any]) -> None:
        """Persist the latest snapshot of a session."""
        ...

    async def load_session(self, session_id: str) -> dict[str, Any] | None:
        """Load a session snapshot, or None if it does not exist."""
        ...

    async def list_sessions(self) -> list[str]:
        """List ids of all stored sessions."""
        ...
