"""
Session Stores

File-based and in-memory implementations of SessionStoreProtocol.

FileSessionStore keeps one JSON document per session under
`{work_dir}/sessions/{session_id}.json`. Writes go to a temp file in the same
directory which is then renamed over the target, so readers never see a
half-written snapshot. A lock per session serializes writers.
"""

import asyncio
import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import aiofiles
import structlog

logger = structlog.get_logger()


class FileSessionStore:
    """SessionStoreProtocol implementation writing JSON files with aiofiles."""

    def __init__(self, work_dir: str = ".weaver"):
        self.work_dir = Path(work_dir)
        self.sessions_dir = self.work_dir / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.locks: dict[str, asyncio.Lock] = {}
        self.logger = logger.bind(component="file_session_store")

    def _get_lock(self, session_id: str) -> asyncio.Lock:
        if session_id not in self.locks:
            self.locks[session_id] = asyncio.Lock()
        return self.locks[session_id]

    def _session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    async def save_session(self, session_id: str, data: dict[str, Any]) -> None:
        """
        Persist a session snapshot atomically.

        Raises:
            OSError: If the snapshot cannot be written
        """
        path = self._session_path(session_id)
        payload = json.dumps(data, indent=2, default=str)

        async with self._get_lock(session_id):
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.sessions_dir, suffix=".tmp", prefix=f".{session_id}_"
            )
            os.close(temp_fd)
            try:
                async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                    await f.write(payload)
                os.replace(temp_path, path)
            except Exception:
                if Path(temp_path).exists():
                    Path(temp_path).unlink()
                raise

        self.logger.debug("session_saved", session_id=session_id, path=str(path))

    async def load_session(self, session_id: str) -> dict[str, Any] | None:
        path = self._session_path(session_id)
        if not path.exists():
            return None

        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()

        self.logger.debug("session_loaded", session_id=session_id)
        return json.loads(content)

    async def list_sessions(self) -> list[str]:
        return sorted(path.stem for path in self.sessions_dir.glob("*.json"))


class InMemorySessionStore:
    """SessionStoreProtocol implementation keeping snapshots in a dict."""

    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}

    async def save_session(self, session_id: str, data: dict[str, Any]) -> None:
        self._sessions[session_id] = copy.deepcopy(data)

    async def load_session(self, session_id: str) -> dict[str, Any] | None:
        data = self._sessions.get(session_id)
        return copy.deepcopy(data) if data is not None else None

    async def list_sessions(self) -> list[str]:
        return sorted(self._sessions)
