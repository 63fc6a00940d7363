"""Sinks for closed sessions."""
from pathlib import Path
import asyncio
import json
from typing import Optional, Protocol
import structlog
import httpx

from .errors import PersistenceError
from .models import Session

logger = structlog.get_logger()


class SessionSink(Protocol):
    async def save(self, session: Session) -> None:
        """Persist a closed session; raise PersistenceError on failure."""


class JsonlSessionStore:
    """Append-only JSONL file of closed sessions."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("session_store_initialized", path=str(self.path))

    async def save(self, session: Session) -> None:
        """Append one closed session without blocking the event loop."""
        await asyncio.to_thread(self.append, session)

    def append(self, session: Session) -> None:
        try:
            with open(self.path, "a") as f:
                f.write(session.model_dump_json() + "\n")
                f.flush()
        except OSError as e:
            raise PersistenceError(session.id, str(e)) from e

        logger.info("session_saved", session_id=session.id, file=str(self.path))

    def load_sessions(self) -> list[Session]:
        """Read all stored sessions, skipping lines that no longer parse."""
        if not self.path.exists():
            return []

        sessions = []
        with open(self.path, "r") as f:
            for line_num, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    sessions.append(Session(**json.loads(line)))
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning(
                        "invalid_jsonl_line",
                        file=str(self.path),
                        line_num=line_num,
                        error=str(e)
                    )
                    continue

        logger.info("sessions_loaded", count=len(sessions))
        return sessions

    def get(self, session_id: str) -> Optional[Session]:
        for session in self.load_sessions():
            if session.id == session_id:
                return session
        return None


class HttpSessionSink:
    """POSTs closed sessions to a remote collector."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def save(self, session: Session) -> None:
        try:
            response = await self._client.post(self.url, json=session.model_dump(mode="json"))
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise PersistenceError(session.id, str(e)) from e
        logger.info("session_forwarded", session_id=session.id, url=self.url)

    async def close(self) -> None:
        await self._client.aclose()

