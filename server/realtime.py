"""Real-time fan-out of context updates and suggestions over WebSockets.

Every session gets a bounded outbox drained by its own sender task, so a
slow client never blocks the publisher: when an outbox is full the
message is dropped for that session and counted.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from config.settings import PublishScope
from observability.prometheus_metrics import realtime_dropped, realtime_sessions

logger = logging.getLogger(__name__)

NEW_CONTEXT = "new-context"
SUGGESTIONS_UPDATE = "suggestions-update"


@dataclass
class Session:
    id: str
    subject_id: Optional[str]
    websocket: Any
    outbox: asyncio.Queue
    sender: Optional[asyncio.Task] = None
    connected_at: datetime = field(default_factory=datetime.utcnow)


class ConnectionHub:
    """Tracks connected sessions and delivers events to them."""

    def __init__(self, scope: PublishScope = PublishScope.SUBJECT, outbox_size: int = 50):
        self.scope = PublishScope(scope)
        self.outbox_size = outbox_size
        self._sessions: Dict[str, Session] = {}

    def register(self, websocket: Any, subject_id: Optional[str] = None) -> str:
        """Track a new session and start its sender task; returns the session id."""
        session = Session(
            id=str(uuid4()),
            subject_id=subject_id,
            websocket=websocket,
            outbox=asyncio.Queue(maxsize=self.outbox_size)
        )
        session.sender = asyncio.create_task(self._send_loop(session))
        self._sessions[session.id] = session
        realtime_sessions.set(len(self._sessions))
        logger.info(f"Real-time session {session.id} connected (subject={subject_id})")
        return session.id

    async def unregister(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        realtime_sessions.set(len(self._sessions))
        if session.sender is not None and session.sender is not asyncio.current_task():
            session.sender.cancel()
            await asyncio.gather(session.sender, return_exceptions=True)
        logger.info(f"Real-time session {session_id} disconnected")

    def sessions_for(self, subject_id: str) -> List[str]:
        return [s.id for s in self._sessions.values() if s.subject_id == subject_id]

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def publish_context(self, event: Dict[str, Any], subject_id: Optional[str],
                        origin_session: Optional[str] = None) -> int:
        """Send ``new-context`` to peers of the origin session; returns deliveries queued."""
        if self.scope == PublishScope.BROADCAST or subject_id is None:
            targets: Iterable[Session] = self._sessions.values()
        else:
            targets = (s for s in self._sessions.values() if s.subject_id == subject_id)
        message = {
            "type": NEW_CONTEXT,
            "subject_id": subject_id,
            "data": event,
            "timestamp": datetime.utcnow().isoformat() + "Z"
        }
        return self._deliver([s for s in targets if s.id != origin_session], message)

    def publish_suggestions(self, subject_id: str, suggestions: List[Dict[str, Any]]) -> int:
        """Send ``suggestions-update`` to every session of ``subject_id``."""
        message = {
            "type": SUGGESTIONS_UPDATE,
            "subject_id": subject_id,
            "data": suggestions,
            "timestamp": datetime.utcnow().isoformat() + "Z"
        }
        targets = [s for s in self._sessions.values() if s.subject_id == subject_id]
        return self._deliver(targets, message)

    def send(self, session_id: str, message: Dict[str, Any]) -> bool:
        """Queue a message for one session; False when it is gone or its outbox is full."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return self._deliver([session], message) == 1

    async def close_all(self) -> None:
        """Close every session, telling clients the server is going away."""
        if not self._sessions:
            return
        logger.info(f"Closing {len(self._sessions)} real-time sessions")
        sessions = list(self._sessions.values())
        await asyncio.gather(
            *(s.websocket.send_json({"type": "server_shutdown"}) for s in sessions),
            return_exceptions=True
        )
        await asyncio.gather(*(s.websocket.close() for s in sessions), return_exceptions=True)
        for session in sessions:
            await self.unregister(session.id)

    def _deliver(self, sessions: List[Session], message: Dict[str, Any]) -> int:
        delivered = 0
        for session in sessions:
            try:
                session.outbox.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                realtime_dropped.labels(event=message["type"]).inc()
                logger.warning(f"Outbox full for session {session.id}, dropping {message['type']}")
        return delivered

    async def _send_loop(self, session: Session) -> None:
        while True:
            message = await session.outbox.get()
            try:
                await session.websocket.send_json(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                realtime_dropped.labels(event=message["type"]).inc()
                logger.info(f"Session {session.id} unreachable, unregistering: {e}")
                await self.unregister(session.id)
                return
