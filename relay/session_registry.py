"""
Session Registry - mapa session_id → RelaySession.

Instanciado pelo servidor e injetado no router e no lifecycle manager.
Todo acesso acontece no event loop, então não há lock.
"""

from typing import Any, Dict, Iterator, List, Optional

import structlog

from .session import RelaySession, generate_session_id

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """Registro das sessões ativas."""

    def __init__(self):
        self._sessions: Dict[str, RelaySession] = {}

    def create(self, client: Any, session_id: Optional[str] = None) -> RelaySession:
        """
        Cria e registra uma sessão.

        Args:
            client: WebSocket do cliente
            session_id: ID explícito (gerado quando omitido)

        Raises:
            ValueError: se o ID já estiver registrado
        """
        session_id = session_id or generate_session_id()
        if session_id in self._sessions:
            raise ValueError(f"Session already registered: {session_id}")

        session = RelaySession(session_id=session_id, client=client)
        self._sessions[session_id] = session

        logger.debug("session_registered", session_id=session_id, active=len(self._sessions))
        return session

    def get(self, session_id: str) -> Optional[RelaySession]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[RelaySession]:
        """Remove a sessão. Idempotente: retorna None se já não existir."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.debug("session_unregistered", session_id=session_id, active=len(self._sessions))
        return session

    def all(self) -> List[RelaySession]:
        # Cópia: o sweep remove sessões enquanto itera
        return list(self._sessions.values())

    def count(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[RelaySession]:
        return iter(self.all())
