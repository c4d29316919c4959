"""Record store for sessions, participants and chat. In-memory implementation included."""

import copy
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Optional

from game.state import ChatMessage, Participant, Session, utcnow


class Storage(ABC):
    """
    Abstract async record store keyed by id.

    update_* methods merge the given fields into the stored record and return the
    merged record, or None when the id is unknown. Implementations raise
    game.errors.StorageError when the backend itself fails.
    """

    # Sessions
    @abstractmethod
    async def create_session(self, session: Session) -> Session: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    async def get_session_by_code(self, code: str) -> Optional[Session]: ...

    @abstractmethod
    async def update_session(self, session_id: str, **fields: Any) -> Optional[Session]: ...

    @abstractmethod
    async def list_sessions(self) -> list[Session]: ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None: ...

    # Participants
    @abstractmethod
    async def create_participant(self, participant: Participant) -> Participant: ...

    @abstractmethod
    async def get_participant(self, participant_id: str) -> Optional[Participant]: ...

    @abstractmethod
    async def list_participants(self, session_id: str) -> list[Participant]: ...

    @abstractmethod
    async def update_participant(self, participant_id: str, **fields: Any) -> Optional[Participant]: ...

    @abstractmethod
    async def delete_participant(self, participant_id: str) -> None: ...

    # Chat (append-only)
    @abstractmethod
    async def create_chat_message(self, message: ChatMessage) -> ChatMessage: ...

    @abstractmethod
    async def get_chat_message(self, message_id: str) -> Optional[ChatMessage]: ...

    @abstractmethod
    async def list_chat_messages(self, session_id: str) -> list[ChatMessage]: ...

    @abstractmethod
    async def delete_chat_message(self, message_id: str) -> None: ...


class MemoryStorage(Storage):
    """Dict-backed store. Replace with a DB-backed Storage later if needed."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._participants: dict[str, Participant] = {}
        self._messages: dict[str, ChatMessage] = {}

    async def create_session(self, session: Session) -> Session:
        self._sessions[session.id] = copy.deepcopy(session)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    async def get_session_by_code(self, code: str) -> Optional[Session]:
        code = code.upper()
        # Prefer the active session when an ended one shares the code
        matches = [s for s in self._sessions.values() if s.code == code]
        matches.sort(key=lambda s: (not s.is_active, s.created_at))
        return copy.deepcopy(matches[0]) if matches else None

    async def update_session(self, session_id: str, **fields: Any) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        updated = replace(session, **copy.deepcopy(fields), updated_at=utcnow())
        self._sessions[session_id] = updated
        return copy.deepcopy(updated)

    async def list_sessions(self) -> list[Session]:
        return [copy.deepcopy(s) for s in self._sessions.values()]

    async def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        for pid in [p.id for p in self._participants.values() if p.session_id == session_id]:
            del self._participants[pid]
        for mid in [m.id for m in self._messages.values() if m.session_id == session_id]:
            del self._messages[mid]

    async def create_participant(self, participant: Participant) -> Participant:
        self._participants[participant.id] = participant
        return participant

    async def get_participant(self, participant_id: str) -> Optional[Participant]:
        return self._participants.get(participant_id)

    async def list_participants(self, session_id: str) -> list[Participant]:
        players = [p for p in self._participants.values() if p.session_id == session_id]
        players.sort(key=lambda p: p.joined_at)
        return players

    async def update_participant(self, participant_id: str, **fields: Any) -> Optional[Participant]:
        participant = self._participants.get(participant_id)
        if participant is None:
            return None
        updated = replace(participant, **fields)
        self._participants[participant_id] = updated
        return updated

    async def delete_participant(self, participant_id: str) -> None:
        self._participants.pop(participant_id, None)

    async def create_chat_message(self, message: ChatMessage) -> ChatMessage:
        self._messages[message.id] = message
        return message

    async def get_chat_message(self, message_id: str) -> Optional[ChatMessage]:
        return self._messages.get(message_id)

    async def list_chat_messages(self, session_id: str) -> list[ChatMessage]:
        messages = [m for m in self._messages.values() if m.session_id == session_id]
        messages.sort(key=lambda m: m.sequence)
        return messages

    async def delete_chat_message(self, message_id: str) -> None:
        self._messages.pop(message_id, None)
