"""Pydantic request/response models for the API."""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, Field, StringConstraints

from game.rules import (
    DEFAULT_CAPACITY,
    MAX_CAPACITY,
    MAX_CHAT_LENGTH,
    MAX_NAME_LENGTH,
    MAX_PROMPT_LENGTH,
    MIN_PLAYERS,
    NightAction,
    Phase,
    PlayerStatus,
    Role,
    Winner,
)
from game.state import ChatMessage, Participant, Session


# Names and chat text are stripped before their length is checked
Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_NAME_LENGTH)]
ChatText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_CHAT_LENGTH)]


class SessionCreateRequest(BaseModel):
    """Body for POST /sessions."""

    name: Name
    capacity: int = Field(default=DEFAULT_CAPACITY, ge=MIN_PLAYERS, le=MAX_CAPACITY)
    role_distribution: dict[Role, int] | None = Field(
        default=None,
        description="Role -> count. Omit to use the default distribution for the final roster size.",
    )
    narrator_api_key: str | None = Field(
        default=None,
        description="Credential for narrative generation; if omitted, server uses env",
    )


class SessionUpdateRequest(BaseModel):
    """Body for PUT /sessions/{id}. Only lobby sessions can be edited."""

    name: Name | None = None
    capacity: int | None = Field(default=None, ge=MIN_PLAYERS, le=MAX_CAPACITY)
    role_distribution: dict[Role, int] | None = None
    requested_by: str | None = Field(default=None, description="Participant id; must be the host if set")


class JoinRequest(BaseModel):
    name: Name


class ParticipantUpdateRequest(BaseModel):
    """Body for PUT /participants/{id}: rename or toggle ready in the lobby."""

    name: Name | None = None
    is_ready: bool | None = None


class HostTransferRequest(BaseModel):
    participant_id: str = Field(..., description="New host")
    requested_by: str = Field(..., description="Current host")


class HostCommandRequest(BaseModel):
    """Optional body for start / advance / end."""

    requested_by: str | None = Field(default=None, description="Participant id; must be the host if set")


class VoteRequest(BaseModel):
    participant_id: str
    target_id: str | None = Field(default=None, description="Alive participant, or null to withdraw the vote")


class ActionRequest(BaseModel):
    participant_id: str
    action: NightAction
    target_id: str


class NarrativeRequest(BaseModel):
    prompt: str | None = Field(default=None, max_length=MAX_PROMPT_LENGTH)
    requested_by: str | None = None


class ChatRequest(BaseModel):
    participant_id: str | None = Field(default=None, description="Author; omit for system messages")
    message: ChatText
    is_system: bool = False


class SessionPublic(BaseModel):
    """Session as shown to clients; the narrator credential is never included."""

    id: str
    code: str
    name: str
    host_id: str | None
    capacity: int
    phase: Phase
    day_number: int
    time_remaining: int
    is_active: bool
    narrative: str
    game_log: list[str]
    role_distribution: dict[Role, int] | None
    winner: Winner | None
    narrator_enabled: bool
    created_at: datetime
    updated_at: datetime


class ParticipantPublic(BaseModel):
    """Participant as shown to everyone: role only revealed when eliminated or game over."""

    id: str
    session_id: str
    name: str
    status: PlayerStatus
    is_ready: bool
    is_host: bool
    votes: int
    voted_for: str | None
    role: Role | None = None


class ParticipantPrivate(ParticipantPublic):
    """Participant as shown to themselves."""

    last_action: NightAction | None = None
    action_target: str | None = None


class JoinResponse(ParticipantPrivate):
    """Returned once, to the joiner: the token unlocks the private view and /ws binding."""

    token: str


class ChatMessagePublic(BaseModel):
    id: str
    session_id: str
    participant_id: str | None
    message: str
    is_system: bool
    sequence: int
    created_at: datetime


class GameStateResponse(BaseModel):
    """Full public snapshot for GET /sessions/{id}/state and realtime updates."""

    session: SessionPublic
    participants: list[ParticipantPublic]
    chat_messages: list[ChatMessagePublic]


class NarrativeResponse(BaseModel):
    narrative: str


def session_to_public(session: Session) -> SessionPublic:
    return SessionPublic(
        id=session.id,
        code=session.code,
        name=session.name,
        host_id=session.host_id,
        capacity=session.capacity,
        phase=session.phase,
        day_number=session.day_number,
        time_remaining=session.time_remaining,
        is_active=session.is_active,
        narrative=session.narrative,
        game_log=list(session.game_log),
        role_distribution=dict(session.role_distribution) if session.role_distribution else None,
        winner=session.winner,
        narrator_enabled=bool(session.narrator_api_key),
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


def participant_to_public(participant: Participant, reveal_role: bool = False) -> ParticipantPublic:
    """Hide the role of alive players unless reveal_role."""
    show = reveal_role or participant.status == PlayerStatus.ELIMINATED
    return ParticipantPublic(
        id=participant.id,
        session_id=participant.session_id,
        name=participant.name,
        status=participant.status,
        is_ready=participant.is_ready,
        is_host=participant.is_host,
        votes=participant.votes,
        voted_for=participant.voted_for,
        role=participant.role if show else None,
    )


def participant_to_private(participant: Participant) -> ParticipantPrivate:
    public = participant_to_public(participant, reveal_role=True)
    return ParticipantPrivate(
        **public.model_dump(),
        last_action=participant.last_action,
        action_target=participant.action_target,
    )


def participant_to_joiner(participant: Participant) -> JoinResponse:
    return JoinResponse(**participant_to_private(participant).model_dump(), token=participant.token)


def chat_to_public(message: ChatMessage) -> ChatMessagePublic:
    return ChatMessagePublic(
        id=message.id,
        session_id=message.session_id,
        participant_id=message.participant_id,
        message=message.message,
        is_system=message.is_system,
        sequence=message.sequence,
        created_at=message.created_at,
    )


def game_state_to_public(
    session: Session,
    participants: list[Participant],
    chat_messages: list[ChatMessage],
) -> GameStateResponse:
    """Build public snapshot; every role is revealed once the game has ended."""
    ended = session.phase == Phase.ENDED
    return GameStateResponse(
        session=session_to_public(session),
        participants=[participant_to_public(p, reveal_role=ended) for p in participants],
        chat_messages=[chat_to_public(m) for m in chat_messages],
    )
