"""Realtime message shapes: one pydantic model per `type` tag."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from api.models import (
    ChatMessagePublic,
    ChatText,
    GameStateResponse,
    ParticipantPublic,
)
from game.rules import Role


# ── Client → server ───────────────────────────────────────────────────────────


class RequestStateMessage(BaseModel):
    """Ask for a fresh snapshot; answered on the same connection with game-update."""

    type: Literal["request-state"]
    session_id: str


class PlayerJoinedMessage(BaseModel):
    """Bind this connection to a participant who already joined over HTTP."""

    type: Literal["player-joined"]
    session_id: str
    participant_id: str
    token: str


class ChatInMessage(BaseModel):
    type: Literal["chat-message"]
    session_id: str
    participant_id: str | None = None
    message: ChatText
    is_system: bool = False


InboundMessage = Annotated[
    Union[RequestStateMessage, PlayerJoinedMessage, ChatInMessage],
    Field(discriminator="type"),
]

inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)


# ── Server → client ───────────────────────────────────────────────────────────


class _Outbound(BaseModel):
    session_id: str
    participant_id: str | None = None


class GameUpdateMessage(_Outbound):
    type: Literal["game-update"] = "game-update"
    payload: GameStateResponse


class PhaseChangeMessage(_Outbound):
    type: Literal["phase-change"] = "phase-change"
    payload: GameStateResponse


class VoteCastMessage(_Outbound):
    type: Literal["vote-cast"] = "vote-cast"
    payload: GameStateResponse


class PlayerJoinedPayload(BaseModel):
    participant: ParticipantPublic


class PlayerJoinedBroadcast(_Outbound):
    type: Literal["player-joined"] = "player-joined"
    payload: PlayerJoinedPayload


class PlayerLeftPayload(BaseModel):
    removed: bool = Field(description="True when the participant was dropped from the lobby")
    host_id: str | None = None


class PlayerLeftMessage(_Outbound):
    type: Literal["player-left"] = "player-left"
    payload: PlayerLeftPayload


class ChatBroadcast(_Outbound):
    type: Literal["chat-message"] = "chat-message"
    payload: ChatMessagePublic


class RoleRevealPayload(BaseModel):
    """Own role at game start, or a detective's investigation result."""

    subject_id: str
    role: Role | None


class RoleRevealMessage(_Outbound):
    """Private: delivered only to participant_id's connection."""

    type: Literal["role-reveal"] = "role-reveal"
    payload: RoleRevealPayload


class ActionTakenPayload(BaseModel):
    # The action itself stays hidden
    acted: bool = True


class ActionTakenMessage(_Outbound):
    type: Literal["action-taken"] = "action-taken"
    payload: ActionTakenPayload = Field(default_factory=ActionTakenPayload)


class ErrorPayload(BaseModel):
    message: str


class ErrorMessage(BaseModel):
    """Reply to a malformed or rejected inbound message; never broadcast."""

    type: Literal["error"] = "error"
    session_id: str | None = None
    payload: ErrorPayload


OutboundMessage = Annotated[
    Union[
        GameUpdateMessage,
        PhaseChangeMessage,
        VoteCastMessage,
        PlayerJoinedBroadcast,
        PlayerLeftMessage,
        ChatBroadcast,
        RoleRevealMessage,
        ActionTakenMessage,
    ],
    Field(discriminator="type"),
]

outbound_adapter: TypeAdapter[OutboundMessage] = TypeAdapter(OutboundMessage)


def to_wire(message: BaseModel) -> dict:
    """JSON-ready dict for WebSocket.send_json."""
    return message.model_dump(mode="json")
