"""FastAPI app: session lifecycle over HTTP, live updates over /ws."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.hub import BroadcastHub
from api.messages import (
    ChatInMessage,
    ErrorMessage,
    ErrorPayload,
    GameUpdateMessage,
    PlayerJoinedBroadcast,
    PlayerJoinedPayload,
    PlayerJoinedMessage,
    RequestStateMessage,
    inbound_adapter,
    to_wire,
)
from api.models import (
    ActionRequest,
    ChatMessagePublic,
    ChatRequest,
    GameStateResponse,
    HostCommandRequest,
    HostTransferRequest,
    JoinRequest,
    JoinResponse,
    NarrativeRequest,
    NarrativeResponse,
    ParticipantPrivate,
    ParticipantPublic,
    ParticipantUpdateRequest,
    SessionCreateRequest,
    SessionPublic,
    SessionUpdateRequest,
    VoteRequest,
    chat_to_public,
    participant_to_joiner,
    participant_to_private,
    participant_to_public,
    session_to_public,
)
from api.sessions import SessionService, token_matches
from api.storage import MemoryStorage, Storage
from game.errors import ErrorKind, GameError, NotFoundError
from narrator import Narrator
from narrator.llm_config import default_api_key

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.COLLABORATOR_FAILURE: 503,
    ErrorKind.INTERNAL: 500,
}

router = APIRouter()


def get_service(request: Request) -> SessionService:
    return request.app.state.service


async def game_error_handler(request: Request, exc: GameError) -> JSONResponse:
    if exc.kind == ErrorKind.INTERNAL:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    elif exc.kind == ErrorKind.COLLABORATOR_FAILURE:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content={"message": exc.message})


# ── Sessions ──────────────────────────────────────────────────────────────────


@router.post("/sessions", response_model=SessionPublic, tags=["Sessions"], summary="Create session")
async def create_session(body: SessionCreateRequest, service: SessionService = Depends(get_service)):
    """Create a lobby. The response carries the join code."""
    session = await service.create_session(
        name=body.name,
        capacity=body.capacity,
        role_distribution=body.role_distribution,
        narrator_api_key=body.narrator_api_key,
    )
    return session_to_public(session)


@router.get("/sessions/code/{code}", response_model=SessionPublic, tags=["Sessions"], summary="Find session by join code")
async def get_session_by_code(code: str, service: SessionService = Depends(get_service)):
    return session_to_public(await service.get_session_by_code(code))


@router.put("/sessions/{session_id}", response_model=SessionPublic, tags=["Sessions"], summary="Update lobby settings")
async def update_session(session_id: str, body: SessionUpdateRequest, service: SessionService = Depends(get_service)):
    """Only fields present in the body change; role_distribution may be set to null."""
    changes = body.model_dump(exclude_unset=True, exclude={"requested_by"})
    session = await service.update_session(session_id, requested_by=body.requested_by, **changes)
    return session_to_public(session)


@router.get("/sessions/{session_id}/state", response_model=GameStateResponse, tags=["Sessions"], summary="Get game state")
async def get_state(session_id: str, service: SessionService = Depends(get_service)):
    """Public snapshot: session, participants (roles hidden while alive) and chat."""
    return await service.get_state(session_id)


@router.post("/sessions/{session_id}/host", response_model=SessionPublic, tags=["Sessions"], summary="Transfer host")
async def transfer_host(session_id: str, body: HostTransferRequest, service: SessionService = Depends(get_service)):
    session = await service.transfer_host(session_id, body.requested_by, body.participant_id)
    return session_to_public(session)


@router.post("/sessions/{session_id}/start", response_model=SessionPublic, tags=["Game"], summary="Start game")
async def start_session(
    session_id: str,
    body: Optional[HostCommandRequest] = None,
    service: SessionService = Depends(get_service),
):
    """Assign roles and move from LOBBY to DAY 1."""
    session = await service.start_session(session_id, requested_by=body.requested_by if body else None)
    return session_to_public(session)


@router.post("/sessions/{session_id}/advance", response_model=SessionPublic, tags=["Game"], summary="Advance phase")
async def advance_phase(
    session_id: str,
    body: Optional[HostCommandRequest] = None,
    service: SessionService = Depends(get_service),
):
    """DAY -> VOTING -> NIGHT -> DAY; resolves votes and night actions, may end the game."""
    session = await service.advance_phase(session_id, requested_by=body.requested_by if body else None)
    return session_to_public(session)


@router.post("/sessions/{session_id}/end", response_model=SessionPublic, tags=["Game"], summary="End game")
async def end_session(
    session_id: str,
    body: Optional[HostCommandRequest] = None,
    service: SessionService = Depends(get_service),
):
    session = await service.end_session(session_id, requested_by=body.requested_by if body else None)
    return session_to_public(session)


@router.post("/sessions/{session_id}/vote", response_model=ParticipantPublic, tags=["Game"], summary="Cast vote")
async def cast_vote(session_id: str, body: VoteRequest, service: SessionService = Depends(get_service)):
    voter = await service.cast_vote(session_id, body.participant_id, body.target_id)
    return participant_to_public(voter)


@router.post("/sessions/{session_id}/action", response_model=ParticipantPublic, tags=["Game"], summary="Take night action")
async def take_action(session_id: str, body: ActionRequest, service: SessionService = Depends(get_service)):
    actor = await service.take_action(session_id, body.participant_id, body.action, body.target_id)
    return participant_to_public(actor)


@router.post("/sessions/{session_id}/narrative", response_model=NarrativeResponse, tags=["Game"], summary="Generate narrative")
async def request_narrative(session_id: str, body: NarrativeRequest, service: SessionService = Depends(get_service)):
    """Ask the narrator for fresh text, optionally steered by a custom prompt."""
    text = await service.request_narrative(session_id, prompt=body.prompt, requested_by=body.requested_by)
    return NarrativeResponse(narrative=text)


@router.post("/sessions/{session_id}/chat", response_model=ChatMessagePublic, tags=["Chat"], summary="Post chat message")
async def post_chat_message(session_id: str, body: ChatRequest, service: SessionService = Depends(get_service)):
    chat = await service.post_chat_message(
        session_id,
        body.message,
        participant_id=body.participant_id,
        is_system=body.is_system,
    )
    return chat_to_public(chat)


# ── Participants ──────────────────────────────────────────────────────────────


@router.post("/sessions/{session_id}/join", response_model=JoinResponse, tags=["Participants"], summary="Join session")
async def join_session(session_id: str, body: JoinRequest, service: SessionService = Depends(get_service)):
    """Join a lobby. The first participant becomes host. Keep the returned token."""
    participant = await service.join_session(session_id, body.name)
    return participant_to_joiner(participant)


@router.get("/participants/{participant_id}", response_model=ParticipantPrivate, tags=["Participants"], summary="Get own participant")
async def get_participant(
    participant_id: str,
    x_participant_token: Optional[str] = Header(default=None),
    service: SessionService = Depends(get_service),
):
    """
    Own role and pending night action, given the token issued at join in the
    X-Participant-Token header. Without it the role stays hidden like in the public state.
    """
    participant = await service.get_participant(participant_id)
    if token_matches(participant, x_participant_token):
        return participant_to_private(participant)
    return ParticipantPrivate(**participant_to_public(participant).model_dump())


@router.put("/participants/{participant_id}", response_model=ParticipantPrivate, tags=["Participants"], summary="Rename or toggle ready")
async def update_participant(
    participant_id: str,
    body: ParticipantUpdateRequest,
    service: SessionService = Depends(get_service),
):
    participant = await service.update_participant(participant_id, name=body.name, is_ready=body.is_ready)
    return participant_to_private(participant)


@router.get("/health", tags=["System"], summary="Health check")
async def health():
    return {"status": "ok"}


# ── Realtime ──────────────────────────────────────────────────────────────────


async def _send_error(websocket: WebSocket, message: str, session_id: Optional[str] = None) -> None:
    await websocket.send_json(to_wire(ErrorMessage(session_id=session_id, payload=ErrorPayload(message=message))))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    One connection per client. Inbound messages are validated against the tagged union
    before dispatch; anything malformed or rejected gets an `error` reply on this
    connection only. When the connection closes, each participant bound to it that has
    no other live connection is handed to the disconnect rules.
    """
    service: SessionService = websocket.app.state.service
    hub: BroadcastHub = service.hub
    await websocket.accept()
    bound: dict[str, str] = {}
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = inbound_adapter.validate_json(raw)
            except ValidationError as e:
                await _send_error(websocket, f"Invalid message: {e.errors()[0]['msg']}")
                continue
            try:
                if isinstance(message, RequestStateMessage):
                    state = await service.get_state(message.session_id)
                    await hub.register(message.session_id, websocket)
                    await websocket.send_json(to_wire(GameUpdateMessage(session_id=message.session_id, payload=state)))
                elif isinstance(message, PlayerJoinedMessage):
                    participant = await service.verify_participant(message.participant_id, message.token)
                    if participant.session_id != message.session_id:
                        raise NotFoundError.participant(message.participant_id)
                    await hub.register(message.session_id, websocket, participant.id)
                    bound[participant.id] = message.session_id
                    await hub.publish(
                        PlayerJoinedBroadcast(
                            session_id=message.session_id,
                            participant_id=participant.id,
                            payload=PlayerJoinedPayload(participant=participant_to_public(participant)),
                        )
                    )
                elif isinstance(message, ChatInMessage):
                    await service.post_chat_message(
                        message.session_id,
                        message.message,
                        participant_id=message.participant_id,
                        is_system=message.is_system,
                    )
            except GameError as e:
                await _send_error(websocket, e.message, message.session_id)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.detach(websocket)
        for participant_id, session_id in bound.items():
            if hub.is_connected(participant_id):
                continue
            try:
                await service.handle_disconnect(session_id, participant_id)
            except GameError as e:
                logger.warning("[%s] disconnect of %s not applied: %s", session_id, participant_id, e.message)


def create_app(
    storage: Optional[Storage] = None,
    narrator: Optional[Narrator] = None,
    narrator_api_key: Optional[str] = None,
) -> FastAPI:
    """Build the app with its own hub and session service on app.state."""
    app = FastAPI(title="Shadowbrook Mafia API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(GameError, game_error_handler)

    app.state.service = SessionService(
        storage or MemoryStorage(),
        BroadcastHub(),
        narrator=narrator,
        default_narrator_key=narrator_api_key or default_api_key(),
    )
    app.include_router(router)
    return app


app = create_app()
