"""
Session service: the state machine that owns every mutation of a session.

Each session id has one asyncio.Lock. Every operation loads the session, checks its
preconditions, writes the resulting records and builds the outbound messages while
holding that lock, so two operations on one session never interleave. Messages are
published after the lock is released. Narrative generation also runs unlocked: its
context is snapshotted under the lock and the resulting text is written back under
the lock afterwards (last write wins).

A rejected operation writes nothing. Writes that belong to one operation are applied
as a batch and undone if the store fails part-way through.
"""

import asyncio
import logging
import random
import secrets
import string
import uuid
from dataclasses import fields as dataclass_fields, replace
from typing import Any, Optional

from api.hub import BroadcastHub
from api.messages import (
    ActionTakenMessage,
    ChatBroadcast,
    GameUpdateMessage,
    PhaseChangeMessage,
    PlayerJoinedBroadcast,
    PlayerJoinedPayload,
    PlayerLeftMessage,
    PlayerLeftPayload,
    RoleRevealMessage,
    RoleRevealPayload,
    VoteCastMessage,
)
from api.models import (
    GameStateResponse,
    chat_to_public,
    game_state_to_public,
    participant_to_public,
)
from api.storage import Storage
from game.engine import (
    assign_roles,
    check_win_condition,
    default_role_distribution,
    resolve_night_actions,
    tally_votes,
    valid_targets,
)
from game.errors import InvariantError, NotFoundError, RuleViolation, StorageError
from game.rules import (
    ADVANCE_TARGETS,
    DEFAULT_CAPACITY,
    JOIN_CODE_LENGTH,
    MIN_PLAYERS,
    NARRATIVE_EVENT_WINDOW,
    PHASE_DURATION_SECONDS,
    ROLE_ACTIONS,
    NightAction,
    Phase,
    PlayerStatus,
    Role,
    Winner,
)
from game.state import ChatMessage, Participant, Session
from narrator import (
    Narrator,
    NarrativeContext,
    OPENING_NARRATIVE,
    SummaryContext,
)

logger = logging.getLogger(__name__)

JOIN_CODE_ALPHABET = string.ascii_uppercase + string.digits
JOIN_CODE_ATTEMPTS = 50

SESSION_EDITABLE_FIELDS = ("name", "capacity", "role_distribution")


def _changed_fields(before: Participant, after: Participant) -> dict[str, Any]:
    """Fields that differ between two versions of the same participant."""
    return {
        f.name: getattr(after, f.name)
        for f in dataclass_fields(after)
        if getattr(before, f.name) != getattr(after, f.name)
    }


def _member(participants: list[Participant], participant_id: str) -> Participant:
    for p in participants:
        if p.id == participant_id:
            return p
    raise NotFoundError.participant(participant_id)


def token_matches(participant: Participant, token: Optional[str]) -> bool:
    return bool(token) and bool(participant.token) and secrets.compare_digest(participant.token, token)


def _require_host(session: Session, participants: list[Participant], requested_by: Optional[str]) -> None:
    if requested_by is None:
        return
    _member(participants, requested_by)
    if session.host_id != requested_by:
        raise RuleViolation("Only the host can do that")


def _check_distribution(distribution: Optional[dict[Role, int]], capacity: int) -> None:
    if distribution is None:
        return
    if any(count < 0 for count in distribution.values()):
        raise RuleViolation("Role counts cannot be negative")
    if distribution.get(Role.MAFIA, 0) < 1:
        raise RuleViolation("Role distribution needs at least one mafia")
    total = sum(distribution.values())
    if total > capacity:
        raise RuleViolation(f"Role distribution needs {total} players but capacity is {capacity}")


def _ended_fields(winner: Optional[Winner], log: list[str]) -> dict[str, Any]:
    return {
        "phase": Phase.ENDED,
        "is_active": False,
        "time_remaining": 0,
        "winner": winner,
        "game_log": tuple(log),
    }


class SessionService:
    """Sole mutator of session state. Built once per app and shared by all handlers."""

    def __init__(
        self,
        storage: Storage,
        hub: BroadcastHub,
        narrator: Optional[Narrator] = None,
        default_narrator_key: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        self.storage = storage
        self.hub = hub
        self.narrator = narrator or Narrator()
        self.default_narrator_key = default_narrator_key
        self._rng = rng or random.Random()
        self._locks: dict[str, asyncio.Lock] = {}
        self._create_lock = asyncio.Lock()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _forget(self, session_id: str) -> None:
        """Drop the lock of an id with no stored session."""
        self._locks.pop(session_id, None)

    # ── Loading and writing (callers hold the session lock) ────────────────────

    async def _load(self, session_id: str) -> tuple[Session, list[Participant]]:
        session = await self.storage.get_session(session_id)
        if session is None:
            self._forget(session_id)
            raise NotFoundError.session(session_id)
        participants = await self.storage.list_participants(session_id)
        return session, participants

    async def _snapshot(self, session: Session) -> GameStateResponse:
        participants = await self.storage.list_participants(session.id)
        messages = await self.storage.list_chat_messages(session.id)
        return game_state_to_public(session, participants, messages)

    async def _commit(
        self,
        session: Session,
        before: list[Participant],
        after: list[Participant],
        session_fields: Optional[dict[str, Any]] = None,
    ) -> Session:
        """Write every changed participant, then the session; undo on StorageError."""
        previous = {p.id: p for p in before}
        pending = []
        for p in after:
            changed = _changed_fields(previous[p.id], p)
            if changed:
                pending.append((p.id, changed))

        written: list[tuple[str, dict[str, Any]]] = []
        try:
            for participant_id, changed in pending:
                await self.storage.update_participant(participant_id, **changed)
                written.append((participant_id, changed))
            if session_fields:
                updated = await self.storage.update_session(session.id, **session_fields)
                if updated is None:
                    raise InvariantError(f"Session {session.id} vanished during update")
                return updated
            return session
        except StorageError:
            await self._rollback(previous, written)
            raise

    async def _rollback(
        self,
        previous: dict[str, Participant],
        written: list[tuple[str, dict[str, Any]]],
    ) -> None:
        for participant_id, changed in reversed(written):
            original = previous[participant_id]
            restore = {name: getattr(original, name) for name in changed}
            try:
                await self.storage.update_participant(participant_id, **restore)
            except StorageError:
                logger.exception("Rollback of participant %s failed", participant_id)

    # ── Sessions ───────────────────────────────────────────────────────────────

    async def _unique_code(self) -> str:
        for _ in range(JOIN_CODE_ATTEMPTS):
            code = "".join(self._rng.choices(JOIN_CODE_ALPHABET, k=JOIN_CODE_LENGTH))
            existing = await self.storage.get_session_by_code(code)
            if existing is None or not existing.is_active:
                return code
        raise InvariantError("Could not allocate a unique join code")

    async def create_session(
        self,
        name: str,
        capacity: int = DEFAULT_CAPACITY,
        role_distribution: Optional[dict[Role, int]] = None,
        narrator_api_key: Optional[str] = None,
    ) -> Session:
        _check_distribution(role_distribution, capacity)
        async with self._create_lock:
            session = Session(
                id=str(uuid.uuid4()),
                code=await self._unique_code(),
                name=name,
                capacity=capacity,
                role_distribution=dict(role_distribution) if role_distribution else None,
                narrator_api_key=narrator_api_key or self.default_narrator_key,
            )
            await self.storage.create_session(session)
        logger.info("Session %s created (code %s, capacity %d)", session.id, session.code, capacity)
        return session

    async def get_session_by_code(self, code: str) -> Session:
        session = await self.storage.get_session_by_code(code.strip().upper())
        if session is None:
            raise NotFoundError(f"No session with code {code}")
        return session

    async def get_state(self, session_id: str) -> GameStateResponse:
        async with self._lock(session_id):
            session, _ = await self._load(session_id)
            return await self._snapshot(session)

    async def update_session(
        self,
        session_id: str,
        requested_by: Optional[str] = None,
        **changes: Any,
    ) -> Session:
        """Edit name, capacity or role distribution while in the lobby."""
        unknown = set(changes) - set(SESSION_EDITABLE_FIELDS)
        if unknown:
            raise RuleViolation(f"Cannot update {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in changes.items() if v is not None or k == "role_distribution"}
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            _require_host(session, participants, requested_by)
            if session.phase != Phase.LOBBY:
                raise RuleViolation("Session settings can only change in the lobby")
            capacity = changes.get("capacity", session.capacity)
            if capacity < len(participants):
                raise RuleViolation(f"Capacity {capacity} is below the {len(participants)} players already joined")
            distribution = changes.get("role_distribution", session.role_distribution)
            _check_distribution(distribution, capacity)
            if not changes:
                return session
            session = await self._commit(session, participants, participants, changes)
            message = GameUpdateMessage(session_id=session_id, payload=await self._snapshot(session))
        await self.hub.publish(message)
        return session

    # ── Participants ───────────────────────────────────────────────────────────

    async def join_session(self, session_id: str, name: str) -> Participant:
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            if not session.is_active or session.phase != Phase.LOBBY:
                raise RuleViolation("Cannot join game at this time")
            if len(participants) >= session.capacity:
                raise RuleViolation("Game is full")
            if any(p.name.casefold() == name.casefold() for p in participants):
                raise RuleViolation(f"The name {name} is already taken")

            is_host = not any(p.is_host for p in participants)
            participant = Participant(
                id=str(uuid.uuid4()),
                session_id=session_id,
                name=name,
                is_host=is_host,
                token=secrets.token_urlsafe(16),
            )
            await self.storage.create_participant(participant)
            if is_host:
                try:
                    await self.storage.update_session(session_id, host_id=participant.id)
                except StorageError:
                    await self.storage.delete_participant(participant.id)
                    raise
            message = PlayerJoinedBroadcast(
                session_id=session_id,
                participant_id=participant.id,
                payload=PlayerJoinedPayload(participant=participant_to_public(participant)),
            )
        logger.info("[%s] %s joined (%d/%d)", session_id, name, len(participants) + 1, session.capacity)
        await self.hub.publish(message)
        return participant

    async def get_participant(self, participant_id: str) -> Participant:
        participant = await self.storage.get_participant(participant_id)
        if participant is None:
            raise NotFoundError.participant(participant_id)
        return participant

    async def verify_participant(self, participant_id: str, token: Optional[str]) -> Participant:
        """The participant, if token is the one issued when they joined."""
        participant = await self.get_participant(participant_id)
        if not token_matches(participant, token):
            raise RuleViolation("Invalid participant token")
        return participant

    async def update_participant(
        self,
        participant_id: str,
        name: Optional[str] = None,
        is_ready: Optional[bool] = None,
    ) -> Participant:
        """Rename or toggle readiness; lobby only."""
        session_id = (await self.get_participant(participant_id)).session_id
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            participant = _member(participants, participant_id)
            if session.phase != Phase.LOBBY:
                raise RuleViolation("Players can only change name or readiness in the lobby")
            updated = participant
            if name is not None and name != participant.name:
                if any(p.id != participant_id and p.name.casefold() == name.casefold() for p in participants):
                    raise RuleViolation(f"The name {name} is already taken")
                updated = replace(updated, name=name)
            if is_ready is not None:
                updated = replace(updated, is_ready=is_ready)
            if updated == participant:
                return participant
            after = [updated if p.id == participant_id else p for p in participants]
            await self._commit(session, participants, after)
            message = GameUpdateMessage(
                session_id=session_id,
                participant_id=participant_id,
                payload=await self._snapshot(session),
            )
        await self.hub.publish(message)
        return updated

    async def transfer_host(self, session_id: str, requested_by: str, new_host_id: str) -> Session:
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            _require_host(session, participants, requested_by)
            if session.phase == Phase.ENDED:
                raise RuleViolation("Game has ended")
            _member(participants, new_host_id)
            if new_host_id == session.host_id:
                return session
            after = [replace(p, is_host=p.id == new_host_id) for p in participants]
            session = await self._commit(session, participants, after, {"host_id": new_host_id})
            message = GameUpdateMessage(session_id=session_id, payload=await self._snapshot(session))
        await self.hub.publish(message)
        return session

    async def handle_disconnect(self, session_id: str, participant_id: str) -> None:
        """
        A participant's last connection closed. In the lobby they are removed (and the
        host flag passes to the earliest remaining joiner); later they stay in the game.
        """
        async with self._lock(session_id):
            session = await self.storage.get_session(session_id)
            if session is None:
                self._forget(session_id)
                return
            participants = await self.storage.list_participants(session_id)
            if not any(p.id == participant_id for p in participants):
                return
            if session.phase != Phase.LOBBY:
                message = PlayerLeftMessage(
                    session_id=session_id,
                    participant_id=participant_id,
                    payload=PlayerLeftPayload(removed=False, host_id=session.host_id),
                )
            else:
                leaving = _member(participants, participant_id)
                remaining = [p for p in participants if p.id != participant_id]
                host_id = session.host_id
                after = remaining
                if leaving.is_host:
                    host_id = remaining[0].id if remaining else None
                    after = [replace(p, is_host=p.id == host_id) for p in remaining]
                await self.storage.delete_participant(participant_id)
                try:
                    await self._commit(session, remaining, after, {"host_id": host_id})
                except StorageError:
                    await self.storage.create_participant(leaving)
                    raise
                message = PlayerLeftMessage(
                    session_id=session_id,
                    participant_id=participant_id,
                    payload=PlayerLeftPayload(removed=True, host_id=host_id),
                )
        await self.hub.publish(message)

    # ── Phase transitions ──────────────────────────────────────────────────────

    async def start_session(self, session_id: str, requested_by: Optional[str] = None) -> Session:
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            _require_host(session, participants, requested_by)
            if session.phase != Phase.LOBBY:
                raise RuleViolation("Game has already started")
            if len(participants) < MIN_PLAYERS:
                raise RuleViolation(f"Not enough players: need at least {MIN_PLAYERS} to start")
            if not all(p.is_ready for p in participants):
                raise RuleViolation("All players must be ready")
            distribution = session.role_distribution or default_role_distribution(len(participants))
            needed = sum(distribution.values())
            if needed > len(participants):
                raise RuleViolation(f"Role distribution needs {needed} players but only {len(participants)} joined")

            roles = assign_roles([p.id for p in participants], distribution, self._rng)
            after = [
                replace(
                    p,
                    role=roles.get(p.id, Role.VILLAGER),
                    status=PlayerStatus.ALIVE,
                    votes=0,
                    voted_for=None,
                    last_action=None,
                    action_target=None,
                )
                for p in participants
            ]
            session = await self._commit(
                session,
                participants,
                after,
                {
                    "phase": Phase.DAY,
                    "day_number": 1,
                    "time_remaining": PHASE_DURATION_SECONDS,
                    "narrative": OPENING_NARRATIVE,
                    "role_distribution": dict(distribution),
                    "game_log": session.game_log + (f"Game started with {len(participants)} players",),
                },
            )
            messages: list[Any] = [PhaseChangeMessage(session_id=session_id, payload=await self._snapshot(session))]
            messages.extend(
                RoleRevealMessage(
                    session_id=session_id,
                    participant_id=p.id,
                    payload=RoleRevealPayload(subject_id=p.id, role=p.role),
                )
                for p in after
            )
            context = self._narrative_context(session, after)
        logger.info("[%s] game started with %d players", session_id, len(after))
        await self.hub.publish_all(messages)
        return await self._narrate(session, context)

    async def advance_phase(self, session_id: str, requested_by: Optional[str] = None) -> Session:
        """DAY -> VOTING -> NIGHT -> DAY, ending as soon as a faction has won."""
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            _require_host(session, participants, requested_by)
            if session.phase == Phase.ENDED:
                raise RuleViolation("Game has ended")
            if session.phase == Phase.LOBBY:
                raise RuleViolation("Game has not started; start it from the lobby")

            log = list(session.game_log)
            after = participants
            reveals: list[RoleRevealMessage] = []
            winner: Optional[Winner] = None

            if session.phase == Phase.DAY:
                log.append(f"Day {session.day_number} voting phase begins")
                fields: dict[str, Any] = {"phase": ADVANCE_TARGETS[session.phase]}

            elif session.phase == Phase.VOTING:
                tally = tally_votes(participants)
                after = tally.participants
                if tally.eliminated_id:
                    target = _member(after, tally.eliminated_id)
                    after = [
                        replace(p, status=PlayerStatus.ELIMINATED) if p.id == target.id else p
                        for p in after
                    ]
                    log.append(f"{target.name} was eliminated by vote")
                elif tally.tied:
                    log.append("No one was eliminated (tie vote)")
                else:
                    log.append("No votes were cast; no one was eliminated")
                winner = check_win_condition(after)
                fields = {"phase": ADVANCE_TARGETS[session.phase]}

            else:
                night = resolve_night_actions(participants)
                eliminated = set(night.eliminated)
                after = [
                    replace(p, status=PlayerStatus.ELIMINATED) if p.id in eliminated else p
                    for p in night.participants
                ]
                log.extend(night.events)
                reveals = [
                    RoleRevealMessage(
                        session_id=session_id,
                        participant_id=result.detective_id,
                        payload=RoleRevealPayload(subject_id=result.target_id, role=result.role),
                    )
                    for result in night.investigations
                ]
                winner = check_win_condition(after)
                fields = {"phase": ADVANCE_TARGETS[session.phase], "day_number": session.day_number + 1}

            if winner is not None:
                log.append(f"Game ended - {winner.value} wins!")
                fields = _ended_fields(winner, log)
            else:
                fields.update(time_remaining=PHASE_DURATION_SECONDS, game_log=tuple(log))

            session = await self._commit(session, participants, after, fields)
            messages: list[Any] = [PhaseChangeMessage(session_id=session_id, payload=await self._snapshot(session))]
            messages.extend(reveals)
            context = self._narrative_context(session, after)
        logger.info("[%s] advanced to %s (day %d)", session_id, session.phase.value, session.day_number)
        await self.hub.publish_all(messages)
        if winner is not None:
            return await self._summarize(session, len(after))
        return await self._narrate(session, context)

    async def end_session(self, session_id: str, requested_by: Optional[str] = None) -> Session:
        """Host-triggered termination; no win evaluation."""
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            _require_host(session, participants, requested_by)
            if session.phase == Phase.ENDED:
                raise RuleViolation("Game has already ended")
            log = list(session.game_log) + ["The host ended the game"]
            session = await self._commit(session, participants, participants, _ended_fields(None, log))
            message = PhaseChangeMessage(session_id=session_id, payload=await self._snapshot(session))
        logger.info("[%s] ended by host", session_id)
        await self.hub.publish(message)
        return session

    # ── Votes and night actions ────────────────────────────────────────────────

    async def cast_vote(self, session_id: str, participant_id: str, target_id: Optional[str]) -> Participant:
        """Vote for target_id (None withdraws). A re-vote moves the counter to the new target."""
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            if session.phase != Phase.VOTING:
                raise RuleViolation("Voting is not allowed at this time (wrong phase)")
            voter = _member(participants, participant_id)
            if not voter.alive:
                raise RuleViolation("Player cannot vote: not alive")
            if target_id is not None:
                allowed = {p.id for p in valid_targets(voter, participants, Phase.VOTING)}
                if target_id not in allowed:
                    raise RuleViolation("Invalid vote target")
            if target_id == voter.voted_for:
                return voter

            by_id = {p.id: p for p in participants}
            if voter.voted_for and voter.voted_for in by_id:
                previous = by_id[voter.voted_for]
                by_id[previous.id] = replace(previous, votes=max(0, previous.votes - 1))
            if target_id is not None:
                target = by_id[target_id]
                by_id[target.id] = replace(target, votes=target.votes + 1)
            by_id[voter.id] = replace(by_id[voter.id], voted_for=target_id)
            after = [by_id[p.id] for p in participants]

            await self._commit(session, participants, after)
            message = VoteCastMessage(
                session_id=session_id,
                participant_id=participant_id,
                payload=await self._snapshot(session),
            )
        await self.hub.publish(message)
        return by_id[voter.id]

    async def take_action(
        self,
        session_id: str,
        participant_id: str,
        action: NightAction,
        target_id: str,
    ) -> Participant:
        """Record a night action; a later action by the same player replaces it."""
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            if session.phase != Phase.NIGHT:
                raise RuleViolation("Actions are not allowed at this time (wrong phase)")
            actor = _member(participants, participant_id)
            if not actor.alive:
                raise RuleViolation("Player cannot take action: not alive")
            if ROLE_ACTIONS.get(actor.role) != action:
                raise RuleViolation(f"Role cannot perform action {action.value}")
            allowed = {p.id for p in valid_targets(actor, participants, Phase.NIGHT)}
            if target_id not in allowed:
                raise RuleViolation("Invalid action target")

            updated = replace(actor, last_action=action, action_target=target_id)
            after = [updated if p.id == participant_id else p for p in participants]
            await self._commit(session, participants, after)
            message = ActionTakenMessage(session_id=session_id, participant_id=participant_id)
        await self.hub.publish(message)
        return updated

    # ── Chat ───────────────────────────────────────────────────────────────────

    async def post_chat_message(
        self,
        session_id: str,
        message: str,
        participant_id: Optional[str] = None,
        is_system: bool = False,
    ) -> ChatMessage:
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            if not is_system:
                if participant_id is None:
                    raise RuleViolation("participant_id is required for player messages")
                _member(participants, participant_id)
            history = await self.storage.list_chat_messages(session_id)
            chat = ChatMessage(
                id=str(uuid.uuid4()),
                session_id=session_id,
                message=message,
                participant_id=participant_id,
                is_system=is_system,
                sequence=(history[-1].sequence + 1) if history else 1,
            )
            await self.storage.create_chat_message(chat)
        await self.hub.publish(
            ChatBroadcast(session_id=session_id, participant_id=participant_id, payload=chat_to_public(chat))
        )
        return chat

    # ── Narrative ──────────────────────────────────────────────────────────────

    def _narrative_context(
        self,
        session: Session,
        participants: list[Participant],
        custom_prompt: Optional[str] = None,
    ) -> NarrativeContext:
        return NarrativeContext(
            phase=session.phase,
            day_number=session.day_number,
            alive_count=sum(1 for p in participants if p.alive),
            previous_events=tuple(session.game_log[-NARRATIVE_EVENT_WINDOW:]),
            custom_prompt=custom_prompt,
        )

    async def request_narrative(
        self,
        session_id: str,
        prompt: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> str:
        async with self._lock(session_id):
            session, participants = await self._load(session_id)
            _require_host(session, participants, requested_by)
            if not session.narrator_api_key:
                raise RuleViolation("Narrative generation is not configured for this session")
            context = self._narrative_context(session, participants, custom_prompt=prompt)
        text = await self.narrator.generate_narrative(context, session.narrator_api_key)
        await self._apply_narrative(session_id, text)
        return text

    async def _narrate(self, session: Session, context: NarrativeContext) -> Session:
        if not session.narrator_api_key:
            return session
        text = await self.narrator.generate_narrative(context, session.narrator_api_key)
        return await self._apply_narrative(session.id, text) or session

    async def _summarize(self, session: Session, player_count: int) -> Session:
        if not session.narrator_api_key or session.winner is None:
            return session
        summary = await self.narrator.generate_summary(
            SummaryContext(winner=session.winner.value, player_count=player_count, events=session.game_log),
            session.narrator_api_key,
        )
        return await self._apply_narrative(session.id, summary.summary) or session

    async def _apply_narrative(self, session_id: str, text: str) -> Optional[Session]:
        """Write narrative text back; advisory, so a failed write is only logged."""
        async with self._lock(session_id):
            try:
                session = await self.storage.update_session(session_id, narrative=text)
            except StorageError as e:
                logger.warning("[%s] could not store narrative: %s", session_id, e)
                return None
            if session is None:
                self._forget(session_id)
                return None
            message = GameUpdateMessage(session_id=session_id, payload=await self._snapshot(session))
        await self.hub.publish(message)
        return session
