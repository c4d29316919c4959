"""Record types for sessions, participants and chat, plus resolver results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from game.rules import (
    DEFAULT_CAPACITY,
    PHASE_DURATION_SECONDS,
    NightAction,
    Phase,
    PlayerStatus,
    Role,
    Winner,
)


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Session:
    """One game instance. Records are immutable; updates go through the store."""

    id: str
    code: str
    name: str
    host_id: Optional[str] = None
    capacity: int = DEFAULT_CAPACITY
    phase: Phase = Phase.LOBBY
    day_number: int = 1
    time_remaining: int = PHASE_DURATION_SECONDS
    is_active: bool = True
    narrative: str = ""
    game_log: tuple[str, ...] = ()
    role_distribution: Optional[dict[Role, int]] = None
    winner: Optional[Winner] = None
    narrator_api_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Participant:
    """A player within one session."""

    id: str
    session_id: str
    name: str
    role: Optional[Role] = None
    status: PlayerStatus = PlayerStatus.ALIVE
    is_ready: bool = False
    is_host: bool = False
    votes: int = 0
    voted_for: Optional[str] = None
    last_action: Optional[NightAction] = None
    action_target: Optional[str] = None
    joined_at: datetime = field(default_factory=utcnow)
    # Secret handed only to the joiner; proves ownership of this participant
    token: str = ""

    @property
    def alive(self) -> bool:
        return self.status == PlayerStatus.ALIVE


@dataclass(frozen=True)
class ChatMessage:
    """A chat line. Never mutated after creation."""

    id: str
    session_id: str
    message: str
    participant_id: Optional[str] = None
    is_system: bool = False
    sequence: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Investigation:
    """Private result for one detective: the true role of their target."""

    detective_id: str
    target_id: str
    role: Optional[Role]


@dataclass
class NightResolution:
    """Outcome of resolving one night's actions."""

    events: list[str] = field(default_factory=list)
    eliminated: list[str] = field(default_factory=list)
    protected: set[str] = field(default_factory=set)
    investigations: list[Investigation] = field(default_factory=list)
    participants: list[Participant] = field(default_factory=list)


@dataclass
class VoteTally:
    """Outcome of tabulating one voting phase."""

    eliminated_id: Optional[str] = None
    counts: dict[str, int] = field(default_factory=dict)
    participants: list[Participant] = field(default_factory=list)

    @property
    def tied(self) -> bool:
        return self.eliminated_id is None and bool(self.counts)
