"""Game engine for Shadowbrook Mafia."""

from game.engine import (
    default_role_distribution,
    assign_roles,
    check_win_condition,
    resolve_night_actions,
    tally_votes,
    valid_targets,
)
from game.errors import (
    ErrorKind,
    GameError,
    RuleViolation,
    NotFoundError,
    CollaboratorError,
    StorageError,
    InvariantError,
)
from game.rules import Role, Phase, PlayerStatus, NightAction, Winner
from game.state import Session, Participant, ChatMessage, NightResolution, VoteTally

__all__ = [
    "default_role_distribution",
    "assign_roles",
    "check_win_condition",
    "resolve_night_actions",
    "tally_votes",
    "valid_targets",
    "ErrorKind",
    "GameError",
    "RuleViolation",
    "NotFoundError",
    "CollaboratorError",
    "StorageError",
    "InvariantError",
    "Role",
    "Phase",
    "PlayerStatus",
    "NightAction",
    "Winner",
    "Session",
    "Participant",
    "ChatMessage",
    "NightResolution",
    "VoteTally",
]
