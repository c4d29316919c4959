"""Game rules and constants for Shadowbrook Mafia."""

from enum import Enum


class Role(str, Enum):
    """Player roles in the game."""

    VILLAGER = "VILLAGER"
    DOCTOR = "DOCTOR"
    DETECTIVE = "DETECTIVE"
    MAFIA = "MAFIA"


class Phase(str, Enum):
    """Current session phase."""

    LOBBY = "LOBBY"
    DAY = "DAY"
    VOTING = "VOTING"
    NIGHT = "NIGHT"
    ENDED = "ENDED"


class PlayerStatus(str, Enum):
    """Life status of a participant."""

    ALIVE = "ALIVE"
    ELIMINATED = "ELIMINATED"
    SPECTATOR = "SPECTATOR"


class NightAction(str, Enum):
    """Actions a role may submit during the night."""

    HEAL = "HEAL"
    INVESTIGATE = "INVESTIGATE"
    KILL = "KILL"


class Winner(str, Enum):
    """Faction that won the game."""

    VILLAGERS = "VILLAGERS"
    MAFIA = "MAFIA"


# Which night action each role may take; roles missing here have none
ROLE_ACTIONS = {
    Role.DOCTOR: NightAction.HEAL,
    Role.DETECTIVE: NightAction.INVESTIGATE,
    Role.MAFIA: NightAction.KILL,
}

# Stable order in which a distribution is consumed during role assignment
ROLE_ORDER = (Role.VILLAGER, Role.DOCTOR, Role.DETECTIVE, Role.MAFIA)

# Phases reached by "advance" from the given phase (VOTING/NIGHT may also end the game)
ADVANCE_TARGETS = {
    Phase.DAY: Phase.VOTING,
    Phase.VOTING: Phase.NIGHT,
    Phase.NIGHT: Phase.DAY,
}

# Minimum players to start
MIN_PLAYERS = 4

# Session capacity bounds
DEFAULT_CAPACITY = 8
MAX_CAPACITY = 15

# Advisory countdown shown to clients for each running phase
PHASE_DURATION_SECONDS = 300

JOIN_CODE_LENGTH = 6

MAX_NAME_LENGTH = 50
MAX_CHAT_LENGTH = 500
MAX_PROMPT_LENGTH = 1000

# Number of log lines handed to the narrator as recent context
NARRATIVE_EVENT_WINDOW = 3
