"""Error taxonomy shared by the engine, the session service and the API."""

from enum import Enum


class ErrorKind(str, Enum):
    """Category of a failed operation."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    COLLABORATOR_FAILURE = "collaborator_failure"
    INTERNAL = "internal"


class GameError(Exception):
    """Base class for every error surfaced to a requester."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RuleViolation(GameError):
    """A precondition of the requested operation does not hold."""

    kind = ErrorKind.VALIDATION


class NotFoundError(GameError):
    kind = ErrorKind.NOT_FOUND

    @classmethod
    def session(cls, session_id: str) -> "NotFoundError":
        return cls(f"Session {session_id} not found")

    @classmethod
    def participant(cls, participant_id: str) -> "NotFoundError":
        return cls(f"Participant {participant_id} not found")


class CollaboratorError(GameError):
    """An external collaborator (store or text generator) failed."""

    kind = ErrorKind.COLLABORATOR_FAILURE


class StorageError(CollaboratorError):
    pass


class InvariantError(GameError):
    """Stored state contradicts an invariant the service relies on."""

    kind = ErrorKind.INTERNAL
