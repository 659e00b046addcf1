"""
classarena/exceptions.py
Typed exceptions for tournament orchestration.

Every core failure is a recoverable client error carrying:
- error: the taxonomy name surfaced to clients (e.g. "StaleQuestion")
- code: a machine-readable constant
- status_code: the HTTP status the boundary maps it to
"""
from typing import Any, Dict, Optional


class TournamentError(Exception):
    """Base exception for tournament operations."""
    status_code: int = 400
    error: str = "TournamentError"
    code: str = "TOURNAMENT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            result["details"] = self.details
        return result


class InvalidStateError(TournamentError):
    """Operation not valid for the current tournament or match status."""
    status_code = 409
    error = "InvalidState"
    code = "INVALID_STATE"


class InsufficientParticipantsError(TournamentError):
    status_code = 400
    error = "InsufficientParticipants"
    code = "INSUFFICIENT_PARTICIPANTS"

    def __init__(self, count: int, required: int = 2):
        super().__init__(
            f"At least {required} participants are required, found {count}",
            {"count": count, "required": required},
        )


class DuplicateParticipantError(TournamentError):
    status_code = 409
    error = "DuplicateParticipant"
    code = "DUPLICATE_PARTICIPANT"


class TypeMismatchError(TournamentError):
    """Entity kind (individual/team) differs from the tournament's participant type."""
    status_code = 400
    error = "TypeMismatch"
    code = "PARTICIPANT_TYPE_MISMATCH"


class InvalidParticipantError(TournamentError):
    """Entity missing, outside the classroom, inactive or a demo account."""
    status_code = 400
    error = "InvalidParticipant"
    code = "INVALID_PARTICIPANT"


class TournamentFullError(TournamentError):
    status_code = 400
    error = "TournamentFull"
    code = "TOURNAMENT_FULL"


class NotParticipantError(TournamentError):
    status_code = 403
    error = "NotParticipant"
    code = "NOT_PARTICIPANT"


class StaleQuestionError(TournamentError):
    status_code = 409
    error = "StaleQuestion"
    code = "STALE_QUESTION"

    def __init__(self, submitted_index: int, current_index: int):
        super().__init__(
            f"Question {submitted_index} is not the current question ({current_index})",
            {"submitted_index": submitted_index, "current_index": current_index},
        )


class DuplicateAnswerError(TournamentError):
    status_code = 409
    error = "DuplicateAnswer"
    code = "DUPLICATE_ANSWER"


class TournamentClosedError(TournamentError):
    status_code = 409
    error = "TournamentClosed"
    code = "TOURNAMENT_CLOSED"

    def __init__(self, tournament_id: int, status: str):
        super().__init__(
            f"Tournament {tournament_id} is {status} and no longer accepts match operations",
            {"tournament_id": tournament_id, "status": status},
        )


class NotFoundError(TournamentError):
    status_code = 404
    error = "NotFound"
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(message, {"resource": resource, "id": identifier})


class ConflictError(TournamentError):
    """Concurrent writers kept colliding on the same match."""
    status_code = 409
    error = "Conflict"
    code = "CONCURRENT_MODIFICATION"


class ForbiddenError(TournamentError):
    status_code = 403
    error = "Forbidden"
    code = "FORBIDDEN"


class IncompatibleConfigError(TournamentError):
    """Question bank belongs to another classroom or holds too few questions."""
    status_code = 400
    error = "IncompatibleConfig"
    code = "INCOMPATIBLE_CONFIG"
