"""
Pydantic Schemas for Tournaments

Request models for the tournament API, and the response shapes served inside
the {"success": ..., "data": ...} envelope.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from classarena.orm.tournament import ParticipantType, TieBreakMode, TournamentType


# ============================================================================
# Tournament Schemas
# ============================================================================

class TournamentCreateRequest(BaseModel):
    """Schema for creating a DRAFT tournament."""
    classroom_id: int = Field(..., description="Classroom the tournament runs in")
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    icon: Optional[str] = Field(None, max_length=16)
    type: TournamentType = Field(TournamentType.SINGLE_ELIMINATION, description="Bracket format")
    participant_type: ParticipantType = Field(ParticipantType.INDIVIDUAL, description="Students or teams")
    question_bank_id: int = Field(..., description="Bank the match questions are drawn from")
    time_per_question_seconds: Optional[int] = Field(None, ge=5, le=600)
    questions_per_match: Optional[int] = Field(None, ge=1, le=50)
    max_participants: Optional[int] = Field(None, ge=2, le=256)
    points_per_win: Optional[int] = Field(None, ge=0)
    tie_break_mode: Optional[TieBreakMode] = None
    reward_points_first: Optional[int] = Field(None, ge=0)
    reward_points_second: Optional[int] = Field(None, ge=0)
    reward_points_third: Optional[int] = Field(None, ge=0)
    reward_points_participation: Optional[int] = Field(None, ge=0)
    shuffle_questions: bool = Field(True, description="Draw questions in random order (fixed once at creation)")


class TournamentUpdateRequest(BaseModel):
    """Schema for changing a DRAFT tournament. Omitted fields are left alone."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    icon: Optional[str] = Field(None, max_length=16)
    participant_type: Optional[ParticipantType] = None
    question_bank_id: Optional[int] = None
    time_per_question_seconds: Optional[int] = Field(None, ge=5, le=600)
    questions_per_match: Optional[int] = Field(None, ge=1, le=50)
    max_participants: Optional[int] = Field(None, ge=2, le=256)
    points_per_win: Optional[int] = Field(None, ge=0)
    tie_break_mode: Optional[TieBreakMode] = None
    reward_points_first: Optional[int] = Field(None, ge=0)
    reward_points_second: Optional[int] = Field(None, ge=0)
    reward_points_third: Optional[int] = Field(None, ge=0)
    reward_points_participation: Optional[int] = Field(None, ge=0)


class TournamentResponse(BaseModel):
    """Schema for a tournament summary."""
    id: int
    classroom_id: int
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    type: str
    status: str
    participant_type: str
    question_bank_id: int
    time_per_question_seconds: int
    questions_per_match: int
    max_participants: int
    points_per_win: int
    tie_break_mode: str
    total_rounds: Optional[int] = None
    champion_id: Optional[int] = None
    runner_up_id: Optional[int] = None
    third_place_id: Optional[int] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    participant_count: Optional[int] = None

    class Config:
        from_attributes = True


# ============================================================================
# Participant Schemas
# ============================================================================

class ParticipantEntry(BaseModel):
    """A student profile or a team. Exactly one id must be given."""
    student_profile_id: Optional[int] = None
    team_id: Optional[int] = None

    @model_validator(mode="after")
    def exactly_one_entity(self):
        if (self.student_profile_id is None) == (self.team_id is None):
            raise ValueError("Provide exactly one of student_profile_id or team_id")
        return self


class BulkParticipantsRequest(BaseModel):
    """Schema for entering several participants at once (all or nothing)."""
    participants: List[ParticipantEntry] = Field(..., min_length=1, max_length=256)


class ParticipantResponse(BaseModel):
    id: int
    tournament_id: int
    student_profile_id: Optional[int] = None
    team_id: Optional[int] = None
    display_name: Optional[str] = None
    seed: Optional[int] = None
    is_active: bool
    matches_won: int = 0
    matches_lost: int = 0
    questions_correct: int = 0
    questions_answered: int = 0
    eliminated_in_round: Optional[int] = None
    final_position: Optional[int] = None

    class Config:
        from_attributes = True


# ============================================================================
# Match Schemas
# ============================================================================

class AnswerSubmitRequest(BaseModel):
    """Schema for submitting an answer to the current question."""
    participant_id: int = Field(..., description="Tournament participant answering")
    question_index: int = Field(..., ge=0, description="Index the client believes is current")
    content: str = Field(..., max_length=4000, description="Answer text; JSON for multiple choice and matching")
    elapsed_ms: int = Field(0, ge=0, description="Client-measured answer time, clamped to the limit")


class MatchCompleteRequest(BaseModel):
    """Schema for forcing completion or settling a MANUAL tie-break."""
    force: bool = Field(False, description="End the match even if questions remain")
    winner_participant_id: Optional[int] = Field(None, description="Winner chosen by the teacher")


class AnswerResultResponse(BaseModel):
    answer_id: int
    is_correct: bool
    advanced: bool
    match_completed: bool
    current_question_index: int
    match_status: str
    winner_id: Optional[int] = None


class APIError(BaseModel):
    """Schema for API error response."""
    success: bool = False
    error: str
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None
