"""
Tournament Routes

HTTP surface for tournament orchestration. Capabilities are checked here,
once; services receive an authorized Caller. Taxonomy errors raised by the
services are rendered by the handlers registered in classarena.errors.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classarena.config import Settings
from classarena.database import get_db
from classarena.errors import success_response
from classarena.exceptions import ForbiddenError, NotParticipantError
from classarena.orm.classroom import StudentProfile
from classarena.orm.tournament import TournamentParticipant
from classarena.schemas.tournaments import (
    AnswerResultResponse,
    AnswerSubmitRequest,
    BulkParticipantsRequest,
    MatchCompleteRequest,
    ParticipantEntry,
    ParticipantResponse,
    TournamentCreateRequest,
    TournamentResponse,
    TournamentUpdateRequest,
)
from classarena.security.rbac import Caller, get_caller, require_teacher
from classarena.services.participant_registry import ParticipantEntity
from classarena.services.tournament_orchestrator import TournamentConfig, TournamentOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/tournaments", tags=["tournaments"])
limiter = Limiter(key_func=get_remote_address, enabled=Settings.RATE_LIMIT_ENABLED)


async def get_orchestrator(db: AsyncSession = Depends(get_db)) -> TournamentOrchestrator:
    return TournamentOrchestrator(db)


def _entity(entry: ParticipantEntry) -> ParticipantEntity:
    if entry.student_profile_id is not None:
        return ParticipantEntity.student(entry.student_profile_id)
    return ParticipantEntity.team(entry.team_id)


def _participant_payload(participant: TournamentParticipant) -> dict:
    return ParticipantResponse.model_validate(participant.to_dict()).model_dump()


async def _ensure_can_answer(db: AsyncSession, caller: Caller, participant_id: int) -> None:
    """Students may only answer for themselves or for their own team."""
    if caller.is_staff:
        return

    participant = await db.get(TournamentParticipant, participant_id)
    if participant is None:
        raise NotParticipantError(
            f"Participant {participant_id} does not exist",
            {"participant_id": participant_id},
        )

    query = select(StudentProfile.id).where(StudentProfile.user_id == caller.user_id)
    if participant.student_profile_id is not None:
        query = query.where(StudentProfile.id == participant.student_profile_id)
    else:
        query = query.where(StudentProfile.team_id == participant.team_id)
    result = await db.execute(query)
    if result.first() is None:
        raise ForbiddenError(
            f"User {caller.user_id} cannot answer for participant {participant_id}",
            {"participant_id": participant_id},
        )


# ============================================================================
# Tournament Routes
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tournament(
    request: TournamentCreateRequest,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    """Create a DRAFT tournament. Teacher/admin only."""
    config = TournamentConfig(**request.model_dump(exclude={"classroom_id"}))
    tournament = await orchestrator.create(request.classroom_id, config, created_by=caller.user_id)
    return success_response(
        TournamentResponse.model_validate(tournament.to_dict()).model_dump(),
        "Tournament created",
    )


@router.get("/classroom/{classroom_id}")
async def list_classroom_tournaments(
    classroom_id: int,
    caller: Caller = Depends(get_caller),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    tournaments = await orchestrator.list_by_classroom(classroom_id)
    return success_response([TournamentResponse.model_validate(t).model_dump() for t in tournaments])


@router.get("/match/{match_id}")
async def get_match(
    match_id: int,
    caller: Caller = Depends(get_caller),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    """Match state with the current question. Answer keys are never included."""
    return success_response(await orchestrator.matches.get_match_view(match_id))


@router.post("/match/{match_id}/start")
async def start_match(
    match_id: int,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.matches.start(match_id)
    return success_response(await orchestrator.matches.get_match_view(match_id), "Match started")


@router.post("/match/{match_id}/answer")
@limiter.limit(Settings.RATE_LIMIT_DEFAULT)
async def submit_answer(
    request: Request,  # Required by slowapi
    match_id: int,
    payload: AnswerSubmitRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    """Submit an answer for the current question as a match participant."""
    await _ensure_can_answer(db, caller, payload.participant_id)
    outcome = await orchestrator.matches.submit_answer(
        match_id,
        payload.participant_id,
        payload.question_index,
        payload.content,
        payload.elapsed_ms,
    )
    result = AnswerResultResponse(
        answer_id=outcome.answer.id,
        is_correct=outcome.is_correct,
        advanced=outcome.advanced,
        match_completed=outcome.completed,
        current_question_index=outcome.match.current_question_index,
        match_status=outcome.match.status.value,
        winner_id=outcome.match.winner_id,
    )
    return success_response(result.model_dump())


@router.post("/match/{match_id}/next-question")
async def next_question(
    match_id: int,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    """Close the current question (both answered, or its time ran out)."""
    outcome = await orchestrator.matches.advance_question(match_id)
    view = await orchestrator.matches.get_match_view(match_id)
    view["completed"] = outcome.completed
    view["timed_out_participants"] = outcome.timed_out
    return success_response(view)


@router.post("/match/{match_id}/complete")
async def complete_match(
    match_id: int,
    payload: Optional[MatchCompleteRequest] = None,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    """Force completion, or name the winner of a tie left for manual resolution."""
    payload = payload or MatchCompleteRequest()
    match = await orchestrator.matches.complete(
        match_id,
        force=payload.force,
        winner_participant_id=payload.winner_participant_id,
    )
    message = "Match needs a winner chosen by the teacher" if match.needs_manual_resolution else "Match completed"
    return success_response(await orchestrator.matches.get_match_view(match_id), message)


@router.get("/{tournament_id}")
async def get_tournament(
    tournament_id: int,
    caller: Caller = Depends(get_caller),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    """Tournament with participants and the bracket grouped by round."""
    return success_response(await orchestrator.get_tournament(tournament_id))


@router.patch("/{tournament_id}")
async def update_tournament(
    tournament_id: int,
    request: TournamentUpdateRequest,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    changes = request.model_dump(exclude_unset=True)
    if not changes:
        return success_response(await orchestrator.get_tournament(tournament_id), "Nothing to update")
    await orchestrator.update(tournament_id, changes)
    return success_response(await orchestrator.get_tournament(tournament_id), "Tournament updated")


@router.delete("/{tournament_id}")
async def delete_tournament(
    tournament_id: int,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.delete(tournament_id)
    return success_response(message="Tournament deleted")


# ============================================================================
# Participant Routes
# ============================================================================

@router.post("/{tournament_id}/participants", status_code=status.HTTP_201_CREATED)
async def add_participant(
    tournament_id: int,
    request: ParticipantEntry,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    participant = await orchestrator.registry.add_participant(tournament_id, _entity(request))
    return success_response(_participant_payload(participant), "Participant added")


@router.post("/{tournament_id}/participants/bulk", status_code=status.HTTP_201_CREATED)
async def add_participants_bulk(
    tournament_id: int,
    request: BulkParticipantsRequest,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    """Enter several participants; if any is rejected none are added."""
    participants = await orchestrator.registry.add_many(
        tournament_id, [_entity(entry) for entry in request.participants]
    )
    return success_response(
        [_participant_payload(p) for p in participants],
        f"{len(participants)} participants added",
    )


@router.delete("/{tournament_id}/participants/{participant_id}")
async def remove_participant(
    tournament_id: int,
    participant_id: int,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.registry.remove_participant(tournament_id, participant_id)
    return success_response(message="Participant removed")


@router.post("/{tournament_id}/shuffle")
async def shuffle_participants(
    tournament_id: int,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    participants = await orchestrator.registry.shuffle(tournament_id)
    return success_response([_participant_payload(p) for p in participants], "Seeds shuffled")


# ============================================================================
# Lifecycle Routes
# ============================================================================

@router.post("/{tournament_id}/bracket")
async def build_bracket(
    tournament_id: int,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    """Build the bracket and start the tournament."""
    await orchestrator.build_and_start(tournament_id)
    return success_response(await orchestrator.get_tournament(tournament_id), "Bracket generated")


@router.post("/{tournament_id}/cancel")
async def cancel_tournament(
    tournament_id: int,
    caller: Caller = Depends(require_teacher),
    orchestrator: TournamentOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.cancel(tournament_id)
    return success_response(await orchestrator.get_tournament(tournament_id), "Tournament cancelled")
