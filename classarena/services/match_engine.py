"""
Match Engine

Drives one match through PENDING -> WAITING_PARTICIPANTS -> IN_PROGRESS -> COMPLETED.

- Every write runs under the match lock with the optimistic version check
- Both sides get the tournament's fixed question order
- The second answer to a question advances the match in the same critical section
- Completion notifies listeners (the orchestrator) inside the same transaction
"""
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classarena.exceptions import (
    ConflictError,
    DuplicateAnswerError,
    InvalidStateError,
    NotFoundError,
    NotParticipantError,
    StaleQuestionError,
    TournamentClosedError,
)
from classarena.orm.base import iso
from classarena.orm.tournament import (
    MatchResolution,
    MatchStatus,
    TieBreakMode,
    Tournament,
    TournamentAnswer,
    TournamentMatch,
    TournamentParticipant,
    TournamentStatus,
)
from classarena.services.answer_checker import check_answer
from classarena.services.collaborators import EffectOutbox, QuestionBankReader, QuestionData
from classarena.services.concurrency import match_key, release_lock, run_serialized

logger = logging.getLogger(__name__)

CompletionListener = Callable[[TournamentMatch, Tournament], Awaitable[None]]


@dataclass
class AnswerOutcome:
    answer: TournamentAnswer
    match: TournamentMatch
    is_correct: bool
    advanced: bool = False
    completed: bool = False


@dataclass
class AdvanceOutcome:
    match: TournamentMatch
    completed: bool = False
    timed_out: List[int] = field(default_factory=list)


def determine_winner(
    match: TournamentMatch,
    tie_break_mode: TieBreakMode,
    rng: random.Random,
) -> Tuple[Optional[int], Optional[MatchResolution]]:
    """
    Winner by score, then by lower cumulative elapsed time, then tie-break.

    Returns (None, None) when the tie must be settled by a teacher.
    """
    a, b = match.participant_a_id, match.participant_b_id
    if match.score_a != match.score_b:
        return (a if match.score_a > match.score_b else b), MatchResolution.SCORE
    if match.elapsed_a_ms != match.elapsed_b_ms:
        return (a if match.elapsed_a_ms < match.elapsed_b_ms else b), MatchResolution.ELAPSED_TIME
    if tie_break_mode == TieBreakMode.COIN_FLIP:
        winner = rng.choice([a, b])
        logger.warning(
            f"Match {match.id} tied on score ({match.score_a}) and time ({match.elapsed_a_ms}ms); "
            f"coin flip picked participant {winner}"
        )
        return winner, MatchResolution.COIN_FLIP
    return None, None


class MatchEngine:

    def __init__(
        self,
        db: AsyncSession,
        questions: QuestionBankReader,
        effects: EffectOutbox,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.questions = questions
        self.effects = effects
        self.rng = rng or random.Random()
        self.clock = clock or datetime.utcnow
        self._completion_listeners: List[CompletionListener] = []

    def add_completion_listener(self, listener: CompletionListener) -> None:
        self._completion_listeners.append(listener)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_match(self, match_id: int) -> TournamentMatch:
        return await self._load_match(match_id)

    async def current_question(
        self, match: TournamentMatch, tournament: Optional[Tournament] = None
    ) -> Optional[Dict[str, Any]]:
        """The question being played, without its answer key."""
        if match.status != MatchStatus.IN_PROGRESS:
            return None
        if tournament is None:
            tournament = await self._load_tournament(match.tournament_id)
        question = await self._question_at(tournament, match.current_question_index)
        public = question.to_public()
        public["index"] = match.current_question_index
        public["deadline"] = iso(self._deadline(match, tournament))
        return public

    async def get_match_view(self, match_id: int) -> Dict[str, Any]:
        match = await self._load_match(match_id)
        tournament = await self._load_tournament(match.tournament_id)

        participants = {}
        if match.participant_ids:
            result = await self.db.execute(
                select(TournamentParticipant)
                .where(TournamentParticipant.id.in_(match.participant_ids))
                .execution_options(populate_existing=True)
            )
            participants = {p.id: p for p in result.unique().scalars().all()}

        result = await self.db.execute(
            select(TournamentAnswer)
            .where(TournamentAnswer.match_id == match.id)
            .order_by(TournamentAnswer.question_index, TournamentAnswer.id)
        )
        answers = result.scalars().all()
        # Answers to the open question stay hidden until it closes
        if match.status != MatchStatus.COMPLETED:
            answers = [a for a in answers if a.question_index < match.current_question_index]

        view = match.to_dict()
        view["participant_a"] = participants[match.participant_a_id].to_dict() if match.participant_a_id in participants else None
        view["participant_b"] = participants[match.participant_b_id].to_dict() if match.participant_b_id in participants else None
        view["question_count"] = len(tournament.question_ids or [])
        view["time_per_question_seconds"] = tournament.time_per_question_seconds
        view["question"] = await self.current_question(match, tournament)
        view["answers"] = [a.to_dict() for a in answers]
        return view

    # =========================================================================
    # Operations
    # =========================================================================

    async def start(self, match_id: int) -> TournamentMatch:
        """WAITING_PARTICIPANTS -> IN_PROGRESS, serving question 0."""
        async def operation():
            self.effects.clear()
            match = await self._load_match(match_id)
            tournament = await self._load_open_tournament(match.tournament_id)
            if match.status != MatchStatus.WAITING_PARTICIPANTS:
                raise InvalidStateError(
                    f"Match {match_id} cannot start from {match.status.value}",
                    {"match_id": match_id, "status": match.status.value},
                )
            busy = await self._busy_participants(match)
            if busy:
                raise InvalidStateError(
                    f"Match {match_id} cannot start while participants {busy} are playing another match",
                    {"match_id": match_id, "busy_participants": busy},
                )
            await self._question_at(tournament, 0)

            now = self.clock()
            match.status = MatchStatus.IN_PROGRESS
            match.current_question_index = 0
            match.question_started_at = now
            match.started_at = now
            return match

        match = await self._run(match_id, operation)
        logger.info(f"Match {match_id} started ({match.bracket_position})")
        return match

    async def submit_answer(
        self,
        match_id: int,
        participant_id: int,
        question_index: int,
        content: Optional[str],
        elapsed_ms: int,
    ) -> AnswerOutcome:
        """
        Record one participant's answer to the current question.

        Raises:
            NotParticipantError: participant is not playing this match
            StaleQuestionError: question_index is not the current question
            DuplicateAnswerError: this question was already answered
            TournamentClosedError: tournament completed or cancelled
        """
        async def operation():
            self.effects.clear()
            match = await self._load_match(match_id)
            if not match.has_participant(participant_id):
                raise NotParticipantError(
                    f"Participant {participant_id} is not playing match {match_id}",
                    {"match_id": match_id, "participant_id": participant_id},
                )
            # A resubmission stays a duplicate even after it advanced or closed the match
            if await self._has_answered(match.id, participant_id, question_index):
                raise DuplicateAnswerError(
                    f"Participant {participant_id} already answered question {question_index}",
                    {"match_id": match_id, "participant_id": participant_id, "question_index": question_index},
                )
            tournament = await self._load_open_tournament(match.tournament_id)
            if match.status != MatchStatus.IN_PROGRESS:
                raise InvalidStateError(
                    f"Match {match_id} is not in progress ({match.status.value})",
                    {"match_id": match_id, "status": match.status.value},
                )
            if question_index != match.current_question_index:
                raise StaleQuestionError(question_index, match.current_question_index)

            question = await self._question_at(tournament, question_index)
            is_correct = check_answer(question, content)
            elapsed = self._clamp_elapsed(elapsed_ms, tournament)
            answer = await self._record_answer(match, participant_id, question, content, is_correct, elapsed)

            outcome = AnswerOutcome(answer=answer, match=match, is_correct=is_correct)
            if await self._answer_count(match.id, question_index) >= len(match.participant_ids):
                outcome.advanced = True
                outcome.completed = await self._advance(match, tournament)
            return outcome

        outcome = await self._run(match_id, operation)
        logger.info(
            f"Match {match_id}: participant {participant_id} answered Q{question_index} "
            f"({'correct' if outcome.is_correct else 'incorrect'})"
        )
        return outcome

    async def advance_question(self, match_id: int, now: Optional[datetime] = None) -> AdvanceOutcome:
        """
        Close the current question once both sides answered or its time limit
        passed. Missing answers are recorded as timed out and incorrect.
        """
        async def operation():
            self.effects.clear()
            current = now or self.clock()
            match = await self._load_match(match_id)
            tournament = await self._load_open_tournament(match.tournament_id)
            if match.status != MatchStatus.IN_PROGRESS:
                raise InvalidStateError(
                    f"Match {match_id} is not in progress ({match.status.value})",
                    {"match_id": match_id, "status": match.status.value},
                )

            index = match.current_question_index
            answered = await self._answered_by(match.id, index)
            missing = [pid for pid in match.participant_ids if pid not in answered]
            if missing:
                deadline = self._deadline(match, tournament)
                if deadline is not None and current < deadline:
                    raise InvalidStateError(
                        f"Question {index} of match {match_id} is open until {deadline.isoformat()}",
                        {"match_id": match_id, "question_index": index, "waiting_for": missing},
                    )
                question = await self._question_at(tournament, index)
                limit_ms = tournament.time_per_question_seconds * 1000
                for participant_id in missing:
                    await self._record_answer(
                        match, participant_id, question, None, False, limit_ms, timed_out=True
                    )
                logger.info(f"Match {match_id}: Q{index} timed out for participants {missing}")

            completed = await self._advance(match, tournament)
            return AdvanceOutcome(match=match, completed=completed, timed_out=missing)

        return await self._run(match_id, operation)

    async def complete(
        self,
        match_id: int,
        force: bool = False,
        winner_participant_id: Optional[int] = None,
    ) -> TournamentMatch:
        """
        Resolve a match. Idempotent on a COMPLETED match.

        force: teacher override when questions remain
        winner_participant_id: settles a MANUAL tie-break (or names the winner of a forced match)
        """
        async def operation():
            self.effects.clear()
            match = await self._load_match(match_id)
            if match.status == MatchStatus.COMPLETED:
                return match
            tournament = await self._load_open_tournament(match.tournament_id)
            if match.status != MatchStatus.IN_PROGRESS:
                raise InvalidStateError(
                    f"Match {match_id} cannot complete from {match.status.value}",
                    {"match_id": match_id, "status": match.status.value},
                )
            if not (force or match.needs_manual_resolution):
                raise InvalidStateError(
                    f"Match {match_id} still has questions to play; pass force to end it early",
                    {"match_id": match_id, "current_question_index": match.current_question_index},
                )
            if winner_participant_id is not None and not match.has_participant(winner_participant_id):
                raise NotParticipantError(
                    f"Participant {winner_participant_id} is not playing match {match_id}",
                    {"match_id": match_id, "participant_id": winner_participant_id},
                )

            # A MANUAL tie leaves the match flagged for a teacher instead of failing
            await self._complete(match, tournament, winner_participant_id)
            return match

        match = await self._load_match(match_id)
        if match.status == MatchStatus.COMPLETED:
            return match
        return await self._run(match_id, operation)

    async def expire_overdue(self, now: Optional[datetime] = None) -> List[int]:
        """Advance every in-progress match whose current question ran out of time."""
        current = now or self.clock()
        result = await self.db.execute(
            select(TournamentMatch.id, TournamentMatch.question_started_at, Tournament.time_per_question_seconds)
            .join(Tournament, Tournament.id == TournamentMatch.tournament_id)
            .where(
                TournamentMatch.status == MatchStatus.IN_PROGRESS,
                Tournament.status == TournamentStatus.IN_PROGRESS,
                TournamentMatch.question_started_at.isnot(None),
            )
            .order_by(TournamentMatch.id)
        )
        overdue = [
            row.id for row in result.all()
            if row.question_started_at + timedelta(seconds=row.time_per_question_seconds) <= current
        ]

        advanced = []
        for match_id in overdue:
            try:
                await self.advance_question(match_id, now=current)
                advanced.append(match_id)
            except (InvalidStateError, TournamentClosedError, ConflictError) as e:
                logger.warning(f"Skipped overdue match {match_id}: {e.message}")
        if advanced:
            logger.info(f"Expired questions on {len(advanced)} matches")
        return advanced

    # =========================================================================
    # Internals (caller holds the match lock)
    # =========================================================================

    async def _run(self, match_id: int, operation):
        tournament_id = None

        async def tracked():
            nonlocal tournament_id
            outcome = await operation()
            match = outcome if isinstance(outcome, TournamentMatch) else outcome.match
            tournament_id = match.tournament_id
            return outcome

        async def guard():
            await self._ensure_not_cancelled(tournament_id)

        result = await run_serialized(self.db, tracked, key=match_key(match_id), before_commit=guard)
        await self.effects.dispatch(self.db)
        match = result if isinstance(result, TournamentMatch) else result.match
        if match.status == MatchStatus.COMPLETED:
            release_lock(match_key(match_id))
        return result

    async def _advance(self, match: TournamentMatch, tournament: Tournament) -> bool:
        """Move to the next question, or complete past the last one."""
        next_index = match.current_question_index + 1
        if next_index >= len(tournament.question_ids or []):
            return await self._complete(match, tournament)
        match.current_question_index = next_index
        match.question_started_at = self.clock()
        return False

    async def _complete(
        self,
        match: TournamentMatch,
        tournament: Tournament,
        winner_override: Optional[int] = None,
    ) -> bool:
        if winner_override is not None:
            winner, resolution = winner_override, MatchResolution.MANUAL
        else:
            winner, resolution = determine_winner(match, tournament.tie_break_mode, self.rng)

        if winner is None:
            if not match.needs_manual_resolution:
                logger.critical(
                    f"Match {match.id} of tournament {tournament.id} is tied on score and time "
                    f"with MANUAL tie-break; waiting for a teacher to name the winner"
                )
            match.needs_manual_resolution = True
            match.question_started_at = None
            return False

        match.status = MatchStatus.COMPLETED
        match.winner_id = winner
        match.resolution = resolution
        match.needs_manual_resolution = False
        match.question_started_at = None
        match.completed_at = self.clock()
        logger.info(
            f"Match {match.id} ({match.bracket_position}) completed: winner {winner} "
            f"by {resolution.value} ({match.score_a}-{match.score_b})"
        )

        for listener in self._completion_listeners:
            await listener(match, tournament)
        return True

    async def _record_answer(
        self,
        match: TournamentMatch,
        participant_id: int,
        question: QuestionData,
        content: Optional[str],
        is_correct: bool,
        elapsed_ms: int,
        timed_out: bool = False,
    ) -> TournamentAnswer:
        answer = TournamentAnswer(
            match_id=match.id,
            participant_id=participant_id,
            question_index=match.current_question_index,
            question_id=question.id,
            content=content,
            is_correct=is_correct,
            timed_out=timed_out,
            elapsed_ms=elapsed_ms,
            submitted_at=self.clock(),
        )
        self.db.add(answer)
        try:
            await self.db.flush()
        except IntegrityError:
            raise DuplicateAnswerError(
                f"Participant {participant_id} already answered question {match.current_question_index}",
                {"match_id": match.id, "participant_id": participant_id},
            )

        if match.side_of(participant_id) == "A":
            match.score_a += int(is_correct)
            match.elapsed_a_ms += elapsed_ms
        else:
            match.score_b += int(is_correct)
            match.elapsed_b_ms += elapsed_ms

        await self.db.execute(
            update(TournamentParticipant)
            .where(TournamentParticipant.id == participant_id)
            .values(
                questions_answered=TournamentParticipant.questions_answered + 1,
                questions_correct=TournamentParticipant.questions_correct + int(is_correct),
            )
            .execution_options(synchronize_session=False)
        )
        return answer

    async def _load_match(self, match_id: int) -> TournamentMatch:
        result = await self.db.execute(
            select(TournamentMatch)
            .where(TournamentMatch.id == match_id)
            .execution_options(populate_existing=True)
        )
        match = result.scalar_one_or_none()
        if match is None:
            raise NotFoundError("Match", match_id)
        return match

    async def _load_tournament(self, tournament_id: int) -> Tournament:
        result = await self.db.execute(
            select(Tournament)
            .where(Tournament.id == tournament_id)
            .execution_options(populate_existing=True)
        )
        tournament = result.scalar_one_or_none()
        if tournament is None:
            raise NotFoundError("Tournament", tournament_id)
        return tournament

    async def _load_open_tournament(self, tournament_id: int) -> Tournament:
        tournament = await self._load_tournament(tournament_id)
        if tournament.is_closed:
            raise TournamentClosedError(tournament.id, tournament.status.value)
        return tournament

    async def _ensure_not_cancelled(self, tournament_id: Optional[int]) -> None:
        """Re-read the status just before commit; a concurrent cancel wins."""
        if tournament_id is None:
            return
        result = await self.db.execute(select(Tournament.status).where(Tournament.id == tournament_id))
        status = result.scalar_one_or_none()
        if status == TournamentStatus.CANCELLED:
            raise TournamentClosedError(tournament_id, status.value)

    async def _question_at(self, tournament: Tournament, index: int) -> QuestionData:
        question_ids = tournament.question_ids or []
        if index < 0 or index >= len(question_ids):
            raise InvalidStateError(
                f"Tournament {tournament.id} has no question at index {index}",
                {"question_index": index, "question_count": len(question_ids)},
            )
        question = await self.questions.get_question(question_ids[index])
        if question is None:
            raise NotFoundError("Question", question_ids[index])
        return question

    async def _busy_participants(self, match: TournamentMatch) -> List[int]:
        """Participants of `match` already playing another match of the tournament."""
        players = match.participant_ids
        if not players:
            return []
        result = await self.db.execute(
            select(TournamentMatch.participant_a_id, TournamentMatch.participant_b_id).where(
                TournamentMatch.tournament_id == match.tournament_id,
                TournamentMatch.id != match.id,
                TournamentMatch.status == MatchStatus.IN_PROGRESS,
                or_(
                    TournamentMatch.participant_a_id.in_(players),
                    TournamentMatch.participant_b_id.in_(players),
                ),
            )
        )
        playing = {pid for row in result.all() for pid in row if pid is not None}
        return [pid for pid in players if pid in playing]

    async def _has_answered(self, match_id: int, participant_id: int, question_index: int) -> bool:
        result = await self.db.execute(
            select(TournamentAnswer.id).where(
                TournamentAnswer.match_id == match_id,
                TournamentAnswer.participant_id == participant_id,
                TournamentAnswer.question_index == question_index,
            )
        )
        return result.first() is not None

    async def _answered_by(self, match_id: int, question_index: int) -> set:
        result = await self.db.execute(
            select(TournamentAnswer.participant_id).where(
                TournamentAnswer.match_id == match_id,
                TournamentAnswer.question_index == question_index,
            )
        )
        return set(result.scalars().all())

    async def _answer_count(self, match_id: int, question_index: int) -> int:
        result = await self.db.execute(
            select(func.count(TournamentAnswer.id)).where(
                TournamentAnswer.match_id == match_id,
                TournamentAnswer.question_index == question_index,
            )
        )
        return result.scalar_one()

    def _deadline(self, match: TournamentMatch, tournament: Tournament) -> Optional[datetime]:
        if match.question_started_at is None:
            return None
        return match.question_started_at + timedelta(seconds=tournament.time_per_question_seconds)

    def _clamp_elapsed(self, elapsed_ms: Optional[int], tournament: Tournament) -> int:
        limit_ms = tournament.time_per_question_seconds * 1000
        if elapsed_ms is None:
            return limit_ms
        return max(0, min(int(elapsed_ms), limit_ms))
