"""
Tournament Orchestrator

Owns the tournament lifecycle DRAFT -> IN_PROGRESS -> COMPLETED | CANCELLED:
- create / update / delete while DRAFT
- build_and_start: seeds participants, persists the whole bracket with successor links
- observes match completion: awards the win, propagates the winner, finalizes
- cancel: closes every open match with no winner
- replay_pending_propagation: recovery after a crash between completion and propagation

Propagation and finalization run inside the completing match's transaction.
Rewards and notifications are queued in the shared EffectOutbox and leave
only after that transaction commits.
"""
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from classarena.config import Settings
from classarena.exceptions import (
    IncompatibleConfigError,
    InsufficientParticipantsError,
    InvalidStateError,
    NotFoundError,
)
from classarena.orm.classroom import StudentProfile
from classarena.orm.tournament import (
    MatchResolution,
    MatchStatus,
    ParticipantType,
    TieBreakMode,
    Tournament,
    TournamentAnswer,
    TournamentMatch,
    TournamentParticipant,
    TournamentStatus,
    TournamentType,
)
from classarena.services.bracket_builder import build_bracket
from classarena.services.collaborators import (
    EffectOutbox,
    NotificationSink,
    QuestionBankReader,
    RewardSink,
    SqlNotificationSink,
    SqlQuestionBankReader,
    SqlRewardSink,
)
from classarena.services.concurrency import match_key, release_lock, run_serialized, tournament_key
from classarena.services.match_engine import MatchEngine
from classarena.services.participant_registry import ParticipantRegistry

logger = logging.getLogger(__name__)

MATCH_WIN_REASON = "tournament_match_win"
PLACEMENT_REASON = "tournament_placement"
PARTICIPATION_REASON = "tournament_participation"

UPDATABLE_FIELDS = (
    "name", "description", "icon", "participant_type", "question_bank_id",
    "time_per_question_seconds", "questions_per_match", "max_participants",
    "points_per_win", "tie_break_mode", "reward_points_first",
    "reward_points_second", "reward_points_third", "reward_points_participation",
)

PLACEMENT_TITLES = {
    1: "🥇 Tournament champion!",
    2: "🥈 Second place!",
    3: "🥉 Third place!",
}


@dataclass
class TournamentConfig:
    """Creation parameters. Unset values fall back to Settings defaults."""
    name: str
    type: TournamentType
    participant_type: ParticipantType
    question_bank_id: int
    description: Optional[str] = None
    icon: Optional[str] = None
    time_per_question_seconds: Optional[int] = None
    questions_per_match: Optional[int] = None
    max_participants: Optional[int] = None
    points_per_win: Optional[int] = None
    tie_break_mode: Optional[TieBreakMode] = None
    reward_points_first: Optional[int] = None
    reward_points_second: Optional[int] = None
    reward_points_third: Optional[int] = None
    reward_points_participation: Optional[int] = None
    shuffle_questions: bool = True


def _default(value, fallback):
    return fallback if value is None else value


class TournamentOrchestrator:

    def __init__(
        self,
        db: AsyncSession,
        questions: Optional[QuestionBankReader] = None,
        rewards: Optional[RewardSink] = None,
        notifications: Optional[NotificationSink] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.rng = rng or random.Random()
        self.clock = clock or datetime.utcnow
        self.questions = questions or SqlQuestionBankReader(db)
        self.effects = EffectOutbox(
            rewards or SqlRewardSink(db),
            notifications or SqlNotificationSink(db),
        )
        self.registry = ParticipantRegistry(db, rng=self.rng)
        self.matches = MatchEngine(db, self.questions, self.effects, rng=self.rng, clock=self.clock)
        self.matches.add_completion_listener(self._on_match_completed)

    # =========================================================================
    # Lifecycle: DRAFT
    # =========================================================================

    async def create(
        self,
        classroom_id: int,
        config: TournamentConfig,
        created_by: Optional[int] = None,
    ) -> Tournament:
        """
        Create a DRAFT tournament with its question order fixed.

        Raises:
            InvalidStateError: unsupported tournament type
            NotFoundError: question bank does not exist
            IncompatibleConfigError: bank from another classroom or too small
        """
        if config.type == TournamentType.DOUBLE_ELIMINATION:
            raise InvalidStateError(
                "Double elimination tournaments are not supported",
                {"type": config.type.value},
            )
        questions_per_match = _default(config.questions_per_match, Settings.DEFAULT_QUESTIONS_PER_MATCH)

        async def operation():
            question_ids = await self._pick_questions(
                classroom_id, config.question_bank_id, questions_per_match, config.shuffle_questions
            )
            tournament = Tournament(
                classroom_id=classroom_id,
                name=config.name,
                description=config.description,
                icon=_default(config.icon, "🏆"),
                type=config.type,
                status=TournamentStatus.DRAFT,
                participant_type=config.participant_type,
                question_bank_id=config.question_bank_id,
                question_ids=question_ids,
                time_per_question_seconds=_default(config.time_per_question_seconds, Settings.DEFAULT_TIME_PER_QUESTION),
                questions_per_match=questions_per_match,
                max_participants=_default(config.max_participants, Settings.DEFAULT_MAX_PARTICIPANTS),
                points_per_win=_default(config.points_per_win, Settings.DEFAULT_POINTS_PER_WIN),
                tie_break_mode=_default(config.tie_break_mode, TieBreakMode(Settings.DEFAULT_TIE_BREAK_MODE)),
                reward_points_first=_default(config.reward_points_first, Settings.DEFAULT_REWARD_FIRST),
                reward_points_second=_default(config.reward_points_second, Settings.DEFAULT_REWARD_SECOND),
                reward_points_third=_default(config.reward_points_third, Settings.DEFAULT_REWARD_THIRD),
                reward_points_participation=_default(
                    config.reward_points_participation, Settings.DEFAULT_REWARD_PARTICIPATION
                ),
                created_by_user_id=created_by,
                created_at=self.clock(),
                updated_at=self.clock(),
            )
            self.db.add(tournament)
            await self.db.flush()
            return tournament

        tournament = await run_serialized(self.db, operation)
        logger.info(
            f"Tournament {tournament.id} '{tournament.name}' created in classroom {classroom_id} "
            f"({tournament.type.value}, {tournament.participant_type.value})"
        )
        return tournament

    async def update(self, tournament_id: int, changes: Dict[str, Any]) -> Tournament:
        """Change configuration while DRAFT. Question order is re-fixed if the bank or count changes."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidStateError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                {"fields": sorted(unknown)},
            )

        async def operation():
            tournament = await self._load_tournament(tournament_id)
            self._require_status(tournament, TournamentStatus.DRAFT, "update")

            if "participant_type" in changes and changes["participant_type"] != tournament.participant_type:
                if await self.registry.count_participants(tournament_id) > 0:
                    raise InvalidStateError(
                        "Participant type cannot change once participants are entered",
                        {"tournament_id": tournament_id},
                    )
            if "max_participants" in changes:
                current = await self.registry.count_participants(tournament_id)
                if changes["max_participants"] < current:
                    raise InvalidStateError(
                        f"Tournament already has {current} participants",
                        {"current": current, "max_participants": changes["max_participants"]},
                    )

            requeue = (
                changes.get("question_bank_id", tournament.question_bank_id) != tournament.question_bank_id
                or changes.get("questions_per_match", tournament.questions_per_match) != tournament.questions_per_match
            )
            for name, value in changes.items():
                setattr(tournament, name, value)
            if requeue:
                tournament.question_ids = await self._pick_questions(
                    tournament.classroom_id, tournament.question_bank_id, tournament.questions_per_match, True
                )
            tournament.updated_at = self.clock()
            return tournament

        tournament = await run_serialized(self.db, operation, key=tournament_key(tournament_id))
        logger.info(f"Tournament {tournament_id} updated: {sorted(changes)}")
        return tournament

    async def delete(self, tournament_id: int) -> None:
        """Remove a DRAFT or CANCELLED tournament with everything it owns."""
        async def operation():
            tournament = await self._load_tournament(tournament_id)
            if tournament.status not in (TournamentStatus.DRAFT, TournamentStatus.CANCELLED):
                raise InvalidStateError(
                    f"Only DRAFT or CANCELLED tournaments can be deleted (status: {tournament.status.value})",
                    {"tournament_id": tournament_id, "status": tournament.status.value},
                )
            match_ids = select(TournamentMatch.id).where(TournamentMatch.tournament_id == tournament_id)
            await self.db.execute(delete(TournamentAnswer).where(TournamentAnswer.match_id.in_(match_ids)))
            await self.db.execute(
                update(TournamentMatch)
                .where(TournamentMatch.tournament_id == tournament_id)
                .values(next_match_id=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(delete(TournamentMatch).where(TournamentMatch.tournament_id == tournament_id))
            await self.db.execute(
                delete(TournamentParticipant).where(TournamentParticipant.tournament_id == tournament_id)
            )
            await self.db.execute(delete(Tournament).where(Tournament.id == tournament_id))
            self.db.expunge(tournament)

        await run_serialized(self.db, operation, key=tournament_key(tournament_id))
        logger.info(f"Tournament {tournament_id} deleted")

    # =========================================================================
    # Lifecycle: start
    # =========================================================================

    async def build_and_start(self, tournament_id: int) -> Tournament:
        """
        Seed the participants, persist every match of the bracket and open
        round one.

        Raises:
            InvalidStateError: tournament is not DRAFT
            InsufficientParticipantsError: fewer than two participants
        """
        async def operation():
            self.effects.clear()
            tournament = await self._load_tournament(tournament_id)
            self._require_status(tournament, TournamentStatus.DRAFT, "start")

            participants = await self.registry.assign_seeds(tournament_id)
            if len(participants) < 2:
                raise InsufficientParticipantsError(len(participants))

            plan = build_bracket(tournament.type, [p.id for p in participants])
            now = self.clock()
            rows = {}
            for planned in plan.matches:
                row = TournamentMatch(
                    tournament_id=tournament_id,
                    round_number=planned.round_number,
                    slot_index=planned.slot_index,
                    bracket_position=planned.bracket_position,
                    participant_a_id=planned.participant_a,
                    participant_b_id=planned.participant_b,
                    status=planned.status,
                    is_bye=planned.is_bye,
                    winner_id=planned.winner,
                    resolution=MatchResolution.BYE if planned.is_bye else None,
                    completed_at=now if planned.is_bye else None,
                    next_match_slot=planned.next_slot,
                    winner_propagated=planned.winner_propagated,
                    created_at=now,
                )
                self.db.add(row)
                rows[planned.key] = row
            await self.db.flush()

            for planned in plan.matches:
                if planned.next_key is not None:
                    rows[planned.key].next_match_id = rows[planned.next_key].id

            tournament.status = TournamentStatus.IN_PROGRESS
            tournament.total_rounds = plan.total_rounds
            tournament.started_at = now
            tournament.updated_at = now
            return tournament, plan

        tournament, plan = await run_serialized(self.db, operation, key=tournament_key(tournament_id))
        logger.info(
            f"Tournament {tournament_id} started: {plan.participant_count} participants, "
            f"{len(plan.matches)} matches over {plan.total_rounds} rounds, {plan.bye_count} byes"
        )
        return tournament

    # =========================================================================
    # Lifecycle: close
    # =========================================================================

    async def cancel(self, tournament_id: int) -> Tournament:
        """
        Cancel from any status but COMPLETED. Open matches are closed with no
        winner and nothing propagates.
        """
        async def operation():
            self.effects.clear()
            tournament = await self._load_tournament(tournament_id)
            if tournament.status == TournamentStatus.COMPLETED:
                raise InvalidStateError(
                    f"Tournament {tournament_id} is already completed",
                    {"tournament_id": tournament_id, "status": tournament.status.value},
                )
            if tournament.status == TournamentStatus.CANCELLED:
                return tournament, []

            result = await self.db.execute(
                select(TournamentMatch)
                .where(
                    TournamentMatch.tournament_id == tournament_id,
                    TournamentMatch.status != MatchStatus.COMPLETED,
                )
                .execution_options(populate_existing=True)
            )
            now = self.clock()
            open_matches = result.scalars().all()
            for match in open_matches:
                match.status = MatchStatus.COMPLETED
                match.is_cancelled = True
                match.winner_id = None
                match.resolution = MatchResolution.CANCELLED
                match.needs_manual_resolution = False
                match.question_started_at = None
                match.completed_at = now

            tournament.status = TournamentStatus.CANCELLED
            tournament.cancelled_at = now
            tournament.updated_at = now
            return tournament, [match.id for match in open_matches]

        tournament, closed = await run_serialized(self.db, operation, key=tournament_key(tournament_id))
        for match_id in closed:
            release_lock(match_key(match_id))
        logger.info(f"Tournament {tournament_id} cancelled ({len(closed)} open matches closed)")
        return tournament

    async def replay_pending_propagation(self) -> Dict[str, int]:
        """
        Recovery pass: propagate completed winners that never reached their
        successor, then finalize in-progress tournaments whose play is over.
        Safe to run repeatedly.
        """
        result = await self.db.execute(
            select(TournamentMatch.id)
            .join(Tournament, Tournament.id == TournamentMatch.tournament_id)
            .where(
                TournamentMatch.status == MatchStatus.COMPLETED,
                TournamentMatch.winner_propagated.is_(False),
                TournamentMatch.next_match_id.isnot(None),
                TournamentMatch.is_cancelled.is_(False),
                Tournament.status == TournamentStatus.IN_PROGRESS,
            )
            .order_by(TournamentMatch.round_number, TournamentMatch.slot_index)
        )
        pending = list(result.scalars().all())

        propagated = 0
        for match_id in pending:
            async def operation(match_id=match_id):
                self.effects.clear()
                match = await self.matches.get_match(match_id)
                if match.winner_propagated:
                    return False
                tournament = await self._load_tournament(match.tournament_id)
                if tournament.is_closed:
                    return False
                auto_completed = await self._propagate(match)
                await self._finalize_if_done(tournament, [match] + auto_completed)
                return True

            if await run_serialized(self.db, operation, key=match_key(match_id)):
                propagated += 1
            await self.effects.dispatch(self.db)

        finalized = 0
        result = await self.db.execute(
            select(Tournament.id).where(Tournament.status == TournamentStatus.IN_PROGRESS)
        )
        for tournament_id in list(result.scalars().all()):
            async def operation(tournament_id=tournament_id):
                self.effects.clear()
                tournament = await self._load_tournament(tournament_id)
                if tournament.status != TournamentStatus.IN_PROGRESS:
                    return False
                return await self._finalize_if_done(tournament, None)

            if await run_serialized(self.db, operation, key=tournament_key(tournament_id)):
                finalized += 1
            await self.effects.dispatch(self.db)

        if propagated or finalized:
            logger.warning(f"Recovery replayed {propagated} propagations and finalized {finalized} tournaments")
        else:
            logger.info("Recovery found nothing to replay")
        return {"propagated": propagated, "finalized": finalized}

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_tournament(self, tournament_id: int) -> Dict[str, Any]:
        """Tournament with its participants and bracket grouped by round."""
        tournament = await self._load_tournament(tournament_id)
        participants = await self.registry.list_participants(tournament_id)

        result = await self.db.execute(
            select(TournamentMatch)
            .where(TournamentMatch.tournament_id == tournament_id)
            .order_by(TournamentMatch.round_number, TournamentMatch.slot_index)
            .execution_options(populate_existing=True)
        )
        rounds: Dict[int, List[Dict[str, Any]]] = {}
        for match in result.scalars().all():
            rounds.setdefault(match.round_number, []).append(match.to_dict())

        view = tournament.to_dict()
        view["question_ids"] = list(tournament.question_ids or [])
        view["participants"] = [p.to_dict() for p in participants]
        view["rounds"] = [
            {"round_number": number, "matches": matches}
            for number, matches in sorted(rounds.items())
        ]
        return view

    async def list_by_classroom(self, classroom_id: int) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(Tournament, func.count(TournamentParticipant.id))
            .outerjoin(TournamentParticipant, TournamentParticipant.tournament_id == Tournament.id)
            .where(Tournament.classroom_id == classroom_id)
            .group_by(Tournament.id)
            .order_by(Tournament.created_at.desc(), Tournament.id.desc())
        )
        tournaments = []
        for tournament, participant_count in result.all():
            item = tournament.to_dict()
            item["participant_count"] = participant_count
            tournaments.append(item)
        return tournaments

    # =========================================================================
    # Completion handling (runs inside the match transaction)
    # =========================================================================

    async def _on_match_completed(self, match: TournamentMatch, tournament: Tournament) -> None:
        await self.db.flush()
        loser_id = match.loser_id()
        eliminating = tournament.type == TournamentType.SINGLE_ELIMINATION

        await self.db.execute(
            update(TournamentParticipant)
            .where(TournamentParticipant.id == match.winner_id)
            .values(matches_won=TournamentParticipant.matches_won + 1)
            .execution_options(synchronize_session=False)
        )
        if loser_id is not None:
            values = {"matches_lost": TournamentParticipant.matches_lost + 1}
            if eliminating:
                values["is_active"] = False
                values["eliminated_in_round"] = match.round_number
            await self.db.execute(
                update(TournamentParticipant)
                .where(TournamentParticipant.id == loser_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

        if not match.is_bye:
            self.effects.award(
                match.winner_id,
                tournament.points_per_win,
                f"{MATCH_WIN_REASON}:{tournament.id}:{match.bracket_position}",
            )

        auto_completed = await self._propagate(match)
        await self._finalize_if_done(tournament, [match] + auto_completed)

    async def _propagate(self, match: TournamentMatch) -> List[TournamentMatch]:
        """
        Place winners into successor slots. Returns successors that resolved
        as byes on the way (their winners are pushed forward as well).
        """
        auto_completed = []
        worklist = [match]
        while worklist:
            current = worklist.pop(0)
            if current.winner_propagated or current.is_cancelled or current.next_match_id is None:
                continue

            await self.db.flush()
            result = await self.db.execute(
                select(TournamentMatch)
                .where(TournamentMatch.id == current.next_match_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            successor = result.scalar_one()

            if current.winner_id is not None:
                slot = "participant_a_id" if current.next_match_slot == "A" else "participant_b_id"
                occupant = getattr(successor, slot)
                if occupant is None:
                    setattr(successor, slot, current.winner_id)
                elif occupant != current.winner_id:
                    raise InvalidStateError(
                        f"Slot {current.next_match_slot} of match {successor.id} already holds participant {occupant}",
                        {"match_id": successor.id, "slot": current.next_match_slot},
                    )
            current.winner_propagated = True
            await self.db.flush()

            if successor.status != MatchStatus.PENDING:
                continue
            if successor.participant_a_id is not None and successor.participant_b_id is not None:
                successor.status = MatchStatus.WAITING_PARTICIPANTS
                logger.info(
                    f"Match {successor.id} ({successor.bracket_position}) ready: "
                    f"{successor.participant_a_id} vs {successor.participant_b_id}"
                )
            elif await self._feeders_resolved(successor.id):
                entrants = successor.participant_ids
                successor.participant_a_id = entrants[0] if entrants else None
                successor.participant_b_id = None
                successor.is_bye = True
                successor.status = MatchStatus.COMPLETED
                successor.winner_id = entrants[0] if entrants else None
                successor.resolution = MatchResolution.BYE
                successor.completed_at = self.clock()
                auto_completed.append(successor)
                worklist.append(successor)
        return auto_completed

    async def _feeders_resolved(self, match_id: int) -> bool:
        result = await self.db.execute(
            select(TournamentMatch.status, TournamentMatch.winner_propagated)
            .where(TournamentMatch.next_match_id == match_id)
        )
        return all(
            status == MatchStatus.COMPLETED and propagated
            for status, propagated in result.all()
        )

    async def _finalize_if_done(
        self, tournament: Tournament, completed: Optional[List[TournamentMatch]]
    ) -> bool:
        if tournament.status != TournamentStatus.IN_PROGRESS:
            return False
        await self.db.flush()

        if tournament.type == TournamentType.ROUND_ROBIN:
            result = await self.db.execute(
                select(func.count(TournamentMatch.id)).where(
                    TournamentMatch.tournament_id == tournament.id,
                    TournamentMatch.status != MatchStatus.COMPLETED,
                )
            )
            if result.scalar_one() > 0:
                return False
            await self._finalize_round_robin(tournament)
            return True

        final = None
        if completed is not None:
            final = next((m for m in completed if m.next_match_id is None and m.status == MatchStatus.COMPLETED), None)
        else:
            result = await self.db.execute(
                select(TournamentMatch).where(
                    TournamentMatch.tournament_id == tournament.id,
                    TournamentMatch.next_match_id.is_(None),
                    TournamentMatch.status == MatchStatus.COMPLETED,
                    TournamentMatch.is_cancelled.is_(False),
                )
            )
            final = result.scalars().first()
        if final is None or final.winner_id is None:
            return False
        await self._finalize_elimination(tournament, final)
        return True

    async def _finalize_elimination(self, tournament: Tournament, final: TournamentMatch) -> None:
        participants = {p.id: p for p in await self.registry.list_participants(tournament.id)}
        champion_id = final.winner_id
        runner_up_id = final.loser_id()

        third_place_id = None
        if tournament.total_rounds and tournament.total_rounds > 1:
            result = await self.db.execute(
                select(TournamentMatch).where(
                    TournamentMatch.tournament_id == tournament.id,
                    TournamentMatch.round_number == tournament.total_rounds - 1,
                    TournamentMatch.status == MatchStatus.COMPLETED,
                    TournamentMatch.is_bye.is_(False),
                )
            )
            semifinal_losers = [
                participants[loser] for loser in (m.loser_id() for m in result.scalars().all())
                if loser is not None and loser in participants
            ]
            if semifinal_losers:
                semifinal_losers.sort(key=lambda p: (-p.questions_correct, p.seed or 0))
                third_place_id = semifinal_losers[0].id

        placements = [champion_id, runner_up_id, third_place_id]
        for position, participant_id in enumerate(placements, start=1):
            if participant_id is not None and participant_id in participants:
                participants[participant_id].final_position = position

        await self._close(tournament, placements, list(participants.values()))

    async def _finalize_round_robin(self, tournament: Tournament) -> None:
        standings = await self.registry.list_participants(tournament.id)
        standings.sort(key=lambda p: (-p.matches_won, -p.questions_correct, p.seed or 0))
        for position, participant in enumerate(standings, start=1):
            participant.final_position = position
        placements = [p.id for p in standings[:3]]
        placements += [None] * (3 - len(placements))
        await self._close(tournament, placements, standings)

    async def _close(
        self,
        tournament: Tournament,
        placements: List[Optional[int]],
        participants: List[TournamentParticipant],
    ) -> None:
        now = self.clock()
        tournament.champion_id, tournament.runner_up_id, tournament.third_place_id = placements
        tournament.status = TournamentStatus.COMPLETED
        tournament.completed_at = now
        tournament.updated_at = now

        rewards = {
            1: tournament.reward_points_first,
            2: tournament.reward_points_second,
            3: tournament.reward_points_third,
        }
        for participant in participants:
            position = placements.index(participant.id) + 1 if participant.id in placements else None
            if position is not None:
                points = rewards[position]
                self.effects.award(participant.id, points, f"{PLACEMENT_REASON}:{tournament.id}:{position}")
                title = PLACEMENT_TITLES[position]
                message = f"You placed #{position} in the tournament \"{tournament.name}\". +{points} points"
            else:
                points = tournament.reward_points_participation
                self.effects.award(participant.id, points, f"{PARTICIPATION_REASON}:{tournament.id}")
                title = "🏆 Tournament finished"
                message = f"You took part in the tournament \"{tournament.name}\". +{points} points"

            event = {
                "type": "TOURNAMENT_FINISHED",
                "title": title,
                "message": message,
                "tournament_id": tournament.id,
                "participant_id": participant.id,
                "position": position,
                "points": points,
            }
            for user_id in await self._user_ids_for(participant):
                self.effects.notify(user_id, event)

        logger.info(
            f"Tournament {tournament.id} completed: champion {placements[0]}, "
            f"runner-up {placements[1]}, third {placements[2]}"
        )

    async def _user_ids_for(self, participant: TournamentParticipant) -> List[int]:
        if participant.student_profile_id is not None:
            result = await self.db.execute(
                select(StudentProfile.user_id).where(StudentProfile.id == participant.student_profile_id)
            )
        else:
            result = await self.db.execute(
                select(StudentProfile.user_id).where(
                    StudentProfile.team_id == participant.team_id,
                    StudentProfile.is_active.is_(True),
                )
            )
        return [user_id for user_id in result.scalars().all() if user_id is not None]

    # =========================================================================
    # Helpers
    # =========================================================================

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

    def _require_status(self, tournament: Tournament, status: TournamentStatus, action: str) -> None:
        if tournament.status != status:
            raise InvalidStateError(
                f"Cannot {action} tournament {tournament.id}: status is {tournament.status.value}, "
                f"expected {status.value}",
                {"tournament_id": tournament.id, "status": tournament.status.value},
            )

    async def _pick_questions(
        self, classroom_id: int, bank_id: int, count: int, shuffle: bool
    ) -> List[int]:
        bank = await self.questions.get_bank(bank_id)
        if bank is None:
            raise NotFoundError("QuestionBank", bank_id)
        if bank.classroom_id is not None and bank.classroom_id != classroom_id:
            raise IncompatibleConfigError(
                f"Question bank {bank_id} belongs to another classroom",
                {"question_bank_id": bank_id, "classroom_id": classroom_id},
            )
        if bank.question_count < count:
            raise IncompatibleConfigError(
                f"Question bank {bank_id} has {bank.question_count} questions, {count} needed per match",
                {"question_bank_id": bank_id, "available": bank.question_count, "required": count},
            )

        questions = await self.questions.get_questions(bank_id, bank.question_count)
        chosen = self.rng.sample(questions, count) if shuffle else questions[:count]
        return [q.id for q in chosen]
