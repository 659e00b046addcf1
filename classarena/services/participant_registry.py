"""
Participant Registry

Manages the competitors entered into a DRAFT tournament. Roster writes for
one tournament are serialized on the tournament lock so capacity checks and
duplicate checks cannot interleave.
"""
import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from classarena.exceptions import (
    DuplicateParticipantError,
    InvalidParticipantError,
    InvalidStateError,
    NotFoundError,
    TournamentFullError,
    TypeMismatchError,
)
from classarena.orm.classroom import StudentProfile, Team
from classarena.orm.tournament import (
    ParticipantType,
    Tournament,
    TournamentParticipant,
    TournamentStatus,
)
from classarena.services.concurrency import run_serialized, tournament_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParticipantEntity:
    """A student profile or a team to enter into a tournament."""
    kind: ParticipantType
    entity_id: int

    @classmethod
    def student(cls, student_profile_id: int) -> "ParticipantEntity":
        return cls(ParticipantType.INDIVIDUAL, student_profile_id)

    @classmethod
    def team(cls, team_id: int) -> "ParticipantEntity":
        return cls(ParticipantType.TEAM, team_id)


class ParticipantRegistry:

    def __init__(self, db: AsyncSession, rng: Optional[random.Random] = None):
        self.db = db
        self.rng = rng or random.Random()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list_participants(self, tournament_id: int) -> List[TournamentParticipant]:
        """Participants by seed; unseeded entries last, in join order."""
        # Reloading overwrites in-memory state, so push pending changes first
        await self.db.flush()
        result = await self.db.execute(
            select(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament_id)
            .order_by(
                TournamentParticipant.seed.is_(None),
                TournamentParticipant.seed.asc(),
                TournamentParticipant.joined_at.asc(),
                TournamentParticipant.id.asc(),
            )
            .execution_options(populate_existing=True)
        )
        return list(result.unique().scalars().all())

    async def count_participants(self, tournament_id: int) -> int:
        result = await self.db.execute(
            select(func.count(TournamentParticipant.id))
            .where(TournamentParticipant.tournament_id == tournament_id)
        )
        return result.scalar_one()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def add_participant(self, tournament_id: int, entity: ParticipantEntity) -> TournamentParticipant:
        """
        Enter one student or team.

        Raises:
            NotFoundError, InvalidStateError, TypeMismatchError,
            InvalidParticipantError, DuplicateParticipantError, TournamentFullError
        """
        async def operation():
            tournament = await self._load_draft(tournament_id)
            await self._validate_entity(tournament, entity)
            await self._ensure_not_entered(tournament_id, [entity])
            await self._ensure_capacity(tournament, 1)
            participant = self._new_participant(tournament_id, entity)
            self.db.add(participant)
            await self._flush_entries()
            return participant

        participant = await run_serialized(self.db, operation, key=tournament_key(tournament_id))
        await self.db.refresh(participant, ["student", "team"])
        logger.info(
            f"Participant {participant.id} ({entity.kind.value} {entity.entity_id}) "
            f"added to tournament {tournament_id}"
        )
        return participant

    async def add_many(
        self, tournament_id: int, entities: Sequence[ParticipantEntity]
    ) -> List[TournamentParticipant]:
        """Enter several entities atomically: every one is validated before any insert."""
        async def operation():
            tournament = await self._load_draft(tournament_id)
            if not entities:
                return []
            seen = set()
            for entity in entities:
                if entity in seen:
                    raise DuplicateParticipantError(
                        f"{entity.kind.value} {entity.entity_id} appears twice in the batch",
                        {"entity_id": entity.entity_id},
                    )
                seen.add(entity)
                await self._validate_entity(tournament, entity)
            await self._ensure_not_entered(tournament_id, entities)
            await self._ensure_capacity(tournament, len(entities))

            participants = [self._new_participant(tournament_id, e) for e in entities]
            self.db.add_all(participants)
            await self._flush_entries()
            return participants

        participants = await run_serialized(self.db, operation, key=tournament_key(tournament_id))
        for participant in participants:
            await self.db.refresh(participant, ["student", "team"])
        logger.info(f"Added {len(participants)} participants to tournament {tournament_id}")
        return participants

    async def remove_participant(self, tournament_id: int, participant_id: int) -> None:
        async def operation():
            await self._load_draft(tournament_id)
            participant = await self.db.get(TournamentParticipant, participant_id)
            if participant is None or participant.tournament_id != tournament_id:
                raise NotFoundError("Participant", participant_id)
            removed_seed = participant.seed
            await self.db.delete(participant)
            await self.db.flush()

            # Keep seeds contiguous after a seeded entry leaves
            if removed_seed is not None:
                for other in await self.list_participants(tournament_id):
                    if other.seed is not None and other.seed > removed_seed:
                        other.seed -= 1

        await run_serialized(self.db, operation, key=tournament_key(tournament_id))
        logger.info(f"Participant {participant_id} removed from tournament {tournament_id}")

    async def shuffle(
        self, tournament_id: int, rng: Optional[random.Random] = None
    ) -> List[TournamentParticipant]:
        """Assign a random permutation of seeds 1..N. Repeatable while DRAFT."""
        rng = rng or self.rng

        async def operation():
            await self._load_draft(tournament_id)
            participants = await self.list_participants(tournament_id)
            seeds = list(range(1, len(participants) + 1))
            rng.shuffle(seeds)
            for participant, seed in zip(participants, seeds):
                participant.seed = seed
            return sorted(participants, key=lambda p: p.seed)

        participants = await run_serialized(self.db, operation, key=tournament_key(tournament_id))
        logger.info(f"Tournament {tournament_id} reseeded ({len(participants)} participants)")
        return participants

    async def assign_seeds(self, tournament_id: int) -> List[TournamentParticipant]:
        """Freeze the current order as seeds 1..N. Caller owns the transaction."""
        participants = await self.list_participants(tournament_id)
        for position, participant in enumerate(participants, start=1):
            participant.seed = position
        return participants

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def _load_draft(self, tournament_id: int) -> Tournament:
        result = await self.db.execute(
            select(Tournament)
            .where(Tournament.id == tournament_id)
            .execution_options(populate_existing=True)
        )
        tournament = result.scalar_one_or_none()
        if tournament is None:
            raise NotFoundError("Tournament", tournament_id)
        if tournament.status != TournamentStatus.DRAFT:
            raise InvalidStateError(
                f"Participants can only change while the tournament is DRAFT (status: {tournament.status.value})",
                {"tournament_id": tournament_id, "status": tournament.status.value},
            )
        return tournament

    async def _validate_entity(self, tournament: Tournament, entity: ParticipantEntity) -> None:
        if entity.kind != tournament.participant_type:
            raise TypeMismatchError(
                f"Tournament {tournament.id} takes {tournament.participant_type.value} participants, "
                f"got {entity.kind.value}",
                {"expected": tournament.participant_type.value, "received": entity.kind.value},
            )

        if entity.kind == ParticipantType.INDIVIDUAL:
            student = await self.db.get(StudentProfile, entity.entity_id)
            if student is None or student.classroom_id != tournament.classroom_id:
                raise InvalidParticipantError(
                    f"Student {entity.entity_id} is not part of classroom {tournament.classroom_id}",
                    {"student_profile_id": entity.entity_id},
                )
            if not student.is_active or student.is_demo:
                raise InvalidParticipantError(
                    f"Student {entity.entity_id} is inactive or a demo account",
                    {"student_profile_id": entity.entity_id},
                )
        else:
            team = await self.db.get(Team, entity.entity_id)
            if team is None or team.classroom_id != tournament.classroom_id:
                raise InvalidParticipantError(
                    f"Team {entity.entity_id} is not part of classroom {tournament.classroom_id}",
                    {"team_id": entity.entity_id},
                )

    async def _ensure_not_entered(self, tournament_id: int, entities: Sequence[ParticipantEntity]) -> None:
        student_ids = [e.entity_id for e in entities if e.kind == ParticipantType.INDIVIDUAL]
        team_ids = [e.entity_id for e in entities if e.kind == ParticipantType.TEAM]
        conditions = []
        if student_ids:
            conditions.append(TournamentParticipant.student_profile_id.in_(student_ids))
        if team_ids:
            conditions.append(TournamentParticipant.team_id.in_(team_ids))

        for condition in conditions:
            result = await self.db.execute(
                select(TournamentParticipant.id, TournamentParticipant.student_profile_id, TournamentParticipant.team_id)
                .where(TournamentParticipant.tournament_id == tournament_id, condition)
            )
            existing = result.first()
            if existing is not None:
                entity_id = existing.student_profile_id or existing.team_id
                raise DuplicateParticipantError(
                    f"Entity {entity_id} is already entered in tournament {tournament_id}",
                    {"entity_id": entity_id, "participant_id": existing.id},
                )

    async def _ensure_capacity(self, tournament: Tournament, adding: int) -> None:
        current = await self.count_participants(tournament.id)
        if current + adding > tournament.max_participants:
            raise TournamentFullError(
                f"Tournament {tournament.id} allows {tournament.max_participants} participants "
                f"({current} entered, {adding} requested)",
                {"max_participants": tournament.max_participants, "current": current},
            )

    def _new_participant(self, tournament_id: int, entity: ParticipantEntity) -> TournamentParticipant:
        return TournamentParticipant(
            tournament_id=tournament_id,
            student_profile_id=entity.entity_id if entity.kind == ParticipantType.INDIVIDUAL else None,
            team_id=entity.entity_id if entity.kind == ParticipantType.TEAM else None,
            seed=None,
            is_active=True,
        )

    async def _flush_entries(self) -> None:
        # The unique constraints catch entries committed by another process
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise DuplicateParticipantError(
                "Participant is already entered in this tournament",
                {"reason": str(e.orig)},
            )
