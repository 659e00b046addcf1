"""
Participant Registry Tests

Entering, removing and seeding participants of DRAFT tournaments against a
real (temporary SQLite) database.
"""
import random

import pytest

from classarena.exceptions import (
    DuplicateParticipantError,
    InvalidParticipantError,
    InvalidStateError,
    NotFoundError,
    TournamentFullError,
    TypeMismatchError,
)
from classarena.orm.tournament import ParticipantType
from classarena.services.participant_registry import ParticipantEntity


# ============================================================================
# Entering participants
# ============================================================================

class TestAddParticipant:

    async def test_adds_student_unseeded(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=0)

        participant = await orchestrator.registry.add_participant(
            tournament_id, ParticipantEntity.student(roster.student_ids[0])
        )

        assert participant.id is not None
        assert participant.seed is None
        assert participant.is_active
        assert participant.to_dict()["display_name"] == "Student 1"
        assert await orchestrator.registry.count_participants(tournament_id) == 1

    async def test_adds_team(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=0, participant_type=ParticipantType.TEAM)

        participant = await orchestrator.registry.add_participant(
            tournament_id, ParticipantEntity.team(roster.team_ids[1])
        )

        assert participant.team_id == roster.team_ids[1]
        assert participant.student_profile_id is None
        assert participant.display_name == "Owls"

    async def test_duplicate_is_rejected(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=2)

        with pytest.raises(DuplicateParticipantError):
            await orchestrator.registry.add_participant(
                tournament_id, ParticipantEntity.student(roster.student_ids[0])
            )
        assert await orchestrator.registry.count_participants(tournament_id) == 2

    async def test_team_in_individual_tournament_is_type_mismatch(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=0)

        with pytest.raises(TypeMismatchError):
            await orchestrator.registry.add_participant(tournament_id, ParticipantEntity.team(roster.team_ids[0]))

    async def test_student_in_team_tournament_is_type_mismatch(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=0, participant_type=ParticipantType.TEAM)

        with pytest.raises(TypeMismatchError):
            await orchestrator.registry.add_participant(
                tournament_id, ParticipantEntity.student(roster.student_ids[0])
            )

    @pytest.mark.parametrize("attribute", ["outsider_id", "demo_id", "inactive_id"])
    async def test_ineligible_students_are_rejected(self, orchestrator, roster, make_tournament, attribute):
        tournament_id, _ = await make_tournament(count=0)

        with pytest.raises(InvalidParticipantError):
            await orchestrator.registry.add_participant(
                tournament_id, ParticipantEntity.student(getattr(roster, attribute))
            )

    async def test_unknown_student_is_rejected(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=0)

        with pytest.raises(InvalidParticipantError):
            await orchestrator.registry.add_participant(tournament_id, ParticipantEntity.student(99999))

    async def test_capacity_is_enforced(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=2, max_participants=2)

        with pytest.raises(TournamentFullError):
            await orchestrator.registry.add_participant(
                tournament_id, ParticipantEntity.student(roster.student_ids[2])
            )

    async def test_unknown_tournament(self, orchestrator, roster):
        with pytest.raises(NotFoundError):
            await orchestrator.registry.add_participant(9999, ParticipantEntity.student(roster.student_ids[0]))

    async def test_roster_is_frozen_once_started(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=2)
        await orchestrator.build_and_start(tournament_id)

        with pytest.raises(InvalidStateError):
            await orchestrator.registry.add_participant(
                tournament_id, ParticipantEntity.student(roster.student_ids[5])
            )


# ============================================================================
# Bulk entry
# ============================================================================

class TestAddMany:

    async def test_one_bad_entity_rejects_the_batch(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=0)
        entities = [
            ParticipantEntity.student(roster.student_ids[0]),
            ParticipantEntity.student(roster.student_ids[1]),
            ParticipantEntity.student(roster.outsider_id),
        ]

        with pytest.raises(InvalidParticipantError):
            await orchestrator.registry.add_many(tournament_id, entities)
        assert await orchestrator.registry.count_participants(tournament_id) == 0

    async def test_repeated_entity_in_batch(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=0)
        entity = ParticipantEntity.student(roster.student_ids[0])

        with pytest.raises(DuplicateParticipantError):
            await orchestrator.registry.add_many(tournament_id, [entity, entity])
        assert await orchestrator.registry.count_participants(tournament_id) == 0

    async def test_batch_over_capacity(self, orchestrator, roster, make_tournament):
        tournament_id, _ = await make_tournament(count=0, max_participants=3)
        entities = [ParticipantEntity.student(s) for s in roster.student_ids[:4]]

        with pytest.raises(TournamentFullError):
            await orchestrator.registry.add_many(tournament_id, entities)
        assert await orchestrator.registry.count_participants(tournament_id) == 0

    async def test_empty_batch_is_a_no_op(self, orchestrator, make_tournament):
        tournament_id, _ = await make_tournament(count=0)
        assert await orchestrator.registry.add_many(tournament_id, []) == []

    async def test_empty_batch_still_checks_the_tournament(self, orchestrator, make_tournament, roster):
        with pytest.raises(NotFoundError):
            await orchestrator.registry.add_many(424242, [])

        tournament_id, _ = await make_tournament(count=2)
        await orchestrator.build_and_start(tournament_id)
        with pytest.raises(InvalidStateError):
            await orchestrator.registry.add_many(tournament_id, [])


# ============================================================================
# Removal and seeding
# ============================================================================

class TestSeeding:

    async def test_shuffle_assigns_a_permutation(self, orchestrator, make_tournament):
        tournament_id, participant_ids = await make_tournament(count=6)

        shuffled = await orchestrator.registry.shuffle(tournament_id, rng=random.Random(3))

        assert [p.seed for p in shuffled] == [1, 2, 3, 4, 5, 6]
        assert sorted(p.id for p in shuffled) == sorted(participant_ids)

    async def test_list_orders_by_seed(self, orchestrator, make_tournament):
        tournament_id, _ = await make_tournament(count=5)
        shuffled = await orchestrator.registry.shuffle(tournament_id, rng=random.Random(11))
        expected = [p.id for p in shuffled]

        listed = await orchestrator.registry.list_participants(tournament_id)

        assert [p.id for p in listed] == expected

    async def test_remove_compacts_seeds(self, orchestrator, make_tournament):
        tournament_id, _ = await make_tournament(count=4)
        shuffled = await orchestrator.registry.shuffle(tournament_id, rng=random.Random(5))
        second_seed = shuffled[1].id

        await orchestrator.registry.remove_participant(tournament_id, second_seed)

        remaining = await orchestrator.registry.list_participants(tournament_id)
        assert [p.seed for p in remaining] == [1, 2, 3]
        assert second_seed not in [p.id for p in remaining]

    async def test_remove_from_other_tournament_is_not_found(self, orchestrator, make_tournament):
        first_id, first_participants = await make_tournament(count=2)
        second_id, _ = await make_tournament(count=0, name="Other Cup")

        with pytest.raises(NotFoundError):
            await orchestrator.registry.remove_participant(second_id, first_participants[0])

    async def test_bracket_uses_join_order_without_shuffle(self, orchestrator, make_tournament, bracket):
        tournament_id, participant_ids = await make_tournament(count=4)

        await orchestrator.build_and_start(tournament_id)

        seeded = await orchestrator.registry.list_participants(tournament_id)
        assert [p.id for p in seeded] == participant_ids
        assert [p.seed for p in seeded] == [1, 2, 3, 4]
        matches = await bracket(tournament_id)
        assert {matches["SF1"].participant_a_id, matches["SF1"].participant_b_id} == {participant_ids[0], participant_ids[3]}
