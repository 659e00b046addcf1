"""
Bracket Builder Unit Tests

Pure planning: no database. Participant ids are plain ints ordered by seed.
"""
from itertools import combinations

import pytest

from classarena.exceptions import InsufficientParticipantsError, InvalidStateError
from classarena.orm.tournament import MatchStatus, TournamentType
from classarena.services.bracket_builder import (
    bracket_size,
    build_bracket,
    build_round_robin,
    build_single_elimination,
    round_count,
    round_label,
    seeding_order,
)


def ids(count: int):
    return list(range(101, 101 + count))


# ============================================================================
# Helpers
# ============================================================================

class TestHelpers:

    @pytest.mark.parametrize("count,size", [(2, 2), (3, 4), (4, 4), (5, 8), (8, 8), (9, 16), (16, 16)])
    def test_bracket_size_is_next_power_of_two(self, count, size):
        assert bracket_size(count) == size

    def test_round_count(self):
        assert round_count(2) == 1
        assert round_count(8) == 3
        assert round_count(32) == 5

    def test_seeding_order_for_eight(self):
        assert seeding_order(8) == [1, 8, 4, 5, 2, 7, 3, 6]

    def test_seeding_order_pairs_sum_to_size_plus_one(self):
        order = seeding_order(16)
        assert sorted(order) == list(range(1, 17))
        for i in range(0, 16, 2):
            assert order[i] + order[i + 1] == 17

    def test_round_labels(self):
        assert round_label(3, 3, 0) == "FINAL1"
        assert round_label(2, 3, 1) == "SF2"
        assert round_label(1, 3, 3) == "QF4"
        assert round_label(1, 4, 0) == "R1M1"


# ============================================================================
# Single elimination
# ============================================================================

class TestSingleElimination:

    def test_rejects_fewer_than_two(self):
        with pytest.raises(InsufficientParticipantsError):
            build_single_elimination(ids(1))
        with pytest.raises(InsufficientParticipantsError):
            build_single_elimination([])

    def test_two_participants_play_the_final(self):
        plan = build_single_elimination(ids(2))
        assert plan.total_rounds == 1
        assert len(plan.matches) == 1
        final = plan.matches[0]
        assert final.bracket_position == "FINAL1"
        assert final.status == MatchStatus.WAITING_PARTICIPANTS
        assert final.next_key is None

    def test_four_participants(self):
        participants = ids(4)
        plan = build_single_elimination(participants)

        assert plan.bracket_size == 4
        assert plan.total_rounds == 2
        assert plan.bye_count == 0
        assert len(plan.matches) == 3

        semis = plan.round(1)
        # Seed 1 meets seed 4, seed 2 meets seed 3
        assert (semis[0].participant_a, semis[0].participant_b) == (participants[0], participants[3])
        assert (semis[1].participant_a, semis[1].participant_b) == (participants[1], participants[2])
        assert [m.bracket_position for m in semis] == ["SF1", "SF2"]
        assert semis[0].next_key == (2, 0) and semis[0].next_slot == "A"
        assert semis[1].next_key == (2, 0) and semis[1].next_slot == "B"

        final = plan.get((2, 0))
        assert final.status == MatchStatus.PENDING
        assert final.participants == []

    def test_three_participants_top_seed_gets_the_bye(self):
        participants = ids(3)
        plan = build_single_elimination(participants)

        assert plan.bye_count == 1
        bye, real = plan.round(1)
        assert bye.is_bye
        assert bye.winner == participants[0]
        assert bye.status == MatchStatus.COMPLETED
        assert bye.winner_propagated
        assert (real.participant_a, real.participant_b) == (participants[1], participants[2])

        final = plan.get((2, 0))
        assert final.participant_a == participants[0]
        assert final.participant_b is None
        assert final.status == MatchStatus.PENDING

    def test_five_participants_byes_resolve_forward(self):
        participants = ids(5)
        plan = build_single_elimination(participants)

        assert plan.bracket_size == 8
        assert plan.total_rounds == 3
        assert plan.bye_count == 3
        first_round = plan.round(1)
        assert [m.is_bye for m in first_round] == [True, False, True, True]
        assert len(plan.playable()) == 2

        # Seeds 2 and 3 both advanced on byes and already face each other
        sf2 = plan.get((2, 1))
        assert (sf2.participant_a, sf2.participant_b) == (participants[1], participants[2])
        assert sf2.status == MatchStatus.WAITING_PARTICIPANTS
        assert not sf2.is_bye

        sf1 = plan.get((2, 0))
        assert sf1.participant_a == participants[0]
        assert sf1.participant_b is None
        assert sf1.status == MatchStatus.PENDING

    @pytest.mark.parametrize("count", range(2, 33))
    def test_no_first_round_match_is_empty(self, count):
        plan = build_single_elimination(ids(count))
        assert plan.bye_count == plan.bracket_size - count
        for match in plan.round(1):
            assert match.participant_a is not None
        assert sum(1 for m in plan.round(1) if m.is_bye) == plan.bye_count
        assert len(plan.matches) == plan.bracket_size - 1

    @pytest.mark.parametrize("count", [6, 7, 12, 13])
    def test_every_participant_appears_once_in_round_one(self, count):
        participants = ids(count)
        plan = build_single_elimination(participants)
        placed = [p for m in plan.round(1) for p in m.participants]
        assert sorted(placed) == participants


# ============================================================================
# Round robin
# ============================================================================

class TestRoundRobin:

    def test_four_participants_every_pair_once(self):
        participants = ids(4)
        plan = build_round_robin(participants)

        assert plan.total_rounds == 3
        assert len(plan.matches) == 6
        pairs = {frozenset(m.participants) for m in plan.matches}
        assert pairs == {frozenset(p) for p in combinations(participants, 2)}
        for round_number in range(1, 4):
            playing = [p for m in plan.round(round_number) for p in m.participants]
            assert sorted(playing) == participants

    def test_odd_field_sits_one_out_per_round(self):
        participants = ids(5)
        plan = build_round_robin(participants)

        assert plan.total_rounds == 5
        assert plan.bye_count == 1
        assert len(plan.matches) == 10
        sat_out = []
        for round_number in range(1, 6):
            playing = {p for m in plan.round(round_number) for p in m.participants}
            assert len(playing) == 4
            sat_out.extend(set(participants) - playing)
        assert sorted(sat_out) == participants

    def test_matches_are_all_playable_with_labels(self):
        plan = build_round_robin(ids(3))
        assert all(m.status == MatchStatus.WAITING_PARTICIPANTS for m in plan.matches)
        assert all(m.next_key is None for m in plan.matches)
        assert plan.round(1)[0].bracket_position == "J1M1"

    def test_rejects_single_participant(self):
        with pytest.raises(InsufficientParticipantsError):
            build_round_robin(ids(1))


# ============================================================================
# Dispatch
# ============================================================================

def test_build_bracket_dispatches_by_type():
    assert build_bracket(TournamentType.SINGLE_ELIMINATION, ids(4)).tournament_type == TournamentType.SINGLE_ELIMINATION
    assert build_bracket(TournamentType.ROUND_ROBIN, ids(4)).tournament_type == TournamentType.ROUND_ROBIN


def test_double_elimination_is_rejected():
    with pytest.raises(InvalidStateError):
        build_bracket(TournamentType.DOUBLE_ELIMINATION, ids(4))
