"""
Bracket Builder

Pure derivation of a tournament's match tree from its seeded participants.
Nothing here touches the database; the orchestrator persists the plan.

- Single elimination: standard seeding (1 v N, mirrored recursively) so the
  top seed meets the lowest seed and byes go to the highest seeds first
- Round robin: circle method, one matchday per round
- Bye chains are resolved over a worklist, never recursively
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from classarena.exceptions import InsufficientParticipantsError, InvalidStateError
from classarena.orm.tournament import MatchStatus, TournamentType

MatchKey = Tuple[int, int]  # (round_number, slot_index)


# =============================================================================
# Plan types
# =============================================================================

@dataclass
class PlannedMatch:
    round_number: int
    slot_index: int
    bracket_position: str
    participant_a: Optional[int] = None
    participant_b: Optional[int] = None
    next_key: Optional[MatchKey] = None
    next_slot: Optional[str] = None
    is_bye: bool = False
    winner: Optional[int] = None
    winner_propagated: bool = False

    @property
    def key(self) -> MatchKey:
        return (self.round_number, self.slot_index)

    @property
    def participants(self) -> List[int]:
        return [p for p in (self.participant_a, self.participant_b) if p is not None]

    @property
    def status(self) -> MatchStatus:
        if self.is_bye:
            return MatchStatus.COMPLETED
        if self.participant_a is not None and self.participant_b is not None:
            return MatchStatus.WAITING_PARTICIPANTS
        return MatchStatus.PENDING


@dataclass
class BracketPlan:
    tournament_type: TournamentType
    participant_count: int
    bracket_size: int
    total_rounds: int
    bye_count: int
    matches: List[PlannedMatch]

    def get(self, key: MatchKey) -> Optional[PlannedMatch]:
        for match in self.matches:
            if match.key == key:
                return match
        return None

    def round(self, round_number: int) -> List[PlannedMatch]:
        return sorted(
            (m for m in self.matches if m.round_number == round_number),
            key=lambda m: m.slot_index,
        )

    def playable(self) -> List[PlannedMatch]:
        return [m for m in self.matches if m.status == MatchStatus.WAITING_PARTICIPANTS]


# =============================================================================
# Helper Functions
# =============================================================================

def bracket_size(participant_count: int) -> int:
    """Next power of two >= participant_count."""
    size = 1
    while size < participant_count:
        size *= 2
    return size


def round_count(size: int) -> int:
    """log2(size) for a power-of-two bracket."""
    rounds = 0
    while (1 << rounds) < size:
        rounds += 1
    return rounds


def seeding_order(size: int) -> List[int]:
    """
    Seed numbers in bracket slot order.

    Each seed s is paired with (n + 1 - s) and the pattern is mirrored as the
    bracket doubles, so for size 8: [1, 8, 4, 5, 2, 7, 3, 6].
    """
    order = [1]
    while len(order) < size:
        n = len(order) * 2
        order = [seed for s in order for seed in (s, n + 1 - s)]
    return order


def round_label(round_number: int, total_rounds: int, slot_index: int) -> str:
    remaining = total_rounds - round_number
    if remaining == 0:
        prefix = "FINAL"
    elif remaining == 1:
        prefix = "SF"
    elif remaining == 2:
        prefix = "QF"
    else:
        prefix = f"R{round_number}M"
    return f"{prefix}{slot_index + 1}"


# =============================================================================
# Single elimination
# =============================================================================

def build_single_elimination(participants_by_seed: Sequence[int]) -> BracketPlan:
    """
    Plan every match of a single-elimination bracket.

    Args:
        participants_by_seed: participant ids, index 0 holding seed 1

    Returns:
        BracketPlan with byes already resolved
    """
    count = len(participants_by_seed)
    if count < 2:
        raise InsufficientParticipantsError(count)

    size = bracket_size(count)
    total_rounds = round_count(size)
    order = seeding_order(size)

    def by_seed(seed: int) -> Optional[int]:
        return participants_by_seed[seed - 1] if seed <= count else None

    matches: List[PlannedMatch] = []
    for round_number in range(1, total_rounds + 1):
        slots = size >> round_number
        for slot_index in range(slots):
            match = PlannedMatch(
                round_number=round_number,
                slot_index=slot_index,
                bracket_position=round_label(round_number, total_rounds, slot_index),
            )
            if round_number < total_rounds:
                match.next_key = (round_number + 1, slot_index // 2)
                match.next_slot = "A" if slot_index % 2 == 0 else "B"
            if round_number == 1:
                a, b = by_seed(order[2 * slot_index]), by_seed(order[2 * slot_index + 1])
                if a is None:
                    a, b = b, a
                match.participant_a, match.participant_b = a, b
                if b is None:
                    match.is_bye = True
                    match.winner = a
            matches.append(match)

    plan = BracketPlan(
        tournament_type=TournamentType.SINGLE_ELIMINATION,
        participant_count=count,
        bracket_size=size,
        total_rounds=total_rounds,
        bye_count=size - count,
        matches=matches,
    )
    return resolve_byes(plan)


def resolve_byes(plan: BracketPlan) -> BracketPlan:
    """
    Push bye winners forward until every remaining match needs a real game.

    A successor whose feeders are both byes is itself decided at plan time:
    a bye if it received one participant, an empty match if it received none.
    """
    index: Dict[MatchKey, PlannedMatch] = {m.key: m for m in plan.matches}
    feeders: Dict[MatchKey, List[PlannedMatch]] = {}
    for match in plan.matches:
        if match.next_key is not None:
            feeders.setdefault(match.next_key, []).append(match)

    worklist = [m for m in plan.matches if m.is_bye]
    while worklist:
        match = worklist.pop(0)
        if match.winner_propagated or match.next_key is None:
            continue
        successor = index[match.next_key]
        if match.winner is not None:
            if match.next_slot == "A":
                successor.participant_a = match.winner
            else:
                successor.participant_b = match.winner
        match.winner_propagated = True

        if not all(f.is_bye and f.winner_propagated for f in feeders.get(successor.key, [])):
            continue
        entrants = successor.participants
        if len(entrants) == 1:
            successor.participant_a, successor.participant_b = entrants[0], None
            successor.is_bye = True
            successor.winner = entrants[0]
            worklist.append(successor)
        elif not entrants:
            successor.is_bye = True
            worklist.append(successor)
    return plan


# =============================================================================
# Round robin
# =============================================================================

def build_round_robin(participants_by_seed: Sequence[int]) -> BracketPlan:
    """
    Circle method: seed 1 stays fixed, everyone else rotates one place per
    round. An odd field gets a phantom entrant; whoever draws it sits out.
    """
    count = len(participants_by_seed)
    if count < 2:
        raise InsufficientParticipantsError(count)

    entrants: List[Optional[int]] = list(participants_by_seed)
    if len(entrants) % 2 == 1:
        entrants.append(None)
    n = len(entrants)
    fixed, rotating = entrants[0], entrants[1:]

    matches: List[PlannedMatch] = []
    for round_index in range(n - 1):
        current = [fixed] + rotating
        slot_index = 0
        for i in range(n // 2):
            a, b = current[i], current[n - 1 - i]
            if a is None or b is None:
                continue
            matches.append(PlannedMatch(
                round_number=round_index + 1,
                slot_index=slot_index,
                bracket_position=f"J{round_index + 1}M{slot_index + 1}",
                participant_a=a,
                participant_b=b,
            ))
            slot_index += 1
        rotating = [rotating[-1]] + rotating[:-1]

    return BracketPlan(
        tournament_type=TournamentType.ROUND_ROBIN,
        participant_count=count,
        bracket_size=count,
        total_rounds=n - 1,
        bye_count=n - count,
        matches=matches,
    )


def build_bracket(tournament_type: TournamentType, participants_by_seed: Sequence[int]) -> BracketPlan:
    if tournament_type == TournamentType.SINGLE_ELIMINATION:
        return build_single_elimination(participants_by_seed)
    if tournament_type == TournamentType.ROUND_ROBIN:
        return build_round_robin(participants_by_seed)
    raise InvalidStateError(
        f"{tournament_type.value} brackets are not supported",
        {"type": tournament_type.value},
    )
