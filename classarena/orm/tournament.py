"""
Tournament ORM Models

Knowledge-competition tournaments run inside a classroom:
- Tournament: configuration + lifecycle
- TournamentParticipant: a student or a team entered into a tournament
- TournamentMatch: one node of the bracket, linked to its successor
- TournamentAnswer: append-only answer log, one row per (match, participant, question)
"""
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, ForeignKey,
    Index, UniqueConstraint, CheckConstraint, Enum
)
from sqlalchemy.orm import relationship

from classarena.orm.base import Base, JSONColumn, iso


# =============================================================================
# Enums
# =============================================================================

class TournamentType(PyEnum):
    SINGLE_ELIMINATION = "SINGLE_ELIMINATION"
    DOUBLE_ELIMINATION = "DOUBLE_ELIMINATION"
    ROUND_ROBIN = "ROUND_ROBIN"


class TournamentStatus(PyEnum):
    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ParticipantType(PyEnum):
    INDIVIDUAL = "INDIVIDUAL"
    TEAM = "TEAM"


class MatchStatus(PyEnum):
    PENDING = "PENDING"
    WAITING_PARTICIPANTS = "WAITING_PARTICIPANTS"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class TieBreakMode(PyEnum):
    COIN_FLIP = "COIN_FLIP"
    MANUAL = "MANUAL"


class MatchResolution(PyEnum):
    SCORE = "SCORE"
    ELAPSED_TIME = "ELAPSED_TIME"
    COIN_FLIP = "COIN_FLIP"
    MANUAL = "MANUAL"
    BYE = "BYE"
    CANCELLED = "CANCELLED"


TERMINAL_TOURNAMENT_STATUSES = (TournamentStatus.COMPLETED, TournamentStatus.CANCELLED)


# =============================================================================
# Model 1: Tournament
# =============================================================================

class Tournament(Base):
    __tablename__ = "tournaments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    classroom_id = Column(Integer, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    icon = Column(String(16), nullable=False, default="🏆")

    type = Column(Enum(TournamentType, create_constraint=True), nullable=False)
    status = Column(
        Enum(TournamentStatus, create_constraint=True),
        nullable=False,
        default=TournamentStatus.DRAFT
    )
    participant_type = Column(Enum(ParticipantType, create_constraint=True), nullable=False)

    question_bank_id = Column(Integer, ForeignKey("question_banks.id", ondelete="RESTRICT"), nullable=False)
    # Fixed once at creation so every match serves the same order to both sides
    question_ids = Column(JSONColumn, nullable=False, default=list)

    time_per_question_seconds = Column(Integer, nullable=False, default=30)
    questions_per_match = Column(Integer, nullable=False, default=3)
    max_participants = Column(Integer, nullable=False, default=16)
    points_per_win = Column(Integer, nullable=False, default=100)
    tie_break_mode = Column(
        Enum(TieBreakMode, create_constraint=True),
        nullable=False,
        default=TieBreakMode.COIN_FLIP
    )

    reward_points_first = Column(Integer, nullable=False, default=100)
    reward_points_second = Column(Integer, nullable=False, default=50)
    reward_points_third = Column(Integer, nullable=False, default=25)
    reward_points_participation = Column(Integer, nullable=False, default=10)

    total_rounds = Column(Integer, nullable=True)
    champion_id = Column(Integer, nullable=True)
    runner_up_id = Column(Integer, nullable=True)
    third_place_id = Column(Integer, nullable=True)

    created_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    participants = relationship(
        "TournamentParticipant",
        back_populates="tournament",
        foreign_keys="TournamentParticipant.tournament_id",
        cascade="all, delete-orphan",
    )
    matches = relationship(
        "TournamentMatch",
        back_populates="tournament",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index('idx_tournaments_classroom', 'classroom_id', 'status'),
    )

    @property
    def is_closed(self) -> bool:
        return self.status in TERMINAL_TOURNAMENT_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "classroom_id": self.classroom_id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "type": self.type.value if self.type else None,
            "status": self.status.value if self.status else None,
            "participant_type": self.participant_type.value if self.participant_type else None,
            "question_bank_id": self.question_bank_id,
            "time_per_question_seconds": self.time_per_question_seconds,
            "questions_per_match": self.questions_per_match,
            "max_participants": self.max_participants,
            "points_per_win": self.points_per_win,
            "tie_break_mode": self.tie_break_mode.value if self.tie_break_mode else None,
            "reward_points_first": self.reward_points_first,
            "reward_points_second": self.reward_points_second,
            "reward_points_third": self.reward_points_third,
            "reward_points_participation": self.reward_points_participation,
            "total_rounds": self.total_rounds,
            "champion_id": self.champion_id,
            "runner_up_id": self.runner_up_id,
            "third_place_id": self.third_place_id,
            "created_at": iso(self.created_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "cancelled_at": iso(self.cancelled_at),
        }


# =============================================================================
# Model 2: TournamentParticipant
# =============================================================================

class TournamentParticipant(Base):
    __tablename__ = "tournament_participants"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tournament_id = Column(
        Integer,
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False
    )
    student_profile_id = Column(Integer, ForeignKey("student_profiles.id"), nullable=True)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    seed = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    matches_won = Column(Integer, nullable=False, default=0)
    matches_lost = Column(Integer, nullable=False, default=0)
    questions_correct = Column(Integer, nullable=False, default=0)
    questions_answered = Column(Integer, nullable=False, default=0)
    eliminated_in_round = Column(Integer, nullable=True)
    final_position = Column(Integer, nullable=True)

    joined_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    tournament = relationship("Tournament", back_populates="participants", foreign_keys=[tournament_id])
    student = relationship("StudentProfile", lazy="joined")
    team = relationship("Team", lazy="joined")

    __table_args__ = (
        UniqueConstraint('tournament_id', 'student_profile_id', name='uq_participant_student'),
        UniqueConstraint('tournament_id', 'team_id', name='uq_participant_team'),
        CheckConstraint(
            '(student_profile_id IS NULL) <> (team_id IS NULL)',
            name='ck_participant_single_entity'
        ),
        Index('idx_participants_tournament', 'tournament_id', 'seed'),
    )

    @property
    def entity_id(self) -> int:
        return self.student_profile_id if self.student_profile_id is not None else self.team_id

    @property
    def display_name(self) -> Optional[str]:
        if self.student is not None:
            return self.student.display_name
        if self.team is not None:
            return self.team.name
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tournament_id": self.tournament_id,
            "student_profile_id": self.student_profile_id,
            "team_id": self.team_id,
            "display_name": self.display_name,
            "seed": self.seed,
            "is_active": self.is_active,
            "matches_won": self.matches_won,
            "matches_lost": self.matches_lost,
            "questions_correct": self.questions_correct,
            "questions_answered": self.questions_answered,
            "eliminated_in_round": self.eliminated_in_round,
            "final_position": self.final_position,
            "joined_at": iso(self.joined_at),
        }


# =============================================================================
# Model 3: TournamentMatch
# =============================================================================

class TournamentMatch(Base):
    __tablename__ = "tournament_matches"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tournament_id = Column(
        Integer,
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False
    )
    round_number = Column(Integer, nullable=False)
    slot_index = Column(Integer, nullable=False)
    bracket_position = Column(String(20), nullable=False)

    participant_a_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)
    participant_b_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)
    status = Column(
        Enum(MatchStatus, create_constraint=True),
        nullable=False,
        default=MatchStatus.PENDING
    )

    current_question_index = Column(Integer, nullable=False, default=0)
    question_started_at = Column(DateTime, nullable=True)
    score_a = Column(Integer, nullable=False, default=0)
    score_b = Column(Integer, nullable=False, default=0)
    elapsed_a_ms = Column(Integer, nullable=False, default=0)
    elapsed_b_ms = Column(Integer, nullable=False, default=0)

    winner_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=True)
    resolution = Column(Enum(MatchResolution, create_constraint=True), nullable=True)
    needs_manual_resolution = Column(Boolean, nullable=False, default=False)
    is_bye = Column(Boolean, nullable=False, default=False)
    is_cancelled = Column(Boolean, nullable=False, default=False)

    # Successor link, fixed at bracket build time (NULL for the final)
    next_match_id = Column(Integer, ForeignKey("tournament_matches.id"), nullable=True)
    next_match_slot = Column(String(1), nullable=True)
    winner_propagated = Column(Boolean, nullable=False, default=False)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    version = Column(Integer, nullable=False, default=1)

    tournament = relationship("Tournament", back_populates="matches")
    answers = relationship(
        "TournamentAnswer",
        back_populates="match",
        order_by="TournamentAnswer.question_index",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint('tournament_id', 'round_number', 'slot_index', name='uq_match_bracket_slot'),
        CheckConstraint("next_match_slot IN ('A', 'B') OR next_match_slot IS NULL", name='ck_match_next_slot'),
        Index('idx_matches_tournament', 'tournament_id', 'round_number', 'slot_index'),
        Index('idx_matches_propagation', 'status', 'winner_propagated'),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def participant_ids(self):
        return [pid for pid in (self.participant_a_id, self.participant_b_id) if pid is not None]

    def has_participant(self, participant_id: int) -> bool:
        return participant_id is not None and participant_id in self.participant_ids

    def side_of(self, participant_id: int) -> Optional[str]:
        if participant_id is None:
            return None
        if participant_id == self.participant_a_id:
            return "A"
        if participant_id == self.participant_b_id:
            return "B"
        return None

    def loser_id(self) -> Optional[int]:
        if self.winner_id is None or self.is_bye:
            return None
        if self.winner_id == self.participant_a_id:
            return self.participant_b_id
        return self.participant_a_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tournament_id": self.tournament_id,
            "round_number": self.round_number,
            "slot_index": self.slot_index,
            "bracket_position": self.bracket_position,
            "participant_a_id": self.participant_a_id,
            "participant_b_id": self.participant_b_id,
            "status": self.status.value if self.status else None,
            "current_question_index": self.current_question_index,
            "question_started_at": iso(self.question_started_at),
            "score_a": self.score_a,
            "score_b": self.score_b,
            "elapsed_a_ms": self.elapsed_a_ms,
            "elapsed_b_ms": self.elapsed_b_ms,
            "winner_id": self.winner_id,
            "resolution": self.resolution.value if self.resolution else None,
            "needs_manual_resolution": self.needs_manual_resolution,
            "is_bye": self.is_bye,
            "is_cancelled": self.is_cancelled,
            "next_match_id": self.next_match_id,
            "next_match_slot": self.next_match_slot,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }


# =============================================================================
# Model 4: TournamentAnswer
# =============================================================================

class TournamentAnswer(Base):
    __tablename__ = "tournament_answers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    match_id = Column(
        Integer,
        ForeignKey("tournament_matches.id", ondelete="CASCADE"),
        nullable=False
    )
    participant_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=False)
    question_index = Column(Integer, nullable=False)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=True)
    content = Column(Text, nullable=True)
    is_correct = Column(Boolean, nullable=False, default=False)
    timed_out = Column(Boolean, nullable=False, default=False)
    elapsed_ms = Column(Integer, nullable=False, default=0)
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    match = relationship("TournamentMatch", back_populates="answers")

    __table_args__ = (
        UniqueConstraint('match_id', 'participant_id', 'question_index', name='uq_answer_once_per_question'),
        Index('idx_answers_match', 'match_id', 'question_index'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "match_id": self.match_id,
            "participant_id": self.participant_id,
            "question_index": self.question_index,
            "question_id": self.question_id,
            "content": self.content,
            "is_correct": self.is_correct,
            "timed_out": self.timed_out,
            "elapsed_ms": self.elapsed_ms,
            "submitted_at": iso(self.submitted_at),
        }
