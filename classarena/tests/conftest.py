"""
Shared fixtures: a throwaway SQLite database per test, a seeded classroom,
recording sinks and a controllable clock.
"""
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from classarena.orm import Base, Question, QuestionBank, QuestionType, StudentProfile, Team, User, UserRole
from classarena.orm.tournament import ParticipantType, TournamentMatch, TournamentType
from classarena.services.collaborators import NotificationSink, RewardSink
from classarena.services.concurrency import reset_locks
from classarena.services.participant_registry import ParticipantEntity
from classarena.services.tournament_orchestrator import TournamentConfig, TournamentOrchestrator

CLASSROOM_ID = 1
OTHER_CLASSROOM_ID = 2


# ============================================================================
# Test doubles
# ============================================================================

class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingRewardSink(RewardSink):
    def __init__(self):
        self.awards = []

    async def award_points(self, participant_id: int, amount: int, reason: str) -> None:
        self.awards.append((participant_id, amount, reason))

    def with_reason(self, prefix: str):
        return [a for a in self.awards if a[2].startswith(prefix)]


class RecordingNotificationSink(NotificationSink):
    def __init__(self):
        self.events = []

    async def notify(self, user_id: int, event: Dict[str, Any]) -> None:
        self.events.append((user_id, event))


@dataclass
class Roster:
    """Seeded ids. Plain ints survive the session expiring objects on rollback."""
    teacher_id: int
    student_ids: List[int]
    student_user_ids: List[int]
    team_ids: List[int]
    outsider_id: int
    demo_id: int
    inactive_id: int
    bank_id: int
    small_bank_id: int
    foreign_bank_id: int
    question_ids: List[int] = field(default_factory=list)


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_locks():
    reset_locks()
    yield
    reset_locks()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tournaments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ============================================================================
# Seed data
# ============================================================================

@pytest_asyncio.fixture
async def roster(db: AsyncSession) -> Roster:
    teacher = User(email="teacher@school.test", full_name="Ms. Rivera", role=UserRole.teacher)
    db.add(teacher)

    teams = [
        Team(classroom_id=CLASSROOM_ID, name="Dragons", color="red"),
        Team(classroom_id=CLASSROOM_ID, name="Owls", color="blue"),
        Team(classroom_id=CLASSROOM_ID, name="Foxes", color="orange"),
    ]
    db.add_all(teams)
    await db.flush()

    student_users = []
    students = []
    for i in range(8):
        user = User(email=f"student{i + 1}@school.test", full_name=f"Student {i + 1}", role=UserRole.student)
        db.add(user)
        await db.flush()
        student_users.append(user)
        students.append(StudentProfile(
            user_id=user.id,
            classroom_id=CLASSROOM_ID,
            display_name=f"Student {i + 1}",
            team_id=teams[i % len(teams)].id,
        ))
    db.add_all(students)

    outsider = StudentProfile(classroom_id=OTHER_CLASSROOM_ID, display_name="Visitor")
    demo = StudentProfile(classroom_id=CLASSROOM_ID, display_name="Demo Student", is_demo=True)
    inactive = StudentProfile(classroom_id=CLASSROOM_ID, display_name="Left School", is_active=False)
    db.add_all([outsider, demo, inactive])

    bank = QuestionBank(classroom_id=CLASSROOM_ID, name="Science quiz")
    small_bank = QuestionBank(classroom_id=CLASSROOM_ID, name="Tiny quiz")
    foreign_bank = QuestionBank(classroom_id=OTHER_CLASSROOM_ID, name="Someone else's quiz")
    db.add_all([bank, small_bank, foreign_bank])
    await db.flush()

    # Every answer key is "true", so "true" scores and "false" misses
    questions = [
        Question(
            bank_id=bank.id,
            position=i,
            question_type=QuestionType.TRUE_FALSE,
            question_text=f"Statement {i + 1} is true",
            correct_answer=True,
        )
        for i in range(5)
    ]
    db.add_all(questions)
    db.add(Question(
        bank_id=small_bank.id,
        position=0,
        question_type=QuestionType.TRUE_FALSE,
        question_text="Only question",
        correct_answer=True,
    ))
    for i in range(3):
        db.add(Question(
            bank_id=foreign_bank.id,
            position=i,
            question_type=QuestionType.TRUE_FALSE,
            question_text=f"Foreign {i}",
            correct_answer=True,
        ))
    await db.commit()

    return Roster(
        teacher_id=teacher.id,
        student_ids=[s.id for s in students],
        student_user_ids=[u.id for u in student_users],
        team_ids=[t.id for t in teams],
        outsider_id=outsider.id,
        demo_id=demo.id,
        inactive_id=inactive.id,
        bank_id=bank.id,
        small_bank_id=small_bank.id,
        foreign_bank_id=foreign_bank.id,
        question_ids=[q.id for q in questions],
    )


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rewards():
    return RecordingRewardSink()


@pytest.fixture
def notifications():
    return RecordingNotificationSink()


@pytest.fixture
def orchestrator(db, rewards, notifications, clock):
    return TournamentOrchestrator(
        db,
        rewards=rewards,
        notifications=notifications,
        rng=random.Random(20260302),
        clock=clock,
    )


@pytest.fixture
def make_tournament(orchestrator, roster):
    """Factory: create a tournament, enter the first `count` students (or teams), return the ids."""
    async def factory(
        count: int = 4,
        type: TournamentType = TournamentType.SINGLE_ELIMINATION,
        participant_type: ParticipantType = ParticipantType.INDIVIDUAL,
        **overrides,
    ):
        config = TournamentConfig(
            name=overrides.pop("name", "Spring Cup"),
            type=type,
            participant_type=participant_type,
            question_bank_id=overrides.pop("question_bank_id", roster.bank_id),
            questions_per_match=overrides.pop("questions_per_match", 3),
            shuffle_questions=overrides.pop("shuffle_questions", False),
            **overrides,
        )
        tournament = await orchestrator.create(CLASSROOM_ID, config, created_by=roster.teacher_id)
        if participant_type == ParticipantType.TEAM:
            entities = [ParticipantEntity.team(team_id) for team_id in roster.team_ids[:count]]
        else:
            entities = [ParticipantEntity.student(student_id) for student_id in roster.student_ids[:count]]
        tournament_id = tournament.id
        participants = await orchestrator.registry.add_many(tournament_id, entities) if entities else []
        return tournament_id, [p.id for p in participants]

    return factory


@pytest.fixture
def play_match(orchestrator):
    """Factory: start a match and play every question so `winner_id` wins."""
    async def factory(match_id: int, winner_id: int, elapsed_ms: int = 1000):
        engine = orchestrator.matches
        match = await engine.start(match_id)
        loser_id = match.participant_b_id if winner_id == match.participant_a_id else match.participant_a_id
        question_count = len((await orchestrator._load_tournament(match.tournament_id)).question_ids)
        for index in range(question_count):
            await engine.submit_answer(match_id, winner_id, index, "true", elapsed_ms)
            outcome = await engine.submit_answer(match_id, loser_id, index, "false", elapsed_ms)
        return outcome.match

    return factory


@pytest.fixture
def bracket(db):
    """Factory: freshly loaded matches of a tournament keyed by bracket position."""
    async def factory(tournament_id: int) -> Dict[str, TournamentMatch]:
        result = await db.execute(
            select(TournamentMatch)
            .where(TournamentMatch.tournament_id == tournament_id)
            .execution_options(populate_existing=True)
        )
        return {m.bracket_position: m for m in result.scalars().all()}

    return factory
