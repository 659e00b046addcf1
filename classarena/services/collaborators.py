"""
External collaborators consumed by tournament orchestration.

- QuestionBankReader: supplies questions; never modified
- RewardSink: receives point awards
- NotificationSink: receives notification events

The orchestrator treats both sinks as fire-and-forget: effects are queued in
an EffectOutbox during a transaction and dispatched only after it commits, so
a retried transaction never emits an award twice.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classarena.orm.classroom import StudentProfile
from classarena.orm.ledger import Notification, PointLog
from classarena.orm.question import Question, QuestionBank
from classarena.orm.tournament import TournamentParticipant

logger = logging.getLogger(__name__)


# =============================================================================
# Value objects
# =============================================================================

@dataclass(frozen=True)
class QuestionBankInfo:
    id: int
    name: str
    classroom_id: Optional[int]
    question_count: int


@dataclass(frozen=True)
class QuestionData:
    """A question together with its answer key."""
    id: int
    question_type: str
    text: str
    options: Any = None
    correct_answer: Any = None
    pairs: Any = None
    image_url: Optional[str] = None

    def to_public(self) -> Dict[str, Any]:
        """Question as served to participants: the answer key is stripped."""
        options = self.options
        if isinstance(options, list):
            options = [
                {k: v for k, v in option.items() if k != "isCorrect"} if isinstance(option, dict) else option
                for option in options
            ]
        public = {
            "id": self.id,
            "question_type": self.question_type,
            "text": self.text,
            "options": options,
            "image_url": self.image_url,
        }
        if self.question_type == "MATCHING" and isinstance(self.pairs, list):
            public["left"] = [pair.get("left") for pair in self.pairs]
            public["right"] = sorted(pair.get("right") for pair in self.pairs)
        return public


@dataclass
class PointAward:
    participant_id: int
    amount: int
    reason: str


@dataclass
class NotificationEvent:
    user_id: int
    event: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Interfaces
# =============================================================================

class QuestionBankReader(ABC):

    @abstractmethod
    async def get_bank(self, bank_id: int) -> Optional[QuestionBankInfo]:
        ...

    @abstractmethod
    async def get_questions(self, bank_id: int, count: int) -> List[QuestionData]:
        """Return up to `count` questions of the bank in their stored order."""

    @abstractmethod
    async def get_question(self, question_id: int) -> Optional[QuestionData]:
        ...


class RewardSink(ABC):

    @abstractmethod
    async def award_points(self, participant_id: int, amount: int, reason: str) -> None:
        ...


class NotificationSink(ABC):

    @abstractmethod
    async def notify(self, user_id: int, event: Dict[str, Any]) -> None:
        ...


# =============================================================================
# SQL-backed defaults
# =============================================================================

def _to_question_data(question: Question) -> QuestionData:
    return QuestionData(
        id=question.id,
        question_type=question.question_type.value,
        text=question.question_text,
        options=question.options,
        correct_answer=question.correct_answer,
        pairs=question.pairs,
        image_url=question.image_url,
    )


class SqlQuestionBankReader(QuestionBankReader):
    """Reads the platform's question_banks/questions tables."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._cache: Dict[int, QuestionData] = {}

    async def get_bank(self, bank_id: int) -> Optional[QuestionBankInfo]:
        bank = await self.db.get(QuestionBank, bank_id)
        if bank is None:
            return None
        result = await self.db.execute(select(Question.id).where(Question.bank_id == bank_id))
        return QuestionBankInfo(
            id=bank.id,
            name=bank.name,
            classroom_id=bank.classroom_id,
            question_count=len(result.all()),
        )

    async def get_questions(self, bank_id: int, count: int) -> List[QuestionData]:
        result = await self.db.execute(
            select(Question)
            .where(Question.bank_id == bank_id)
            .order_by(Question.position.asc(), Question.id.asc())
            .limit(count)
        )
        questions = [_to_question_data(q) for q in result.scalars().all()]
        for question in questions:
            self._cache[question.id] = question
        return questions

    async def get_question(self, question_id: int) -> Optional[QuestionData]:
        if question_id in self._cache:
            return self._cache[question_id]
        question = await self.db.get(Question, question_id)
        if question is None:
            return None
        data = _to_question_data(question)
        self._cache[question_id] = data
        return data


class SqlRewardSink(RewardSink):
    """
    Writes a point_logs row per award and credits xp on the student profile.
    Team awards are logged against the team without a profile credit.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def award_points(self, participant_id: int, amount: int, reason: str) -> None:
        participant = await self.db.get(TournamentParticipant, participant_id)
        if participant is None:
            logger.warning(f"Point award skipped: participant {participant_id} no longer exists")
            return

        self.db.add(PointLog(
            participant_id=participant.id,
            student_profile_id=participant.student_profile_id,
            team_id=participant.team_id,
            amount=amount,
            reason=reason,
        ))
        if participant.student_profile_id is not None:
            profile = await self.db.get(StudentProfile, participant.student_profile_id)
            if profile is not None:
                profile.xp = (profile.xp or 0) + amount
        await self.db.flush()


class SqlNotificationSink(NotificationSink):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(self, user_id: int, event: Dict[str, Any]) -> None:
        self.db.add(Notification(
            user_id=user_id,
            event_type=event.get("type", "TOURNAMENT"),
            title=event.get("title", "Tournament update"),
            message=event.get("message", ""),
            payload=event,
        ))
        await self.db.flush()


# =============================================================================
# Outbox
# =============================================================================

class EffectOutbox:
    """
    Queue of awards and notifications produced inside a transaction.

    clear() at the start of every attempt, dispatch() after the commit.
    """

    def __init__(self, rewards: RewardSink, notifications: NotificationSink):
        self.rewards = rewards
        self.notifications = notifications
        self.awards: List[PointAward] = []
        self.notices: List[NotificationEvent] = []

    def award(self, participant_id: int, amount: int, reason: str) -> None:
        if amount <= 0:
            return
        self.awards.append(PointAward(participant_id, amount, reason))

    def notify(self, user_id: Optional[int], event: Dict[str, Any]) -> None:
        if user_id is None:
            return
        self.notices.append(NotificationEvent(user_id, event))

    def clear(self) -> None:
        self.awards = []
        self.notices = []

    async def dispatch(self, db: Optional[AsyncSession] = None) -> int:
        """Deliver queued effects. Sink failures are logged, never raised."""
        awards, notices = self.awards, self.notices
        self.clear()
        if not awards and not notices:
            return 0

        delivered = 0
        for award in awards:
            try:
                await self.rewards.award_points(award.participant_id, award.amount, award.reason)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Reward sink failed for participant {award.participant_id} "
                    f"({award.amount} points, {award.reason})"
                )
        for notice in notices:
            try:
                await self.notifications.notify(notice.user_id, notice.event)
                delivered += 1
            except Exception:
                logger.exception(f"Notification sink failed for user {notice.user_id}")

        if db is not None:
            try:
                await db.commit()
            except Exception:
                await db.rollback()
                logger.exception("Failed to persist dispatched tournament effects")
        return delivered
