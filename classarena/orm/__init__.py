from .base import Base

from .user import User, UserRole
from .classroom import StudentProfile, Team
from .question import QuestionBank, Question, QuestionType
from .tournament import (
    Tournament, TournamentParticipant, TournamentMatch, TournamentAnswer,
    TournamentType, TournamentStatus, ParticipantType, MatchStatus,
    TieBreakMode, MatchResolution,
)
from .ledger import PointLog, Notification
