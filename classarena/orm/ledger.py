"""
classarena/orm/ledger.py
Rows written by the SQL-backed reward and notification sinks.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Index

from classarena.orm.base import Base, JSONColumn, iso


class PointLog(Base):
    __tablename__ = "point_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    participant_id = Column(Integer, ForeignKey("tournament_participants.id"), nullable=False)
    student_profile_id = Column(Integer, ForeignKey("student_profiles.id"), nullable=True)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    amount = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_point_logs_participant', 'participant_id'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "participant_id": self.participant_id,
            "student_profile_id": self.student_profile_id,
            "team_id": self.team_id,
            "amount": self.amount,
            "reason": self.reason,
            "created_at": iso(self.created_at),
        }


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSONColumn, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
