"""
classarena/orm/question.py
Question banks consumed (never modified) by tournaments.
"""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum, Index
from sqlalchemy.orm import relationship

from classarena.orm.base import Base, JSONColumn


class QuestionType(PyEnum):
    TRUE_FALSE = "TRUE_FALSE"
    SINGLE_CHOICE = "SINGLE_CHOICE"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    MATCHING = "MATCHING"


class QuestionBank(Base):
    __tablename__ = "question_banks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    # NULL classroom means the bank is shared across classrooms
    classroom_id = Column(Integer, nullable=True, index=True)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    questions = relationship("Question", back_populates="bank", order_by="Question.position")


class Question(Base):
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    bank_id = Column(Integer, ForeignKey("question_banks.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    question_type = Column(Enum(QuestionType, create_constraint=True), nullable=False)
    question_text = Column(Text, nullable=False)
    options = Column(JSONColumn, nullable=True)
    correct_answer = Column(JSONColumn, nullable=True)
    pairs = Column(JSONColumn, nullable=True)
    image_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    bank = relationship("QuestionBank", back_populates="questions")

    __table_args__ = (
        Index('idx_questions_bank', 'bank_id', 'position'),
    )
