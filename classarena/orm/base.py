"""
classarena/orm/base.py
Declarative base and shared column types for all ORM models
"""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


class JSONColumn(TypeDecorator):
    """JSON payload column: JSONB on PostgreSQL, plain JSON elsewhere (SQLite)."""
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


def iso(value):
    """Serialize an optional datetime for to_dict()."""
    return value.isoformat() if value else None
