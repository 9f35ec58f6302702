"""Database package for verification history persistence."""

from app.db.models import Base, VerificationRow
from app.db.session import (
    create_db_engine,
    create_session_factory,
    init_database,
    session_scope,
)

__all__ = [
    "Base",
    "VerificationRow",
    "create_db_engine",
    "create_session_factory",
    "init_database",
    "session_scope",
]
