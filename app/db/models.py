"""SQLAlchemy ORM models for verification history.

One row per completed verification call. Rows are inserted once and never
updated or deleted.
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class VerificationRow(Base):
    """Persisted VerificationRecord.

    `timestamp` is stored as naive UTC; `outcomes` keeps the compared value
    alongside verified/proof for audit.
    """

    __tablename__ = "verifications"

    id = Column(String(36), primary_key=True)  # uuid4 hex
    subject_id = Column(String(66), nullable=False, index=True)
    verifier_id = Column(String(66), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    success = Column(Boolean, nullable=False)
    conditions = Column(JSON, nullable=False, default=dict)
    outcomes = Column(JSON, nullable=False, default=dict)
    proofs = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_verifications_verifier_timestamp", "verifier_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<VerificationRow(id={self.id!r}, verifier_id={self.verifier_id!r}, "
            f"success={self.success!r})>"
        )
