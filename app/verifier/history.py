"""Append-only verification history.

Records are keyed by verifier and read back newest first. No update or
delete is exposed. Retention is unbounded.

The store is synchronous (SQLAlchemy sessions); async callers run it in a
worker thread.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from app.core.config import HISTORY_PAGE_LIMIT
from app.db.models import VerificationRow
from app.db.session import session_scope
from app.verifier.conditions import validate_identifier
from app.verifier.models import EvaluationOutcome, ProofEntry, VerificationRecord

log = logging.getLogger(__name__)


def _to_naive_utc(timestamp: str) -> datetime:
    parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _to_iso(value: datetime) -> str:
    return value.replace(tzinfo=timezone.utc).isoformat()


def _row_from_record(record: VerificationRecord) -> VerificationRow:
    return VerificationRow(
        id=record.id,
        subject_id=record.subject_id,
        verifier_id=record.verifier_id,
        timestamp=_to_naive_utc(record.timestamp),
        success=record.success,
        conditions=record.conditions,
        outcomes={
            kind: {"verified": o.verified, "proof": o.proof, "value": o.value}
            for kind, o in record.outcomes.items()
        },
        proofs=[p.to_dict() for p in record.proofs],
    )


def _record_from_row(row: VerificationRow) -> VerificationRecord:
    return VerificationRecord(
        id=row.id,
        subject_id=row.subject_id,
        verifier_id=row.verifier_id,
        timestamp=_to_iso(row.timestamp),
        success=row.success,
        conditions=row.conditions or {},
        outcomes={
            kind: EvaluationOutcome(
                verified=o.get("verified", False),
                proof=o.get("proof", ""),
                value=o.get("value"),
            )
            for kind, o in (row.outcomes or {}).items()
        },
        proofs=[
            ProofEntry(
                id=p["id"],
                verification_type=p["verificationType"],
                condition=p["condition"],
                value=p.get("value"),
                operator=p.get("operator", "equals"),
                verified=p["verified"],
                proof=p["proof"],
            )
            for p in (row.proofs or [])
        ],
    )


class HistoryStore:
    """SQLAlchemy-backed append-only store of VerificationRecords."""

    def __init__(self, session_factory: sessionmaker, page_limit: Optional[int] = None):
        self._session_factory = session_factory
        self.page_limit = page_limit if page_limit is not None else HISTORY_PAGE_LIMIT

    def append(self, record: VerificationRecord) -> None:
        """Persist a record. Raises on database failure."""
        with session_scope(self._session_factory) as db:
            db.add(_row_from_record(record))
        log.debug(f"Recorded verification {record.id} for verifier {record.verifier_id}")

    def list_by_verifier(
        self, verifier_id: str, limit: Optional[int] = None
    ) -> List[VerificationRecord]:
        """Records for a verifier, newest first.

        Args:
            verifier_id: Verifier address (matched case-insensitively)
            limit: Page size; capped at page_limit

        Returns:
            Up to `limit` records sorted by timestamp descending. Empty if
            the verifier has no history.

        Raises:
            ValidationError: If verifier_id is not a well-formed address.
        """
        verifier_id = validate_identifier(verifier_id, "verifierId")
        if limit is None or limit <= 0 or limit > self.page_limit:
            limit = self.page_limit

        stmt = (
            select(VerificationRow)
            .where(func.lower(VerificationRow.verifier_id) == verifier_id.lower())
            .order_by(VerificationRow.timestamp.desc(), VerificationRow.created_at.desc())
            .limit(limit)
        )
        with session_scope(self._session_factory) as db:
            rows = db.execute(stmt).scalars().all()
            return [_record_from_row(row) for row in rows]

    def count(self) -> int:
        with session_scope(self._session_factory) as db:
            return db.execute(select(func.count()).select_from(VerificationRow)).scalar_one()
