"""Condition verification orchestration.

Wires together validation, identity resolution, condition evaluation,
proof encoding, persistence and notification:

    Validating → Resolving → Evaluating → Persisting → Notifying → Completed
         └──────────┴──────────┴─→ Errored

Validation and resolution failures short-circuit with their own error
(ValidationError, SubjectNotFound, LedgerTimeout). Anything unexpected is
wrapped in VerificationError. Persistence and notification run as two
independent tasks once the result is known; their failures are logged and
never change the result.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from app.core.config import AWAIT_SIDE_EFFECTS
from app.verifier.conditions import validate_request
from app.verifier.evaluator import aggregate, evaluate_conditions
from app.verifier.exceptions import VerificationError, VerifierError
from app.verifier.history import HistoryStore
from app.verifier.models import EvaluationOutcome, VerificationRecord
from app.verifier.notifications import NotificationPublisher
from app.verifier.resolver import IdentityResolver

log = logging.getLogger(__name__)


class VerificationState(str, Enum):
    VALIDATING = "Validating"
    RESOLVING = "Resolving"
    EVALUATING = "Evaluating"
    PERSISTING = "Persisting"
    NOTIFYING = "Notifying"
    COMPLETED = "Completed"
    ERRORED = "Errored"


@dataclass(frozen=True)
class VerificationResult:
    """What the caller receives, plus the record that was dispatched."""
    success: bool
    results: Dict[str, EvaluationOutcome]
    subject_id: str
    verifier_id: str
    timestamp: str
    record: VerificationRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "results": {kind: o.to_result() for kind, o in self.results.items()},
            "userAddress": self.subject_id,
            "verifierId": self.verifier_id,
            "timestamp": self.timestamp,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationService:
    """Entry point of the condition verification engine.

    Collaborators are constructed once at startup and injected.

    Args:
        resolver: Identity resolver over the ledger port
        history: History store, or None to skip persistence
        publisher: Notification publisher, or None to skip notification
        clock: Returns the current UTC time; drives age evaluation and
            the result timestamp
        await_side_effects: Wait for persistence/notification before
            returning (failures still discarded). When False they are
            detached and only observed for logging.
    """

    def __init__(
        self,
        resolver: IdentityResolver,
        history: Optional[HistoryStore] = None,
        publisher: Optional[NotificationPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        await_side_effects: Optional[bool] = None,
    ):
        self.resolver = resolver
        self.history = history
        self.publisher = publisher
        self._clock = clock or _utcnow
        self.await_side_effects = (
            AWAIT_SIDE_EFFECTS if await_side_effects is None else await_side_effects
        )
        self._background: Set[asyncio.Task] = set()

    def _transition(self, request_id: str, state: VerificationState) -> VerificationState:
        log.debug(
            f"verification {request_id} -> {state.value}",
            extra={"request_id": request_id, "state": state.value},
        )
        return state

    async def verify(
        self,
        subject_id: Any,
        verifier_id: Any,
        conditions: Optional[Dict[str, Any]],
        requested_at: Optional[str] = None,
    ) -> VerificationResult:
        """Verify declared conditions about a subject.

        Raises:
            ValidationError: Malformed identifiers or conditions (400)
            SubjectNotFound: Subject absent from the ledger (404)
            LedgerTimeout: Ledger read exceeded the bound (504)
            VerificationError: Any other failure (500)
        """
        request_id = uuid.uuid4().hex[:12]
        state = self._transition(request_id, VerificationState.VALIDATING)

        try:
            query = validate_request(subject_id, verifier_id, conditions, requested_at)

            state = self._transition(request_id, VerificationState.RESOLVING)
            subject = await self.resolver.resolve_subject(query.subject_id)
            certificates = None
            if query.conditions.needs_certificates:
                certificates = await self.resolver.resolve_certificates(query.subject_id)

            state = self._transition(request_id, VerificationState.EVALUATING)
            now = self._clock()
            outcomes = evaluate_conditions(query.conditions, subject, certificates, now.date())
            success = aggregate(outcomes)
            record = VerificationRecord.create(
                subject_id=query.subject_id,
                verifier_id=query.verifier_id,
                conditions=query.conditions.to_dict(),
                outcomes=outcomes,
                success=success,
                timestamp=now.isoformat(),
            )
        except VerifierError as e:
            log.info(
                f"verification {request_id} errored in {state.value}: {e.code} {e.message}",
                extra={"request_id": request_id, "state": VerificationState.ERRORED.value},
            )
            raise
        except Exception as e:
            log.exception(
                f"verification {request_id} failed in {state.value}",
                extra={"request_id": request_id, "state": VerificationState.ERRORED.value},
            )
            raise VerificationError(str(e)) from e

        log.info(
            f"verification {request_id} evaluated: success={success} "
            f"conditions={sorted(outcomes)}",
            extra={"request_id": request_id, "verifier_id": record.verifier_id},
        )

        await self._dispatch_side_effects(request_id, record)
        self._transition(request_id, VerificationState.COMPLETED)

        return VerificationResult(
            success=success,
            results=outcomes,
            subject_id=record.subject_id,
            verifier_id=record.verifier_id,
            timestamp=record.timestamp,
            record=record,
        )

    # -------------------------------------------------------------------------
    # Side effects
    # -------------------------------------------------------------------------

    async def _persist(self, record: VerificationRecord) -> None:
        if self.history is None:
            return
        await asyncio.to_thread(self.history.append, record)

    async def _notify(self, record: VerificationRecord) -> None:
        if self.publisher is None:
            return
        await self.publisher.publish(record)

    async def _guarded(self, request_id: str, label: str, coro: Coroutine) -> None:
        """Run a side effect; log and discard any failure."""
        try:
            await coro
        except asyncio.CancelledError:
            log.warning(f"verification {request_id}: {label} cancelled")
            raise
        except Exception as e:
            log.warning(
                f"verification {request_id}: {label} failed: {type(e).__name__}: {e}",
                extra={"request_id": request_id},
            )

    async def _dispatch_side_effects(self, request_id: str, record: VerificationRecord) -> None:
        self._transition(request_id, VerificationState.PERSISTING)
        tasks: List[asyncio.Task] = [
            asyncio.create_task(self._guarded(request_id, "persistence", self._persist(record)))
        ]
        self._transition(request_id, VerificationState.NOTIFYING)
        tasks.append(
            asyncio.create_task(self._guarded(request_id, "notification", self._notify(record)))
        )

        for task in tasks:
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        if self.await_side_effects:
            # Shielded: a disconnecting caller doesn't cancel dispatched work
            await asyncio.shield(asyncio.gather(*tasks))

    async def drain(self) -> None:
        """Wait for detached side effects (used at shutdown)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
