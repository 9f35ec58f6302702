"""Tests for the verification orchestrator.

Covers the Validating → Resolving → Evaluating → Persisting → Notifying
flow, error short-circuits and best-effort side effects.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.verifier.exceptions import (
    LedgerTimeout,
    SubjectNotFound,
    ValidationError,
    VerificationError,
)
from app.verifier.ledger import IdentityLedger
from app.verifier.notifications import NotificationChannel, NotificationPublisher
from app.verifier.proof import decode_proof
from app.verifier.resolver import IdentityResolver
from app.verifier.verify import VerificationService

from tests.conftest import (
    BIRTHDAY,
    DAY_BEFORE_BIRTHDAY,
    SUBJECT,
    UNKNOWN_SUBJECT,
    VERIFIER,
    FailingHistoryStore,
)

ADULT_IN_MUMBAI = {
    "age": {"operator": "greaterThan", "value": 18},
    "city": {"value": "mumbai"},
}


class BrokenChannel(NotificationChannel):
    async def publish(self, channel, event, payload):
        raise ConnectionError("pusher unreachable")


class SlowLedger:
    async def get_subject(self, subject_id):
        await asyncio.sleep(5)

    async def get_certificates(self, subject_id):
        return []


class TestVerifySuccess:

    @pytest.mark.asyncio
    async def test_all_conditions_hold(self, service):
        result = await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)

        assert result.success is True
        assert set(result.results) == {"age", "city"}
        assert all(o.verified for o in result.results.values())
        assert result.subject_id == SUBJECT
        assert result.verifier_id == VERIFIER
        assert result.timestamp == BIRTHDAY.isoformat()

    @pytest.mark.asyncio
    async def test_response_shape(self, service):
        result = await service.verify(SUBJECT, VERIFIER, {"age": {"operator": "equals", "value": 34}})
        body = result.to_dict()
        assert body["success"] is True
        assert body["userAddress"] == SUBJECT
        assert body["verifierId"] == VERIFIER
        assert set(body["results"]["age"]) == {"verified", "proof"}
        assert decode_proof(body["results"]["age"]["proof"])["value"] == 34

    @pytest.mark.asyncio
    async def test_empty_conditions_succeed(self, service, ledger):
        result = await service.verify(SUBJECT, VERIFIER, {})
        assert result.success is True
        assert result.results == {}
        # The subject is still resolved; certificates are not
        assert ledger.calls == [("get_subject", SUBJECT)]

    @pytest.mark.asyncio
    async def test_any_failure_fails_aggregate(self, service):
        result = await service.verify(SUBJECT, VERIFIER, {
            "age": {"operator": "greaterThan", "value": 18},
            "education": {"value": "BSc"},
        })
        assert result.success is False
        assert result.results["age"].verified is True
        assert result.results["education"].verified is False

    @pytest.mark.asyncio
    async def test_age_uses_clock_date(self, ledger, history, channel):
        service = VerificationService(
            IdentityResolver(ledger, timeout_seconds=1.0),
            history=history,
            publisher=NotificationPublisher(channel),
            clock=lambda: DAY_BEFORE_BIRTHDAY,
        )
        result = await service.verify(SUBJECT, VERIFIER, {"age": {"operator": "equals", "value": 34}})
        assert result.success is False

    @pytest.mark.asyncio
    async def test_certificates_fetched_only_for_income(self, service, ledger):
        await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        assert ("get_certificates", SUBJECT) not in ledger.calls

        await service.verify(SUBJECT, VERIFIER, {"income": {"operator": "greaterThan", "value": 50000}})
        assert ("get_certificates", SUBJECT) in ledger.calls

    @pytest.mark.asyncio
    async def test_income_from_highest_certificate(self, service):
        result = await service.verify(SUBJECT, VERIFIER, {"income": {"operator": "equals", "value": 90000}})
        assert result.success is True


class TestVerifySideEffects:

    @pytest.mark.asyncio
    async def test_record_persisted(self, service, history):
        result = await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        [stored] = history.list_by_verifier(VERIFIER)
        assert stored.id == result.record.id
        assert stored.success is True
        assert [p.verification_type for p in stored.proofs] == ["age", "city"]

    @pytest.mark.asyncio
    async def test_record_published(self, service, channel):
        queue = channel.subscribe(f"verifier-{VERIFIER}")
        result = await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        message = queue.get_nowait()
        assert message["event"] == "new-verification"
        assert message["data"]["id"] == result.record.id

    @pytest.mark.asyncio
    async def test_persistence_failure_is_swallowed(self, ledger, channel, clock):
        service = VerificationService(
            IdentityResolver(ledger, timeout_seconds=1.0),
            history=FailingHistoryStore(),
            publisher=NotificationPublisher(channel),
            clock=clock,
            await_side_effects=True,
        )
        queue = channel.subscribe(f"verifier-{VERIFIER}")
        result = await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        assert result.success is True
        # Notification is independent of persistence
        assert queue.get_nowait()["data"]["success"] is True

    @pytest.mark.asyncio
    async def test_notification_failure_is_swallowed(self, ledger, history, clock):
        service = VerificationService(
            IdentityResolver(ledger, timeout_seconds=1.0),
            history=history,
            publisher=NotificationPublisher(BrokenChannel()),
            clock=clock,
            await_side_effects=True,
        )
        result = await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        assert result.success is True
        assert history.count() == 1

    @pytest.mark.asyncio
    async def test_detached_side_effects_complete_on_drain(self, ledger, history, channel, clock):
        service = VerificationService(
            IdentityResolver(ledger, timeout_seconds=1.0),
            history=history,
            publisher=NotificationPublisher(channel),
            clock=clock,
            await_side_effects=False,
        )
        await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        await service.drain()
        assert history.count() == 1

    @pytest.mark.asyncio
    async def test_without_history_or_publisher(self, ledger, clock):
        service = VerificationService(IdentityResolver(ledger, timeout_seconds=1.0), clock=clock)
        result = await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        assert result.success is True


class TestVerifyErrors:

    @pytest.mark.asyncio
    async def test_malformed_subject_never_touches_ledger(self, service, ledger):
        with pytest.raises(ValidationError) as exc:
            await service.verify("alice", VERIFIER, ADULT_IN_MUMBAI)
        assert exc.value.code == "VALIDATION_ERROR"
        assert ledger.calls == []

    @pytest.mark.asyncio
    async def test_invalid_condition_never_touches_ledger(self, service, ledger):
        with pytest.raises(ValidationError) as exc:
            await service.verify(SUBJECT, VERIFIER, {"age": {"operator": "greaterThan", "value": "adult"}})
        assert "age" in exc.value.message
        assert ledger.calls == []

    @pytest.mark.asyncio
    async def test_unknown_subject(self, service, history):
        with pytest.raises(SubjectNotFound):
            await service.verify(UNKNOWN_SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        assert history.count() == 0

    @pytest.mark.asyncio
    async def test_ledger_timeout(self, history, clock):
        service = VerificationService(
            IdentityResolver(SlowLedger(), timeout_seconds=0.05), history=history, clock=clock,
        )
        with pytest.raises(LedgerTimeout):
            await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        assert history.count() == 0

    @pytest.mark.asyncio
    async def test_unexpected_failure_becomes_verification_error(self, clock):
        ledger = AsyncMock(spec=IdentityLedger)
        ledger.get_subject.side_effect = RuntimeError("RPC node returned 502")
        service = VerificationService(IdentityResolver(ledger, timeout_seconds=1.0), clock=clock)
        with pytest.raises(VerificationError) as exc:
            await service.verify(SUBJECT, VERIFIER, ADULT_IN_MUMBAI)
        assert exc.value.code == "VERIFICATION_ERROR"
        assert exc.value.status == 500
        assert "RPC node returned 502" in exc.value.message
