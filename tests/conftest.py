"""Root conftest for all tests - provides shared fixtures."""

import os

# In-memory history and ledger for every test (must be set before app.core.config import)
os.environ.setdefault("VERIFIER_DATABASE_URL", "sqlite://")
os.environ.setdefault("VERIFIER_LEDGER_BACKEND", "memory")
os.environ.setdefault("VERIFIER_NOTIFY_BACKEND", "memory")

import json
from datetime import date, datetime, timezone

import pytest
from fastapi.testclient import TestClient

from app.db.session import create_db_engine, create_session_factory, init_database
from app.verifier.history import HistoryStore
from app.verifier.ledger import InMemoryIdentityLedger
from app.verifier.models import CertificateRecord, CertificateType, Role, SubjectRecord
from app.verifier.notifications import InMemoryChannel, NotificationPublisher
from app.verifier.resolver import IdentityResolver
from app.verifier.verify import VerificationService


# =============================================================================
# Test identities
# =============================================================================

SUBJECT = "0x1111111111111111111111111111111111111111"
VERIFIER = "0x3333333333333333333333333333333333333333"
AUTHORITY = "0x2222222222222222222222222222222222222222"
UNKNOWN_SUBJECT = "0x4444444444444444444444444444444444444444"

# 2024-06-15 is the subject's 34th birthday
BIRTHDAY = datetime(2024, 6, 15, 9, 30, tzinfo=timezone.utc)
DAY_BEFORE_BIRTHDAY = datetime(2024, 6, 14, 23, 59, tzinfo=timezone.utc)


def make_subject(
    dob=date(1990, 6, 15),
    address="401 C-wing, Happy Homes Society, Mumbai",
    name="Asha Rao",
) -> SubjectRecord:
    return SubjectRecord(
        name=name,
        date_of_birth=dob,
        gender="F",
        physical_address=address,
        mobile_number="+91-9800000000",
        role=Role.USER,
        is_verified=True,
    )


def make_certificate(metadata: str, certificate_id: str = "INC-1") -> CertificateRecord:
    return CertificateRecord(
        subject_id=SUBJECT,
        issuer_id=AUTHORITY,
        certificate_id=certificate_id,
        issuance_date="2024-04-01",
        content_hash="QmIncome",
        metadata_hash=metadata,
        certificate_type=CertificateType.INCOME,
        is_verified=True,
        issued_at_timestamp=1711929600,
    )


def income_certificates():
    """Certificates whose highest parsable amount is 90000."""
    return [
        make_certificate(json.dumps({"amount": 40000}), "INC-1"),
        make_certificate(json.dumps({"amount": "not-a-number"}), "INC-2"),
        make_certificate(json.dumps({"amount": 90000}), "INC-3"),
    ]


class CountingLedger(InMemoryIdentityLedger):
    """In-memory ledger that records every read."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []

    async def get_subject(self, subject_id):
        self.calls.append(("get_subject", subject_id))
        return await super().get_subject(subject_id)

    async def get_certificates(self, subject_id):
        self.calls.append(("get_certificates", subject_id))
        return await super().get_certificates(subject_id)


class FailingHistoryStore(HistoryStore):
    """History store whose writes always fail."""

    def __init__(self):
        self.page_limit = 50

    def append(self, record):
        raise RuntimeError("database is locked")

    def list_by_verifier(self, verifier_id, limit=None):
        return []


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def ledger():
    return CountingLedger(
        subjects={SUBJECT: make_subject()},
        certificates={SUBJECT: income_certificates()},
    )


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite://")
    init_database(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def history(session_factory):
    return HistoryStore(session_factory)


@pytest.fixture
def channel():
    return InMemoryChannel()


@pytest.fixture
def clock():
    return lambda: BIRTHDAY


@pytest.fixture
def service(ledger, history, channel, clock):
    return VerificationService(
        IdentityResolver(ledger, timeout_seconds=1.0),
        history=history,
        publisher=NotificationPublisher(channel),
        clock=clock,
        await_side_effects=True,
    )


@pytest.fixture
def app(ledger, channel, session_factory, clock):
    """Application wired to in-memory collaborators."""
    from app.main import configure_services, create_app

    application = create_app()
    configure_services(
        application,
        ledger=ledger,
        channel=channel,
        session_factory=session_factory,
        ledger_timeout=1.0,
        clock=clock,
        await_side_effects=True,
    )
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
