"""Condition-based verification engine.

Resolves a subject's identity record and certificates from the identity
ledger, evaluates verifier-declared conditions (age, income, city,
education), emits a proof token per condition, and records and broadcasts
the aggregate result.
"""

from .exceptions import (
    VerifierError,
    ValidationError,
    SubjectNotFound,
    LedgerTimeout,
    VerificationError,
    ProofDecodeError,
)
from .conditions import ConditionSet, NumericCondition, TextCondition, parse_conditions, validate_request
from .ledger import IdentityLedger, InMemoryIdentityLedger, Web3IdentityLedger, create_identity_ledger
from .resolver import IdentityResolver
from .evaluator import evaluate_conditions, aggregate, calculate_age
from .proof import encode_proof, decode_proof
from .history import HistoryStore
from .notifications import (
    NotificationChannel,
    InMemoryChannel,
    PusherChannel,
    NotificationPublisher,
    create_notification_channel,
)
from .verify import VerificationService, VerificationResult, VerificationState

__all__ = [
    # Exceptions
    "VerifierError",
    "ValidationError",
    "SubjectNotFound",
    "LedgerTimeout",
    "VerificationError",
    "ProofDecodeError",
    # Condition model
    "ConditionSet",
    "NumericCondition",
    "TextCondition",
    "parse_conditions",
    "validate_request",
    # Ledger
    "IdentityLedger",
    "InMemoryIdentityLedger",
    "Web3IdentityLedger",
    "create_identity_ledger",
    "IdentityResolver",
    # Evaluation
    "evaluate_conditions",
    "aggregate",
    "calculate_age",
    "encode_proof",
    "decode_proof",
    # Side effects
    "HistoryStore",
    "NotificationChannel",
    "InMemoryChannel",
    "PusherChannel",
    "NotificationPublisher",
    "create_notification_channel",
    # Orchestration
    "VerificationService",
    "VerificationResult",
    "VerificationState",
]
