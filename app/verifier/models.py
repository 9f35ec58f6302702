"""Domain records for condition verification.

SubjectRecord and CertificateRecord are transient read copies of ledger
state. VerificationRecord is the aggregate unit persisted to the history
store and pushed to the verifier's live channel.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional


class Role(IntEnum):
    """UserRegistry.Role"""
    NONE = 0
    USER = 1
    AUTHORITY = 2
    VERIFIER = 3
    ADMIN = 4


class CertificateType(IntEnum):
    """UserRegistry.CertificateType"""
    INCOME = 0
    ADDRESS = 1
    IDENTITY = 2
    EDUCATION = 3
    EMPLOYMENT = 4
    OTHER = 5


def coerce_enum(enum_cls, value, default):
    try:
        return enum_cls(int(value))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class SubjectRecord:
    """Snapshot of a subject's identity attributes at verification time."""
    name: str
    date_of_birth: Optional[date]
    gender: str
    physical_address: str
    mobile_number: str
    role: Role
    is_verified: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "dob": self.date_of_birth.isoformat() if self.date_of_birth else "",
            "gender": self.gender,
            "physicalAddress": self.physical_address,
            "mobileNumber": self.mobile_number,
            "role": int(self.role),
            "isVerified": self.is_verified,
        }


@dataclass(frozen=True)
class CertificateRecord:
    """One issued credential belonging to a subject."""
    subject_id: str
    issuer_id: str
    certificate_id: str
    issuance_date: str
    content_hash: str
    metadata_hash: str
    certificate_type: CertificateType
    is_verified: bool
    issued_at_timestamp: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificateRecord":
        """Build from the wire form used by /certificates and ledger fixtures."""
        return cls(
            subject_id=data.get("userAddress", ""),
            issuer_id=data.get("authorityAddress", ""),
            certificate_id=data.get("certificateId", ""),
            issuance_date=data.get("issuanceDate", ""),
            content_hash=data.get("ipfsHash", ""),
            metadata_hash=data.get("metadataHash", ""),
            certificate_type=coerce_enum(
                CertificateType, data.get("certificateType"), CertificateType.OTHER
            ),
            is_verified=bool(data.get("isVerified", False)),
            issued_at_timestamp=int(data.get("timestamp", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userAddress": self.subject_id,
            "authorityAddress": self.issuer_id,
            "certificateId": self.certificate_id,
            "issuanceDate": self.issuance_date,
            "ipfsHash": self.content_hash,
            "metadataHash": self.metadata_hash,
            "certificateType": int(self.certificate_type),
            "isVerified": self.is_verified,
            "timestamp": self.issued_at_timestamp,
        }


@dataclass(frozen=True)
class EvaluationOutcome:
    """Result of evaluating one condition.

    `value` is the subject-side value that was compared (derived age,
    highest income, address) and is kept for the audit trail only; it is
    not part of the /verify response.
    """
    verified: bool
    proof: str
    value: Any = None

    def to_result(self) -> Dict[str, Any]:
        return {"verified": self.verified, "proof": self.proof}


_OPERATOR_PHRASES = {
    "greaterThan": "greater than",
    "lessThan": "less than",
    "equals": "equals",
}


def describe_condition(kind: str, operator: str, value: Any) -> str:
    """Human-readable condition, e.g. "age greater than 18".

    City matching is containment regardless of the declared operator.
    """
    if kind == "city":
        return f"city contains {value}"
    return f"{kind} {_OPERATOR_PHRASES.get(operator, operator)} {value}"


@dataclass(frozen=True)
class ProofEntry:
    """Display/audit row derived from one outcome."""
    id: str
    verification_type: str
    condition: str
    value: Any
    operator: str
    verified: bool
    proof: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "verificationType": self.verification_type,
            "condition": self.condition,
            "value": self.value,
            "operator": self.operator,
            "verified": self.verified,
            "proof": self.proof,
        }

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "verificationType": self.verification_type,
            "condition": self.condition,
            "verified": self.verified,
        }


@dataclass(frozen=True)
class VerificationRecord:
    """Aggregate outcome of one verification call. Never mutated."""
    id: str
    subject_id: str
    verifier_id: str
    timestamp: str
    success: bool
    conditions: Dict[str, Dict[str, Any]]
    outcomes: Dict[str, EvaluationOutcome]
    proofs: List[ProofEntry] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        subject_id: str,
        verifier_id: str,
        conditions: Dict[str, Dict[str, Any]],
        outcomes: Dict[str, EvaluationOutcome],
        success: bool,
        timestamp: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> "VerificationRecord":
        """Build a record with a fresh id and its derived proofs list."""
        record_id = record_id or uuid.uuid4().hex
        proofs = []
        for kind, outcome in outcomes.items():
            condition = conditions.get(kind, {})
            operator = condition.get("operator", "equals")
            proofs.append(ProofEntry(
                id=f"{record_id}-{kind}",
                verification_type=kind,
                condition=describe_condition(kind, operator, condition.get("value")),
                value=condition.get("value"),
                operator=operator,
                verified=outcome.verified,
                proof=outcome.proof,
            ))
        return cls(
            id=record_id,
            subject_id=subject_id,
            verifier_id=verifier_id,
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
            success=success,
            conditions=conditions,
            outcomes=dict(outcomes),
            proofs=proofs,
        )

    def results(self) -> Dict[str, Dict[str, Any]]:
        return {kind: outcome.to_result() for kind, outcome in self.outcomes.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userAddress": self.subject_id,
            "verifierId": self.verifier_id,
            "timestamp": self.timestamp,
            "success": self.success,
            "conditions": self.conditions,
            "results": self.results(),
            "proofs": [p.to_dict() for p in self.proofs],
        }

    def notification_payload(self) -> Dict[str, Any]:
        """Payload of the `new-verification` event."""
        return {
            "id": self.id,
            "userAddress": self.subject_id,
            "timestamp": self.timestamp,
            "success": self.success,
            "proofs": [p.to_summary() for p in self.proofs],
        }
