"""Condition evaluation.

Deterministic, side-effect-free evaluation of declared conditions against
resolved subject data. The only non-determinism is in the proof token,
which embeds a nonce and an encoding timestamp.

Attribute semantics:
- age: calendar-aware whole years from date of birth
- income: highest `amount` across certificate metadata (0 if none parse)
- city: case-insensitive containment in the whole physical address
- education: always fails, no education data source is wired up

Evaluating a single condition never raises.
"""

import json
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Union

from app.verifier.api_models import AttributeKind, Operator
from app.verifier.conditions import Condition, ConditionSet, Number, parse_number
from app.verifier.models import CertificateRecord, EvaluationOutcome, SubjectRecord
from app.verifier.proof import encode_proof

log = logging.getLogger(__name__)


# =============================================================================
# Comparison
# =============================================================================


def compare(a: Any, b: Any, operator: Operator) -> bool:
    """Apply a comparison operator: a > b, a < b or a == b."""
    if operator is Operator.GREATER_THAN:
        return a > b
    if operator is Operator.LESS_THAN:
        return a < b
    if operator is Operator.EQUALS:
        return a == b
    return False


def calculate_age(date_of_birth: date, today: date) -> int:
    """Whole years between date_of_birth and today.

    The birthday itself counts: someone born 1990-06-15 is 33 on
    2024-06-14 and 34 on 2024-06-15.
    """
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


# =============================================================================
# Certificate metadata
# =============================================================================


@dataclass(frozen=True)
class IncomeAmount:
    """Metadata parsed to a usable amount."""
    amount: Number


@dataclass(frozen=True)
class SkippedMetadata:
    """Metadata that carries no usable amount."""
    reason: str


MetadataResult = Union[IncomeAmount, SkippedMetadata]


def parse_income_metadata(metadata: Optional[str]) -> MetadataResult:
    """Read the numeric `amount` from a certificate's metadata.

    Metadata is free text or a JSON document. Only a JSON object whose
    `amount` is a number (or a numeric string) yields an IncomeAmount.
    """
    if not metadata:
        return SkippedMetadata("empty metadata")
    try:
        document = json.loads(metadata)
    except (TypeError, ValueError) as e:
        return SkippedMetadata(f"not JSON: {e}")
    if not isinstance(document, dict):
        return SkippedMetadata("not a JSON object")
    if "amount" not in document:
        return SkippedMetadata("no amount field")
    amount = parse_number(document["amount"])
    if amount is None:
        return SkippedMetadata(f"amount {document['amount']!r} is not a number")
    return IncomeAmount(amount)


def highest_income(certificates: Iterable[CertificateRecord]) -> Number:
    """Highest parsable income amount across certificates, 0 if none."""
    highest: Number = 0
    for cert in certificates:
        result = parse_income_metadata(cert.metadata_hash)
        if isinstance(result, SkippedMetadata):
            log.debug(f"Skipping certificate {cert.certificate_id!r}: {result.reason}")
            continue
        if result.amount > highest:
            highest = result.amount
    return highest


# =============================================================================
# Per-kind evaluation
# =============================================================================


def _outcome(value: Any, condition: Condition, verified: bool) -> EvaluationOutcome:
    return EvaluationOutcome(
        verified=verified,
        proof=encode_proof(value, condition.to_dict(), verified),
        value=value,
    )


def evaluate_age(subject: SubjectRecord, condition: Condition, today: date) -> EvaluationOutcome:
    if subject.date_of_birth is None:
        return _outcome(None, condition, False)
    age = calculate_age(subject.date_of_birth, today)
    return _outcome(age, condition, compare(age, condition.value, condition.operator))


def evaluate_income(
    certificates: Iterable[CertificateRecord], condition: Condition
) -> EvaluationOutcome:
    income = highest_income(certificates)
    return _outcome(income, condition, compare(income, condition.value, condition.operator))


def evaluate_city(subject: SubjectRecord, condition: Condition) -> EvaluationOutcome:
    # Containment, never exact equality, whatever the declared operator
    address = subject.physical_address or ""
    verified = bool(address) and condition.value.lower() in address.lower()
    return _outcome(address, condition, verified)


def evaluate_education(condition: Condition) -> EvaluationOutcome:
    # TODO: evaluate against education certificates once the registry
    # exposes a degree/institution field; until then this always fails.
    return _outcome(None, condition, False)


def evaluate_condition(
    condition: Condition,
    subject: SubjectRecord,
    certificates: Optional[List[CertificateRecord]],
    today: date,
) -> EvaluationOutcome:
    """Evaluate one declared condition against resolved subject data."""
    kind = condition.kind
    if kind is AttributeKind.AGE:
        return evaluate_age(subject, condition, today)
    if kind is AttributeKind.INCOME:
        return evaluate_income(certificates or [], condition)
    if kind is AttributeKind.CITY:
        return evaluate_city(subject, condition)
    return evaluate_education(condition)


def evaluate_conditions(
    conditions: ConditionSet,
    subject: SubjectRecord,
    certificates: Optional[List[CertificateRecord]],
    today: date,
) -> Dict[str, EvaluationOutcome]:
    """Evaluate every declared condition.

    Only declared kinds get an entry. Conditions are independent of each
    other.
    """
    return {
        condition.kind.value: evaluate_condition(condition, subject, certificates, today)
        for condition in conditions
    }


def aggregate(outcomes: Dict[str, EvaluationOutcome]) -> bool:
    """AND over all outcomes; vacuously True when there are none."""
    return all(outcome.verified for outcome in outcomes.values())
