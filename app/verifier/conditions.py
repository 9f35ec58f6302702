"""Verifier condition model.

Validates and normalizes a verification request before anything touches
the ledger. A ConditionSet is a tagged union over the four attribute
kinds: `age` and `income` carry a number, `city` and `education` carry a
string and only accept the `equals` operator.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

from app.core.config import ADDRESS_PATTERN
from app.verifier.api_models import AttributeKind, NUMERIC_KINDS, Operator
from app.verifier.exceptions import ValidationError

Number = Union[int, float]


@dataclass(frozen=True)
class NumericCondition:
    """Condition on `age` or `income`."""
    kind: AttributeKind
    operator: Operator
    value: Number

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "operator": self.operator.value}


@dataclass(frozen=True)
class TextCondition:
    """Condition on `city` or `education`. Operator is always `equals`."""
    kind: AttributeKind
    value: str
    operator: Operator = Operator.EQUALS

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "operator": self.operator.value}


Condition = Union[NumericCondition, TextCondition]


@dataclass(frozen=True)
class ConditionSet:
    """Declared conditions keyed by attribute kind.

    Absent kinds have no entry. An empty set is valid.
    """
    conditions: Dict[AttributeKind, Condition] = field(default_factory=dict)

    def get(self, kind: AttributeKind) -> Optional[Condition]:
        return self.conditions.get(kind)

    def __contains__(self, kind: AttributeKind) -> bool:
        return kind in self.conditions

    def __iter__(self) -> Iterator[Condition]:
        return iter(self.conditions.values())

    def __len__(self) -> int:
        return len(self.conditions)

    @property
    def needs_certificates(self) -> bool:
        """Only income is evaluated from certificates."""
        return AttributeKind.INCOME in self.conditions

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {kind.value: cond.to_dict() for kind, cond in self.conditions.items()}


@dataclass(frozen=True)
class VerificationQuery:
    """A validated verification request."""
    subject_id: str
    verifier_id: str
    conditions: ConditionSet
    requested_at: Optional[str] = None


# =============================================================================
# Identifier validation
# =============================================================================


def validate_identifier(value: Any, field_name: str) -> str:
    """Check an identifier is present and address-like.

    Args:
        value: Raw identifier from the request
        field_name: Wire name of the field, used in the error

    Returns:
        The identifier with surrounding whitespace removed.

    Raises:
        ValidationError: If missing or not matching ADDRESS_PATTERN.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError.invalid_identifier(field_name, "is required")
    value = value.strip()
    if not ADDRESS_PATTERN.match(value):
        raise ValidationError.invalid_identifier(
            field_name, "must be a 0x-prefixed address"
        )
    return value


# =============================================================================
# Condition parsing
# =============================================================================


def parse_number(raw: Any) -> Optional[Number]:
    """Parse a finite number from a JSON value; None if it isn't one.

    Accepts ints, floats and numeric strings. Booleans are not numbers.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return raw if math.isfinite(raw) else None
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _parse_operator(kind: AttributeKind, raw: Any) -> Operator:
    if raw is None:
        if kind in NUMERIC_KINDS:
            raise ValidationError.invalid_condition(kind.value, "operator is required")
        return Operator.EQUALS
    try:
        operator = Operator(raw)
    except ValueError:
        allowed = ", ".join(op.value for op in Operator)
        raise ValidationError.invalid_condition(
            kind.value, f"unknown operator {raw!r} (expected one of {allowed})"
        )
    if kind not in NUMERIC_KINDS and operator is not Operator.EQUALS:
        raise ValidationError.invalid_condition(
            kind.value, f"operator {operator.value!r} is not supported, use 'equals'"
        )
    return operator


def parse_condition(kind: AttributeKind, raw: Any) -> Condition:
    """Parse a single `{operator, value}` entry for the given kind."""
    if not isinstance(raw, dict):
        raise ValidationError.invalid_condition(
            kind.value, "must be an object with 'value' and 'operator'"
        )

    operator = _parse_operator(kind, raw.get("operator"))
    value = raw.get("value")

    if kind in NUMERIC_KINDS:
        number = parse_number(value)
        if number is None:
            raise ValidationError.invalid_condition(
                kind.value, f"value {value!r} is not a number"
            )
        return NumericCondition(kind=kind, operator=operator, value=number)

    if not isinstance(value, str) or not value.strip():
        raise ValidationError.invalid_condition(kind.value, "value must be a non-empty string")
    return TextCondition(kind=kind, value=value.strip(), operator=operator)


def parse_conditions(raw: Optional[Dict[str, Any]]) -> ConditionSet:
    """Parse the raw `conditions` mapping into a ConditionSet.

    Entries that are None are treated as absent. All problems are collected
    and raised together.

    Raises:
        ValidationError: With one entry per offending attribute kind.
    """
    if raw is None:
        return ConditionSet()
    if not isinstance(raw, dict):
        raise ValidationError.from_errors({"conditions": ["must be an object"]})

    parsed: Dict[AttributeKind, Condition] = {}
    errors: Dict[str, List[str]] = {}

    for key, entry in raw.items():
        if entry is None:
            continue
        try:
            kind = AttributeKind(key)
        except ValueError:
            errors[f"conditions.{key}"] = ["unknown attribute kind"]
            continue
        try:
            parsed[kind] = parse_condition(kind, entry)
        except ValidationError as e:
            for field_name, messages in e.validation.items():
                errors.setdefault(field_name, []).extend(messages)

    if errors:
        if len(errors) == 1:
            field_name, messages = next(iter(errors.items()))
            kind_name = field_name.split(".", 1)[-1]
            raise ValidationError(
                message=f"Invalid {kind_name} condition: {messages[0]}",
                validation=errors,
            )
        raise ValidationError.from_errors(errors)

    # Evaluation order follows the declaration order of AttributeKind
    ordered = {kind: parsed[kind] for kind in AttributeKind if kind in parsed}
    return ConditionSet(conditions=ordered)


def validate_request(
    subject_id: Any,
    verifier_id: Any,
    raw_conditions: Optional[Dict[str, Any]],
    requested_at: Optional[str] = None,
) -> VerificationQuery:
    """Validate a whole verification request.

    Identifiers are checked first; condition problems are reported
    together with identifier problems when both exist.
    """
    errors: Dict[str, List[str]] = {}
    subject = verifier = None
    conditions = ConditionSet()

    for raw, name in ((subject_id, "userAddress"), (verifier_id, "verifierId")):
        try:
            value = validate_identifier(raw, name)
        except ValidationError as e:
            errors.update(e.validation)
            continue
        if name == "userAddress":
            subject = value
        else:
            verifier = value

    try:
        conditions = parse_conditions(raw_conditions)
    except ValidationError as e:
        if not errors:
            raise
        errors.update(e.validation)

    if errors:
        if len(errors) == 1:
            field_name, messages = next(iter(errors.items()))
            raise ValidationError(
                message=f"Invalid {field_name}: {messages[0]}", validation=errors
            )
        raise ValidationError.from_errors(errors)

    return VerificationQuery(
        subject_id=subject,
        verifier_id=verifier,
        conditions=conditions,
        requested_at=requested_at,
    )
