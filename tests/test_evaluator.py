"""Tests for condition evaluation.

Covers:
- Operator semantics at boundary values
- Calendar-aware age derivation
- Income from certificate metadata (malformed entries skipped)
- City containment and the education placeholder
- AND aggregation
"""

import json
from datetime import date

import pytest

from app.verifier.api_models import AttributeKind, Operator
from app.verifier.conditions import NumericCondition, TextCondition, parse_conditions
from app.verifier.evaluator import (
    IncomeAmount,
    SkippedMetadata,
    aggregate,
    calculate_age,
    compare,
    evaluate_condition,
    evaluate_conditions,
    highest_income,
    parse_income_metadata,
)
from app.verifier.models import EvaluationOutcome
from app.verifier.proof import decode_proof

from tests.conftest import income_certificates, make_certificate, make_subject

TODAY = date(2024, 6, 15)


def age_condition(operator: Operator, value) -> NumericCondition:
    return NumericCondition(AttributeKind.AGE, operator, value)


class TestCompare:
    """Operator semantics, exhaustively around the threshold."""

    @pytest.mark.parametrize("a", [17, 18, 19])
    def test_greater_than(self, a):
        assert compare(a, 18, Operator.GREATER_THAN) is (a > 18)

    @pytest.mark.parametrize("a", [17, 18, 19])
    def test_less_than(self, a):
        assert compare(a, 18, Operator.LESS_THAN) is (a < 18)

    @pytest.mark.parametrize("a", [17, 18, 19])
    def test_equals(self, a):
        assert compare(a, 18, Operator.EQUALS) is (a == 18)

    def test_int_float_equality(self):
        assert compare(50000, 50000.0, Operator.EQUALS)


class TestCalculateAge:
    """Whole years from date of birth."""

    def test_day_before_birthday(self):
        assert calculate_age(date(1990, 6, 15), date(2024, 6, 14)) == 33

    def test_birthday_is_inclusive(self):
        assert calculate_age(date(1990, 6, 15), date(2024, 6, 15)) == 34

    def test_earlier_month(self):
        assert calculate_age(date(1990, 12, 1), date(2024, 6, 15)) == 33

    def test_leap_day_birthday(self):
        assert calculate_age(date(2000, 2, 29), date(2023, 2, 28)) == 22
        assert calculate_age(date(2000, 2, 29), date(2023, 3, 1)) == 23


class TestIncomeMetadata:
    """Per-certificate metadata parsing as explicit results."""

    def test_amount(self):
        assert parse_income_metadata('{"amount": 40000}') == IncomeAmount(40000)

    def test_numeric_string_amount(self):
        assert parse_income_metadata('{"amount": "75000"}') == IncomeAmount(75000)

    @pytest.mark.parametrize("metadata", [
        "",
        None,
        "Salary slip FY24",
        "[40000]",
        '{"salary": 40000}',
        '{"amount": "not-a-number"}',
        '{"amount": true}',
    ])
    def test_skipped(self, metadata):
        assert isinstance(parse_income_metadata(metadata), SkippedMetadata)

    def test_highest_income_skips_malformed(self):
        assert highest_income(income_certificates()) == 90000

    def test_highest_income_defaults_to_zero(self):
        assert highest_income([]) == 0
        assert highest_income([make_certificate("free text")]) == 0


class TestEvaluateCondition:
    """Per-kind evaluation."""

    def test_age_boundary(self):
        subject = make_subject(dob=date(1990, 6, 15))
        cond = age_condition(Operator.GREATER_THAN, 33)
        assert evaluate_condition(cond, subject, None, date(2024, 6, 14)).verified is False
        assert evaluate_condition(cond, subject, None, date(2024, 6, 15)).verified is True

    def test_age_without_dob_fails(self):
        subject = make_subject(dob=None)
        outcome = evaluate_condition(age_condition(Operator.LESS_THAN, 200), subject, None, TODAY)
        assert outcome.verified is False
        assert outcome.value is None

    def test_income_uses_highest_amount(self):
        cond = NumericCondition(AttributeKind.INCOME, Operator.GREATER_THAN, 50000)
        outcome = evaluate_condition(cond, make_subject(), income_certificates(), TODAY)
        assert outcome.verified is True
        assert outcome.value == 90000

    def test_income_without_certificates(self):
        cond = NumericCondition(AttributeKind.INCOME, Operator.LESS_THAN, 10)
        outcome = evaluate_condition(cond, make_subject(), [], TODAY)
        assert outcome.verified is True
        assert outcome.value == 0

    def test_city_is_case_insensitive_containment(self):
        cond = TextCondition(AttributeKind.CITY, "mumbai")
        outcome = evaluate_condition(cond, make_subject(), None, TODAY)
        assert outcome.verified is True

    def test_city_is_not_exact_equality(self):
        subject = make_subject(address="Flat 2, Navi Mumbai")
        assert evaluate_condition(TextCondition(AttributeKind.CITY, "Mumbai"), subject, None, TODAY).verified

    def test_city_mismatch(self):
        cond = TextCondition(AttributeKind.CITY, "Delhi")
        assert evaluate_condition(cond, make_subject(), None, TODAY).verified is False

    def test_city_empty_address(self):
        cond = TextCondition(AttributeKind.CITY, "Mumbai")
        assert evaluate_condition(cond, make_subject(address=""), None, TODAY).verified is False

    @pytest.mark.parametrize("value", ["BSc", "PhD", "401 C-wing"])
    def test_education_always_fails(self, value):
        cond = TextCondition(AttributeKind.EDUCATION, value)
        assert evaluate_condition(cond, make_subject(), income_certificates(), TODAY).verified is False

    def test_proof_carries_outcome(self):
        cond = age_condition(Operator.GREATER_THAN, 18)
        outcome = evaluate_condition(cond, make_subject(), None, TODAY)
        doc = decode_proof(outcome.proof)
        assert doc["value"] == 34
        assert doc["condition"] == {"value": 18, "operator": "greaterThan"}
        assert doc["result"] is True

    def test_same_inputs_same_verdict_different_proofs(self):
        cond = TextCondition(AttributeKind.CITY, "mumbai")
        first = evaluate_condition(cond, make_subject(), None, TODAY)
        second = evaluate_condition(cond, make_subject(), None, TODAY)
        assert first.verified == second.verified
        assert first.proof != second.proof


class TestEvaluateConditions:
    """Batch evaluation and aggregation."""

    def test_only_declared_kinds_have_results(self):
        conditions = parse_conditions({
            "age": {"operator": "greaterThan", "value": 18},
            "city": {"value": "Mumbai"},
        })
        outcomes = evaluate_conditions(conditions, make_subject(), None, TODAY)
        assert list(outcomes) == ["age", "city"]
        assert aggregate(outcomes) is True

    def test_empty_set_succeeds(self):
        outcomes = evaluate_conditions(parse_conditions({}), make_subject(), None, TODAY)
        assert outcomes == {}
        assert aggregate(outcomes) is True

    def test_one_failure_fails_all(self):
        conditions = parse_conditions({
            "age": {"operator": "greaterThan", "value": 18},
            "education": {"value": "BSc"},
        })
        outcomes = evaluate_conditions(conditions, make_subject(), None, TODAY)
        assert outcomes["age"].verified is True
        assert aggregate(outcomes) is False

    @pytest.mark.parametrize("verdicts,expected", [
        ([True, True, True], True),
        ([True, False, True], False),
        ([False], False),
        ([], True),
    ])
    def test_aggregate_is_logical_and(self, verdicts, expected):
        outcomes = {str(i): EvaluationOutcome(v, "p") for i, v in enumerate(verdicts)}
        assert aggregate(outcomes) is expected

    def test_malformed_metadata_does_not_fail_batch(self):
        certs = [make_certificate("{not json"), make_certificate(json.dumps({"amount": 60000}))]
        conditions = parse_conditions({"income": {"operator": "equals", "value": 60000}})
        outcomes = evaluate_conditions(conditions, make_subject(), certs, TODAY)
        assert outcomes["income"].verified is True
