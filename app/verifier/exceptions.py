"""
Condition verifier exceptions.

Each exception carries the error code and HTTP status it is reported with,
so the HTTP layer can translate it into the error envelope without
inspecting the type.
"""

from typing import Dict, List, Optional

from app.verifier.api_models import ERROR_STATUS, ErrorCode


class VerifierError(Exception):
    """Base exception for verification failures.

    Carries an error code that maps to ErrorCode constants.
    """

    def __init__(self, code: str, message: str, status: Optional[int] = None):
        self.code = code
        self.message = message
        self.status = status if status is not None else ERROR_STATUS.get(code, 500)
        super().__init__(message)


class ValidationError(VerifierError):
    """Malformed identifiers or condition values.

    Never raised after the ledger has been touched. Always recoverable by
    the caller correcting its input.
    """

    def __init__(self, message: str, validation: Optional[Dict[str, List[str]]] = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message)
        self.validation = validation or {}

    @classmethod
    def invalid_identifier(cls, field: str, reason: str) -> "ValidationError":
        """Factory for an identifier that is missing or not address-like."""
        return cls(
            message=f"Invalid {field}: {reason}",
            validation={field: [reason]},
        )

    @classmethod
    def invalid_condition(cls, kind: str, reason: str) -> "ValidationError":
        """Factory for a condition whose operator or value is unusable."""
        return cls(
            message=f"Invalid {kind} condition: {reason}",
            validation={f"conditions.{kind}": [reason]},
        )

    @classmethod
    def from_errors(cls, errors: Dict[str, List[str]]) -> "ValidationError":
        """Factory combining every problem found in a request."""
        return cls(message="Validation failed", validation=errors)


class SubjectNotFound(VerifierError):
    """The ledger confirmed the subject does not exist.

    Reported as SERVER_ERROR with a 404 status.
    """

    def __init__(self, subject_id: str):
        super().__init__(ErrorCode.SERVER_ERROR, f"User not found: {subject_id}", status=404)
        self.subject_id = subject_id


class LedgerTimeout(VerifierError):
    """The ledger did not answer within the configured bound.

    Recoverable: the caller should retry.
    """

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            ErrorCode.TIMEOUT,
            f"Request timeout: ledger {operation} exceeded {timeout}s",
        )
        self.operation = operation
        self.timeout = timeout


class VerificationError(VerifierError):
    """Unexpected failure while verifying; reported as a server fault."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.VERIFICATION_ERROR, f"Verification failed: {message}")


class ProofDecodeError(ValueError):
    """Proof token is not base64-encoded JSON."""
