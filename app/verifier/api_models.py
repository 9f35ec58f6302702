"""
Condition verifier API models.

Wire shapes for the /verify, /verify/history, /user and /certificates
endpoints, the error code registry and the success/error envelopes.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Condition vocabulary
# =============================================================================

class AttributeKind(str, Enum):
    """Subject attribute a condition can be declared on."""
    AGE = "age"
    INCOME = "income"
    CITY = "city"
    EDUCATION = "education"


class Operator(str, Enum):
    """Comparison operator of a condition."""
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    EQUALS = "equals"


NUMERIC_KINDS = frozenset({AttributeKind.AGE, AttributeKind.INCOME})


# =============================================================================
# Request Models
# =============================================================================

class VerifyRequest(BaseModel):
    """Request body for the /verify endpoint.

    Field types are loose: identifier format and condition
    values are checked by app.verifier.conditions so that every problem is
    reported in the VALIDATION_ERROR envelope rather than as a framework 422.
    """
    model_config = ConfigDict(populate_by_name=True)

    user_address: Optional[str] = Field(default=None, alias="userAddress")
    verifier_id: Optional[str] = Field(default=None, alias="verifierId")
    conditions: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None


# =============================================================================
# Error Models
# =============================================================================

class ErrorCode:
    """Stable error codes carried in the error envelope."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TIMEOUT = "TIMEOUT"
    VERIFICATION_ERROR = "VERIFICATION_ERROR"
    SERVER_ERROR = "SERVER_ERROR"


# HTTP status per error code
ERROR_STATUS: Dict[str, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.VERIFICATION_ERROR: 500,
    ErrorCode.SERVER_ERROR: 500,
}


class ApiError(BaseModel):
    message: str
    status: int
    code: str
    validation: Optional[Dict[str, List[str]]] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ApiError


# =============================================================================
# Envelopes
# =============================================================================

def success(data: Any) -> Dict[str, Any]:
    """Wrap data in the success envelope."""
    return {"success": True, "data": data}


def err(
    message: str,
    status: Optional[int] = None,
    code: str = ErrorCode.SERVER_ERROR,
    validation: Optional[Dict[str, List[str]]] = None,
) -> Dict[str, Any]:
    """Build the error envelope.

    The status defaults to the one registered for the code.
    """
    error = ApiError(
        message=message,
        status=status if status is not None else ERROR_STATUS.get(code, 500),
        code=code,
        validation=validation,
    )
    return ErrorResponse(error=error).model_dump(exclude_none=True)
