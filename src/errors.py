"""Error taxonomy and structured error payloads for MCP tool responses."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional
import structlog

logger = structlog.get_logger(__name__)


class ErrorCode(str, Enum):
    """Stable error codes reported to MCP callers."""
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INVALID_ARGUMENTS = "INVALID_ARGUMENTS"
    API_CONNECTION_ERROR = "API_CONNECTION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    API_TIMEOUT = "API_TIMEOUT"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class PapertrailMCPError(Exception):
    """Base class for errors surfaced to MCP callers."""

    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        """Fields specific to this kind of error."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message, **self.details()}


class RateLimitExceeded(PapertrailMCPError):
    """Raised when a caller is denied admission. Never retried internally."""

    code = ErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(self, reason: str, retry_after_seconds: float, reset_time: float,
                 remaining: int = 0):
        super().__init__(f"Rate limit exceeded: {reason}")
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds
        self.reset_time = reset_time
        self.remaining = remaining

    def details(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "retry_after": self.retry_after_seconds,
            "reset_time": self.reset_time,
            "remaining": self.remaining,
        }


class ApiConnectionFailure(PapertrailMCPError):
    """Raised when a Papertrail request failed after exhausting its retries."""

    code = ErrorCode.API_CONNECTION_ERROR

    def __init__(self, endpoint: str, message: str, status: Optional[int] = None,
                 attempts: int = 1):
        super().__init__(f"Failed after {attempts} attempts: {message}")
        self.endpoint = endpoint
        self.status = status
        self.attempts = attempts
        self.last_error = message

    def details(self) -> Dict[str, Any]:
        return {
            "api_endpoint": self.endpoint,
            "http_status": self.status,
            "attempts": self.attempts,
        }


class ApiAuthenticationFailure(ApiConnectionFailure):
    """Raised on 401/403 responses, which are not retried."""

    code = ErrorCode.AUTHENTICATION_ERROR


class ApiTimeout(PapertrailMCPError):
    """Raised when a request's deadline expires before its retries finish."""

    code = ErrorCode.API_TIMEOUT

    def __init__(self, endpoint: str, deadline: float, attempts: int,
                 last_error: Optional[str] = None):
        message = f"Deadline of {deadline:g}s expired after {attempts} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.endpoint = endpoint
        self.deadline = deadline
        self.attempts = attempts
        self.last_error = last_error

    def details(self) -> Dict[str, Any]:
        return {
            "api_endpoint": self.endpoint,
            "deadline": self.deadline,
            "attempts": self.attempts,
        }


class InvalidInput(PapertrailMCPError):
    """Raised for malformed caller-supplied arguments."""

    code = ErrorCode.INVALID_ARGUMENTS

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None):
        super().__init__(message)
        self.validation_errors = validation_errors or [message]

    def details(self) -> Dict[str, Any]:
        return {"validation_errors": self.validation_errors}


_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


def _type_matches(value: Any, expected: str) -> bool:
    python_types = _JSON_TYPES.get(expected)
    if python_types is None:
        return True
    # bool is an int subclass but never a JSON number
    if isinstance(value, bool) and expected in ("integer", "number"):
        return False
    return isinstance(value, python_types)


def validate_arguments(arguments: Dict[str, Any], schema: Dict[str, Any]) -> None:
    """Validate tool arguments against a JSON-schema style input schema.

    Only the subset the tool schemas use is checked: required fields, types
    (a field may declare a list of types), numeric minimum/maximum and string
    minLength/maxLength.

    Raises:
        InvalidInput: listing every violation found
    """
    errors: List[str] = []

    for field in schema.get("required", []):
        if arguments.get(field) is None:
            errors.append(f"Required field '{field}' is missing")

    for field, constraints in schema.get("properties", {}).items():
        value = arguments.get(field)
        if value is None:
            continue

        expected = constraints.get("type")
        if expected is not None:
            allowed = expected if isinstance(expected, list) else [expected]
            if not any(_type_matches(value, t) for t in allowed):
                errors.append(
                    f"Field '{field}' must be of type {' or '.join(allowed)}, "
                    f"got {type(value).__name__}"
                )
                continue

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if "minimum" in constraints and value < constraints["minimum"]:
                errors.append(f"Field '{field}' must be at least {constraints['minimum']}")
            if "maximum" in constraints and value > constraints["maximum"]:
                errors.append(f"Field '{field}' must be at most {constraints['maximum']}")

        if isinstance(value, str):
            if "minLength" in constraints and len(value) < constraints["minLength"]:
                errors.append(
                    f"Field '{field}' must be at least {constraints['minLength']} characters"
                )
            if "maxLength" in constraints and len(value) > constraints["maxLength"]:
                errors.append(
                    f"Field '{field}' must be at most {constraints['maxLength']} characters"
                )

    if errors:
        raise InvalidInput(f"Validation failed: {', '.join(errors)}", errors)


def error_payload(error: Exception, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the structured error response returned by MCP tools and log it."""
    if isinstance(error, PapertrailMCPError):
        body = error.to_dict()
    else:
        body = {"code": ErrorCode.INTERNAL_ERROR.value,
                "message": str(error) or "Unknown error occurred"}

    payload: Dict[str, Any] = {
        "success": False,
        "error": body.pop("message"),
        "code": body.pop("code"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **body,
    }
    if context:
        payload["context"] = context

    if isinstance(error, PapertrailMCPError):
        logger.warning("Tool call failed", code=payload["code"], error=payload["error"],
                       **(context or {}))
    else:
        logger.error("Unexpected error in tool call", error=str(error),
                     error_type=type(error).__name__, exc_info=error, **(context or {}))
    return payload
