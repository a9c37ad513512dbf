"""
Shared error handling for the rule resolution service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RulesServiceException(Exception):
    """Base exception for rule service components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(RulesServiceException):
    """Caller supplied an invalid request (e.g. no organization)."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class RuleValidationError(RulesServiceException):
    """A rule write would break a rule invariant."""

    def __init__(self, message: str = "Rule validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("RULE_VALIDATION_ERROR", message, details)


class RuleParseError(RulesServiceException):
    """A stored rule document could not be turned into a Rule."""

    def __init__(self, message: str = "Rule document could not be parsed",
                 rule_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if rule_id:
            details.setdefault("rule_id", rule_id)
        self.rule_id = rule_id
        super().__init__("RULE_PARSE_ERROR", message, details)


class StoreUnavailable(RulesServiceException):
    """The rule document store could not be reached."""

    def __init__(self, message: str = "Rule store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class AuditWriteFailure(RulesServiceException):
    """A decision record could not be written to the audit sink."""

    def __init__(self, message: str = "Audit write failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUDIT_WRITE_FAILURE", message, details)
