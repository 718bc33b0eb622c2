"""
Custom exception classes for the survey marking engine.

Provides structured error handling with user-friendly messages and a clear
split between configuration problems (no scheme, malformed boundaries),
invalid lifecycle states, write-time validation and database failures.
"""

from __future__ import annotations

from typing import Any


class SurveyMarkError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.user_message = user_message or self._get_default_user_message()

    def _get_default_user_message(self) -> str:
        return "An unexpected error occurred. Please try again."

    def __str__(self) -> str:
        return f"{self.__class__.__name__}: {self.message}"


class ValidationError(SurveyMarkError):
    """Raised when input validation fails."""

    def __init__(
        self, field: str, message: str, value: Any = None, details: dict[str, Any] | None = None
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=f"Validation failed for field '{field}': {message}",
            details=details or {"field": field, "value": value},
            user_message=f"Invalid {field.replace('_', ' ')}: {message}",
        )


class DatabaseError(SurveyMarkError):
    """Raised when database operations fail."""

    def __init__(self, message: str, operation: str, details: dict[str, Any] | None = None):
        self.operation = operation
        super().__init__(
            message=f"Database error during {operation}: {message}",
            details=details or {"operation": operation},
            user_message="A database error occurred. Please try again in a moment.",
        )


class ConnectionError(DatabaseError):
    """Raised when database connection fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, operation="connection", details=details)
        self.user_message = (
            "Unable to connect to the database. Please check your connection and try again."
        )


class IntegrityError(DatabaseError):
    """Raised when database integrity constraints are violated."""

    def __init__(
        self,
        message: str,
        constraint: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.constraint = constraint
        super().__init__(
            message=message,
            operation="integrity_check",
            details=details or {"constraint": constraint},
        )
        self.user_message = self._constraint_message()

    def _constraint_message(self) -> str:
        if self.constraint:
            if "unique" in self.constraint.lower():
                return "This item already exists (unique constraint)."
            elif "foreign" in self.constraint.lower():
                return "Referenced item no longer exists (foreign key constraint)."
        return "Data integrity error (constraint violated). Please check your input."


class NotFoundError(SurveyMarkError):
    """Raised when a referenced record does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            message=f"{entity} with ID {entity_id} not found",
            details={"entity": entity, "id": entity_id},
            user_message=f"The selected {entity.lower()} could not be found.",
        )


class SessionNotFoundError(NotFoundError):
    """Raised when a response session is not found."""

    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__("Response session", session_id)


class QuestionNotFoundError(NotFoundError):
    def __init__(self, question_id: int):
        super().__init__("Question", question_id)


class InvalidStateError(SurveyMarkError):
    """Raised when a lifecycle transition is applied from an invalid source state."""

    def __init__(self, event: str, state: str, session_id: int | None = None):
        self.event = event
        self.state = state
        self.session_id = session_id
        super().__init__(
            message=f"Cannot {event} a session in state '{state}'",
            details={"event": event, "state": state, "session_id": session_id},
            user_message=f"This action is not available while the session is {state}.",
        )


class ResponseLockedError(InvalidStateError):
    """Raised when a response is written to a session that is no longer mutable."""

    def __init__(self, state: str, session_id: int | None = None):
        super().__init__("record a response on", state, session_id)
        self.user_message = "Responses can no longer be changed for this session."


class ConditionalRuleError(SurveyMarkError):
    """Raised when a visibility condition is rejected at authoring time."""

    def __init__(self, message: str, trigger_question_id: int | None = None):
        self.trigger_question_id = trigger_question_id
        super().__init__(
            message=message,
            details={"trigger_question_id": trigger_question_id},
            user_message=f"Invalid visibility condition: {message}",
        )


class ConfigurationError(SurveyMarkError):
    """Raised when marking configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ):
        self.config_key = config_key
        super().__init__(
            message=message,
            details=details or {"config_key": config_key},
            user_message=user_message or "Configuration error. Please check your settings.",
        )


class NoActiveSchemeError(ConfigurationError):
    """Raised when an assessment has no active marking scheme to grade with."""

    def __init__(self, assessment_id: int):
        self.assessment_id = assessment_id
        super().__init__(
            message=f"No active marking scheme for assessment {assessment_id}",
            config_key="marking_scheme",
            details={"assessment_id": assessment_id},
            user_message="No marking scheme is available for this assessment.",
        )


class SchemeNotFoundError(ConfigurationError):
    def __init__(self, scheme_id: int):
        self.scheme_id = scheme_id
        super().__init__(
            message=f"Marking scheme {scheme_id} not found",
            config_key="marking_scheme",
            details={"scheme_id": scheme_id},
            user_message="No marking scheme is available for this assessment.",
        )


class MalformedGradeBoundariesError(ConfigurationError):
    def __init__(self, message: str, scheme_id: int | None = None):
        self.scheme_id = scheme_id
        super().__init__(
            message=f"Malformed grade boundaries: {message}",
            config_key="grade_boundaries",
            details={"scheme_id": scheme_id},
            user_message="The grade boundaries for this marking scheme are invalid.",
        )


class NothingToGradeError(ConfigurationError):
    """Raised when a scheme carries no active rules."""

    def __init__(self, scheme_id: int):
        self.scheme_id = scheme_id
        super().__init__(
            message=f"Marking scheme {scheme_id} has no active rules",
            config_key="marking_rules",
            details={"scheme_id": scheme_id},
            user_message="There is nothing to grade: the marking scheme has no active rules.",
        )


def handle_database_error(e: Exception, operation: str = "database operation") -> DatabaseError:
    """
    Convert generic database exceptions to appropriate custom exceptions.

    Example:
        >>> try:
        ...     session.commit()
        ... except Exception as e:
        ...     raise handle_database_error(e, "commit transaction")
    """
    error_msg = str(e).lower()

    if "connection" in error_msg or "timeout" in error_msg:
        return ConnectionError(str(e))
    elif "unique constraint" in error_msg or "duplicate" in error_msg:
        return IntegrityError(str(e), constraint="unique")
    elif "foreign key" in error_msg or "foreign_key" in error_msg:
        return IntegrityError(str(e), constraint="foreign_key")
    elif "check constraint" in error_msg:
        return IntegrityError(str(e), constraint="check")
    else:
        return DatabaseError(str(e), operation)


def create_user_friendly_error_message(error: Exception) -> str:
    """
    Create a user-friendly error message from any exception.

    Marking failures are told apart as "no scheme", "nothing to grade" and
    "internal error"; everything else falls back to a generic message.

    Example:
        >>> create_user_friendly_error_message(NoActiveSchemeError(3))
        'No marking scheme is available for this assessment.'
    """
    if isinstance(error, SurveyMarkError):
        return error.user_message

    error_type = type(error).__name__
    messages = {
        "ValueError": "Invalid input provided. Please check your data and try again.",
        "KeyError": "Required information is missing. Please check your input.",
        "TypeError": "Incorrect data type provided. Please check your input format.",
    }
    return messages.get(
        error_type, "An internal error occurred. Please try again or contact support."
    )


def log_error_details(error: Exception, context: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Create structured error details for logging.

    Example:
        >>> details = log_error_details(NoActiveSchemeError(1), {"session_id": 9})
        >>> details["error_type"]
        'NoActiveSchemeError'
    """
    details = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context or {},
    }

    if isinstance(error, SurveyMarkError):
        details.update({"user_message": error.user_message, "error_details": error.details})

    return details
