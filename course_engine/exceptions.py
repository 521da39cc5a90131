"""Custom exceptions for the Course Content Engine.

Exception Hierarchy:
    CourseEngineError (base)
    ├── RepositoryError
    │   ├── NotFoundError
    │   ├── UnauthorizedError
    │   └── TransientNetworkError (with retry_after)
    ├── StoreError
    │   ├── StoreUnavailableError
    │   ├── ConstraintViolationError
    │   └── StoreWriteError
    ├── ValidationError
    │   ├── IncompleteSubmissionError
    │   ├── NotEnrolledError
    │   └── InvalidLessonTypeError
    ├── ContentStateError
    └── ConfigurationError
        └── MissingConfigError
"""

from typing import Optional


class CourseEngineError(Exception):
    """Base exception for all course engine errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# Repository Errors
# =============================================================================

class RepositoryError(CourseEngineError):
    """Base class for errors signalled by the content repository."""

    def __init__(self, message: str, resource_type: Optional[str] = None, **kwargs):
        self.resource_type = resource_type
        details = kwargs.pop('details', {})
        if resource_type:
            details['resource_type'] = resource_type
        super().__init__(message, details=details)


class NotFoundError(RepositoryError):
    """Raised when a requested course, module or lesson does not exist."""

    def __init__(self, resource_type: str, resource_id: str):
        self.resource_id = resource_id
        super().__init__(
            f"{resource_type.capitalize()} '{resource_id}' not found",
            resource_type=resource_type,
            details={'resource_id': resource_id},
        )


class UnauthorizedError(RepositoryError):
    """Raised when an operation needs a user and none is signed in."""

    def __init__(self, operation: str, reason: Optional[str] = None):
        self.operation = operation
        message = f"Not authorized to perform '{operation}'"
        if reason:
            message += f": {reason}"
        super().__init__(message, details={'operation': operation})


class TransientNetworkError(RepositoryError):
    """Raised when the data service is temporarily unreachable.

    Attributes:
        retry_after: Suggested wait time in seconds before retrying
    """

    def __init__(self, operation: Optional[str] = None,
                 retry_after: Optional[float] = None,
                 message: Optional[str] = None):
        self.operation = operation
        self.retry_after = retry_after
        msg = message or "Data service temporarily unavailable"
        if operation:
            msg += f" during '{operation}'"
        super().__init__(msg, details={'operation': operation, 'retry_after': retry_after})


# =============================================================================
# Store Errors
# =============================================================================

class StoreError(CourseEngineError):
    """Raised by the local content store. The repository maps these onto
    RepositoryError or ValidationError before they reach callers."""


class StoreUnavailableError(StoreError):
    """The SQLite file could not be opened."""

    def __init__(self, db_path: str, reason: Optional[str] = None):
        self.db_path = db_path
        super().__init__(
            f"Content store at '{db_path}' is unavailable" + (f" ({reason})" if reason else ""),
            details={'db_path': db_path},
        )


class ConstraintViolationError(StoreError):
    """A write broke a UNIQUE, NOT NULL or foreign-key constraint."""

    def __init__(self, message: str, constraint: Optional[str] = None):
        self.constraint = constraint
        super().__init__(message, details={'constraint': constraint} if constraint else None)


class StoreWriteError(StoreError):
    """A write transaction was rolled back for any other reason."""

    def __init__(self, operation: str, reason: Optional[str] = None):
        self.operation = operation
        self.reason = reason
        super().__init__(
            f"Store write '{operation}' rolled back" + (f": {reason}" if reason else ""),
            details={'operation': operation},
        )


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(CourseEngineError):
    """Raised when data validation fails. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None,
                 value: Optional[str] = None):
        self.field = field
        self.value = value
        details = {'field': field} if field else {}
        if value is not None:
            details['value'] = str(value)[:100]
        super().__init__(message, details=details)


class IncompleteSubmissionError(ValidationError):
    """Raised when a quiz is submitted with unanswered questions."""

    def __init__(self, lesson_id: str, missing_question_ids: list[str]):
        self.lesson_id = lesson_id
        self.missing_question_ids = list(missing_question_ids)
        super().__init__(
            f"Quiz '{lesson_id}' has {len(self.missing_question_ids)} unanswered question(s)",
            field='answers',
            value=','.join(self.missing_question_ids),
        )


class NotEnrolledError(ValidationError):
    """Raised when a learner acts on a course they are not enrolled in."""

    def __init__(self, course_id: str, user_id: str):
        self.course_id = course_id
        self.user_id = user_id
        super().__init__(
            f"User '{user_id}' is not enrolled in course '{course_id}'",
            field='course_id',
            value=course_id,
        )


class InvalidLessonTypeError(ValidationError):
    """Raised when an operation does not apply to the lesson's type."""

    def __init__(self, lesson_id: str, lesson_type: str, expected: str):
        self.lesson_id = lesson_id
        self.lesson_type = lesson_type
        super().__init__(
            f"Lesson '{lesson_id}' is a {lesson_type} lesson, expected {expected}",
            field='type',
            value=lesson_type,
        )


# =============================================================================
# Programming Errors
# =============================================================================

class ContentStateError(CourseEngineError):
    """Raised on an illegal lesson content-state transition."""

    def __init__(self, lesson_id: str, current: str, requested: str):
        self.lesson_id = lesson_id
        super().__init__(
            f"Lesson '{lesson_id}' cannot move from {current} to {requested}",
            details={'lesson_id': lesson_id, 'current': current, 'requested': requested},
        )


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(CourseEngineError):
    """Raised when there's a configuration problem."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        super().__init__(message, details={'config_key': config_key})


class MissingConfigError(ConfigurationError):
    """Raised when a required configuration value is missing."""

    def __init__(self, config_key: str):
        super().__init__(
            f"Missing required configuration: '{config_key}'",
            config_key=config_key
        )
