"""
Error taxonomy for the retention system.

Configuration and inventory errors abort the calling operation. Deletion and
evaluation errors are per-backup: they are collected into reports instead of
being raised to the caller.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class RetentionError(Exception):
    """Base class for all retention system errors."""

    retryable = False

    def __init__(self, message: str, cause: Optional[BaseException] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: Dict[str, Any] = dict(context)

    def with_context(self, **context: Any) -> "RetentionError":
        """Attach extra context (database name, operation, ...) and return self."""
        self.context.update(context)
        return self

    def __str__(self) -> str:
        text = self.message
        if self.context:
            details = ", ".join(f"{key}={value}" for key, value in sorted(self.context.items()))
            text = f"{text} [{details}]"
        if self.cause is not None:
            text = f"{text} (caused by: {self.cause})"
        return text


@dataclass(frozen=True)
class FieldError:
    """A single failed validation check."""
    field: str
    message: str
    value: Any = None

    def __str__(self) -> str:
        return f"validation error for field '{self.field}': {self.message}"


class ConfigurationError(RetentionError):
    """
    Invalid or under-specified retention policy, quota or storage config.

    Carries every failed check in the order the checks ran, so callers can
    report all problems at once.
    """

    def __init__(self, errors: List[FieldError], **context: Any):
        self.errors: List[FieldError] = list(errors)
        super().__init__(self._summarize(self.errors), **context)

    @staticmethod
    def _summarize(errors: List[FieldError]) -> str:
        if not errors:
            return "no validation errors"
        if len(errors) == 1:
            return str(errors[0])
        return f"{len(errors)} validation errors: {errors[0]} (and {len(errors) - 1} more)"

    @classmethod
    def single(cls, field: str, message: str, value: Any = None, **context: Any) -> "ConfigurationError":
        return cls([FieldError(field, message, value)], **context)

    def __iter__(self):
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    @property
    def fields(self) -> List[str]:
        return [error.field for error in self.errors]


class ValidationErrors:
    """Accumulates FieldErrors and raises them as one ConfigurationError."""

    def __init__(self):
        self._errors: List[FieldError] = []

    def add(self, field: str, message: str, value: Any = None):
        self._errors.append(FieldError(field, message, value))

    def extend(self, errors: List[FieldError], prefix: str = ""):
        for error in errors:
            field = f"{prefix}.{error.field}" if prefix else error.field
            self._errors.append(FieldError(field, error.message, error.value))

    def has_errors(self) -> bool:
        return bool(self._errors)

    @property
    def errors(self) -> List[FieldError]:
        return list(self._errors)

    def raise_if_any(self, **context: Any):
        if self._errors:
            raise ConfigurationError(self._errors, **context)


class InventoryAccessError(RetentionError):
    """Listing backups failed; the whole report or cleanup call is aborted."""

    retryable = True


class DeletionError(RetentionError):
    """A single backup could not be deleted."""

    retryable = True

    def __init__(self, backup_id: str, cause: Optional[BaseException] = None, **context: Any):
        super().__init__(f"failed to delete backup {backup_id}", cause, backup_id=backup_id, **context)
        self.backup_id = backup_id


class EvaluationError(RetentionError):
    """A backup record could not be classified and was excluded from evaluation."""

    def __init__(self, backup_id: str, message: str, **context: Any):
        super().__init__(message, backup_id=backup_id, **context)
        self.backup_id = backup_id


def is_retryable(error: BaseException) -> bool:
    """Whether a caller may retry the operation that raised ``error``."""
    return isinstance(error, RetentionError) and error.retryable
