import requests
from django.db import DatabaseError as DjangoDatabaseError
from django.db import models


class ErrorCategory(models.TextChoices):
    NETWORK = 'network', 'Network'
    MEMORY = 'memory', 'Memory'
    DATABASE = 'database', 'Database'
    API = 'api', 'API'
    VALIDATION = 'validation', 'Validation'
    GENERAL = 'general', 'General'


NON_RETRYABLE_CATEGORIES = frozenset({ErrorCategory.VALIDATION})


class SyncError(Exception):
    """Base class for every failure raised by the sync engine."""

    category = ErrorCategory.GENERAL


class AuthError(SyncError):
    category = ErrorCategory.API


class FetchError(SyncError):
    category = ErrorCategory.API


class ApiError(SyncError):
    category = ErrorCategory.API


class NetworkError(SyncError):
    category = ErrorCategory.NETWORK


class StoreDatabaseError(SyncError):
    category = ErrorCategory.DATABASE


class MemoryLimitError(SyncError):
    category = ErrorCategory.MEMORY


class ValidationError(SyncError):
    category = ErrorCategory.VALIDATION


class DecodeError(ValidationError):
    """Batch payload could not be decoded into a list of product records."""


class UpsertError(ValidationError):
    """A single product record could not be written to the store."""

    def __init__(self, message, sku=None):
        super().__init__(message)
        self.sku = sku


class InvalidTransitionError(SyncError):
    category = ErrorCategory.VALIDATION

    def __init__(self, batch_id, current, target):
        super().__init__(
            f"Batch {batch_id} cannot move from '{current}' to '{target}'."
        )
        self.batch_id = batch_id
        self.current = current
        self.target = target


def classify_error(exc: BaseException) -> str:
    """Map an exception to an ErrorCategory value."""
    if isinstance(exc, SyncError):
        return exc.category
    if isinstance(exc, MemoryError):
        return ErrorCategory.MEMORY
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return ErrorCategory.NETWORK
    if isinstance(exc, requests.RequestException):
        return ErrorCategory.API
    if isinstance(exc, DjangoDatabaseError):
        return ErrorCategory.DATABASE
    if isinstance(exc, OSError):
        return ErrorCategory.NETWORK
    return ErrorCategory.GENERAL


def is_retryable(category: str) -> bool:
    return category not in NON_RETRYABLE_CATEGORIES
