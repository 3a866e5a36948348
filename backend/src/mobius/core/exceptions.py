"""Custom exceptions for the Mobius calendar service.

This module defines all custom exceptions used throughout the application.
"""

from typing import Any


class MobiusException(Exception):
    """Base exception class for Mobius."""

    def __init__(
        self,
        message: str,
        error_code: str,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class CalendarConfigurationError(MobiusException):
    """Raised when the global calendar integration configuration cannot be loaded."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Calendar configuration unavailable: {reason}",
            error_code="CALENDAR_CONFIGURATION_ERROR",
            details=details or {"reason": reason},
        )


class ComplianceSnapshotError(MobiusException):
    """Raised when a team's compliance snapshot cannot be loaded."""

    def __init__(self, team_id: int, stage: str, reason: str, details: dict[str, Any] | None = None):
        self.team_id = team_id
        self.stage = stage
        super().__init__(
            message=f"Failed to load {stage} for team {team_id}: {reason}",
            error_code="COMPLIANCE_SNAPSHOT_ERROR",
            details=details or {"team_id": team_id, "stage": stage, "reason": reason},
        )


class CalendarProviderError(MobiusException):
    """Raised when the calendar provider rejects or fails an operation."""

    def __init__(
        self,
        operation: str,
        reason: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.operation = operation
        self.status_code = status_code
        super().__init__(
            message=f"Calendar provider {operation} failed: {reason}",
            error_code="CALENDAR_PROVIDER_ERROR",
            details=details or {"operation": operation, "reason": reason, "status_code": status_code},
        )


# Database Exceptions
class DatastoreError(MobiusException):
    """Raised when a datastore query or write fails."""

    def __init__(self, operation: str, reason: str, details: dict[str, Any] | None = None):
        self.operation = operation
        super().__init__(
            message=f"Datastore {operation} failed: {reason}",
            error_code="DATASTORE_ERROR",
            details=details or {"operation": operation, "reason": reason},
        )


class DatabaseConnectionError(MobiusException):
    """Raised when there's an error connecting to the database."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Database connection failed: {reason}",
            error_code="DATABASE_CONNECTION_ERROR",
            details=details or {"reason": reason},
        )


class LockError(MobiusException):
    """Raised when the distributed lock backend is unreachable."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Distributed lock unavailable: {reason}",
            error_code="LOCK_ERROR",
            details=details or {"reason": reason},
        )
