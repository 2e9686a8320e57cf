"""
Custom exceptions for the backup controller.

This module defines all custom exceptions used throughout the controller
for consistent error handling and reporting.
"""
from typing import Optional, Dict, Any


class ControllerException(Exception):
    """
    Base exception for all controller errors.

    All custom exceptions should inherit from this base class.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(ControllerException):
    """
    Raised when a requested resource is not found.

    The event handler treats this as success: the object is already gone.
    """

    def __init__(self, resource: str, name: str, details: Optional[Dict[str, Any]] = None):
        message = f"{resource} '{name}' not found"
        super().__init__(
            message=message,
            details=details or {"resource": resource, "name": name},
        )


class ConflictError(ControllerException):
    """
    Raised when a write is rejected because the object changed since it was read.

    Used for Kubernetes optimistic concurrency (resourceVersion) conflicts.
    """


class ValidationError(ControllerException):
    """
    Raised when a backup spec is invalid.

    Maps to a Failed status carrying the message.
    """


class TransitionError(ControllerException):
    """
    Raised when a computed status is not a legal successor of the current one.

    Signals a defect in the state handlers, not a transient condition.
    """


class UnsupportedStateError(TransitionError):
    """Raised when no handler is registered for a backup state."""

    def __init__(self, state: str):
        super().__init__(
            message=f"state {state or 'None'} is not supported",
            details={"state": state},
        )


class KubernetesError(ControllerException):
    """
    Raised when a Kubernetes API call fails.

    Used for connectivity problems, RBAC failures, server errors, etc.
    """


class DriverError(ControllerException):
    """Raised when the ArangoDB backup API returns an error."""


class BackupNotFoundError(DriverError):
    """Raised when the ArangoDB deployment does not know a backup ID."""


class DriverUnavailableError(DriverError):
    """Raised when the ArangoDB deployment cannot be reached."""
