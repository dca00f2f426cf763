# SPDX-License-Identifier: Apache-2.0

"""
Error taxonomy for the donor-matching core.

Contract violations fail fast and reach the caller. Repository and
transport outages are recoverable: the scheduler logs them and retries
on the next sweep. Registry conflicts end the affected process only.
"""

from typing import Any, Optional


class MatchingError(Exception):
    """Base class for donor-matching errors."""
    pass


class InvalidBloodTypeError(MatchingError, ValueError):
    """Raised when a blood type is not part of the compatibility table."""

    def __init__(self, blood_type: Any):
        super().__init__(f"Invalid blood type: {blood_type!r}")
        self.blood_type = blood_type


class InvalidCoordinatesError(MatchingError, ValueError):
    """Raised when a longitude/latitude pair is outside its valid range."""

    def __init__(self, longitude: Any, latitude: Any):
        super().__init__(
            f"Invalid coordinates: longitude={longitude!r}, latitude={latitude!r}"
        )
        self.longitude = longitude
        self.latitude = latitude


class InvalidTransitionError(MatchingError):
    """Raised when a matching process is asked for a transition it cannot make."""

    def __init__(self, current_status: str, new_status: str, process_id: Optional[str] = None):
        message = f"Invalid status transition from {current_status} to {new_status}"
        if process_id:
            message = f"{message} (process {process_id})"
        super().__init__(message)
        self.current_status = current_status
        self.new_status = new_status
        self.process_id = process_id


class RepositoryUnavailableError(MatchingError):
    """Raised when the donor repository or blood request store cannot be reached."""
    pass


class NotificationServiceUnavailableError(MatchingError):
    """Raised when the transport behind the notification interface is down."""
    pass


class RegistryConflictError(MatchingError):
    """Raised on registry corruption or a conflicting mutation of one process."""

    def __init__(self, message: str, process_id: Optional[str] = None):
        super().__init__(message)
        self.process_id = process_id


class ConfigurationError(MatchingError, ValueError):
    """Raised when matching configuration is inconsistent."""
    pass


RECOVERABLE_ERRORS = (RepositoryUnavailableError, NotificationServiceUnavailableError)
