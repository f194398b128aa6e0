"""Connector for the Open Dental practice management API."""

from .client import OpenDentalClient
from .config import Credentials, PracticeConfig
from .errors import (
    AuthenticationError,
    BadRequestError,
    CredentialsUnavailable,
    DispatchFailedError,
    NotFoundError,
    OpenDentalError,
    OperationCancelledError,
    RateLimitedError,
    RemoteError,
    RemoteUnavailableError,
    ServerError,
    SyncIncompleteError,
    TransportError,
    UnexpectedResponseError,
    ValidationError,
)
from .executor import RequestExecutor
from .models import (
    Appointment,
    AppointmentStatus,
    AvailabilityResult,
    BreakType,
    ContactMethod,
    Gender,
    Operatory,
    Patient,
    PatientStatus,
    Provider,
    Slot,
    TimeWindow,
)

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AuthenticationError",
    "AvailabilityResult",
    "BadRequestError",
    "BreakType",
    "ContactMethod",
    "Credentials",
    "CredentialsUnavailable",
    "DispatchFailedError",
    "Gender",
    "NotFoundError",
    "OpenDentalClient",
    "OpenDentalError",
    "Operatory",
    "OperationCancelledError",
    "Patient",
    "PatientStatus",
    "PracticeConfig",
    "Provider",
    "RateLimitedError",
    "RemoteError",
    "RemoteUnavailableError",
    "RequestExecutor",
    "ServerError",
    "Slot",
    "SyncIncompleteError",
    "TimeWindow",
    "TransportError",
    "UnexpectedResponseError",
    "ValidationError",
]
