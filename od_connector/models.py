"""Domain entities mirrored from Open Dental."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from enum import Enum
from typing import Optional, Tuple

from .errors import ValidationError


def localize(moment: datetime, tz: tzinfo) -> datetime:
    """Naive datetimes are practice wall-clock time; aware ones are converted."""

    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


class AppointmentStatus(Enum):
    SCHEDULED = "Scheduled"
    COMPLETE = "Complete"
    UNSCHEDULED = "UnschedList"
    BROKEN = "Broken"
    PLANNED = "Planned"
    PATIENT_NOTE = "PtNote"
    PATIENT_NOTE_COMPLETED = "PtNoteCompleted"

    @property
    def occupies_chair(self) -> bool:
        """Whether an appointment in this status blocks its operatory."""

        return self in (AppointmentStatus.SCHEDULED, AppointmentStatus.COMPLETE)


class ContactMethod(Enum):
    NONE = "None"
    DO_NOT_CALL = "DoNotCall"
    HOME_PHONE = "HmPhone"
    WORK_PHONE = "WkPhone"
    WIRELESS_PHONE = "WirelessPh"
    EMAIL = "Email"
    SEE_NOTES = "SeeNotes"
    MAIL = "Mail"
    TEXT_MESSAGE = "TextMessage"


class PatientStatus(Enum):
    PATIENT = "Patient"
    NON_PATIENT = "NonPatient"
    INACTIVE = "Inactive"
    ARCHIVED = "Archived"
    DELETED = "Deleted"
    DECEASED = "Deceased"
    PROSPECTIVE = "Prospective"


class Gender(Enum):
    MALE = "Male"
    FEMALE = "Female"
    UNKNOWN = "Unknown"
    OTHER = "Other"


class BreakType(Enum):
    MISSED = "Missed"
    CANCELLED = "Cancelled"


def compose_display_name(first_name: str, last_name: str, fallback: str = "") -> str:
    name = f"{(first_name or '').strip()} {(last_name or '').strip()}".strip()
    return name or (fallback or "").strip()


@dataclass
class Patient:
    """A patient chart. ``remote_id`` is assigned by Open Dental and never changes."""

    last_name: str
    first_name: str = ""
    remote_id: Optional[int] = None
    middle_initial: str = ""
    preferred_name: str = ""
    email: str = ""
    wireless_phone: str = ""
    home_phone: str = ""
    work_phone: str = ""
    birthdate: Optional[date] = None
    address: str = ""
    address2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    gender: Gender = Gender.UNKNOWN
    status: PatientStatus = PatientStatus.PATIENT
    primary_provider_id: Optional[int] = None
    secondary_provider_id: Optional[int] = None
    clinic_id: Optional[int] = None
    contact_method: ContactMethod = ContactMethod.NONE
    recall_method: ContactMethod = ContactMethod.NONE
    confirm_method: ContactMethod = ContactMethod.NONE

    @property
    def display_name(self) -> str:
        return compose_display_name(self.first_name, self.last_name, self.preferred_name)

    @property
    def primary_phone(self) -> str:
        """Best phone number: wireless, then home, then work."""

        for number in (self.wireless_phone, self.home_phone, self.work_phone):
            if number and number.strip():
                return number.strip()
        return ""


@dataclass
class Appointment:
    """A booking on the Open Dental schedule.

    Timestamps are timezone-aware in the practice's local zone. The optional
    workflow timestamps must be non-decreasing: arrived <= seated <= dismissed.
    """

    patient_id: int
    start: datetime
    duration_minutes: int
    remote_id: Optional[int] = None
    operatory_id: Optional[int] = None
    provider_id: Optional[int] = None
    hygienist_id: Optional[int] = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    confirmation_code: Optional[int] = None
    note: str = ""
    clinic_id: Optional[int] = None
    arrived_at: Optional[datetime] = None
    seated_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.patient_id:
            raise ValidationError("patient_id", "appointments require a patient")
        if self.duration_minutes <= 0:
            raise ValidationError("duration_minutes", "must be positive")
        previous_name, previous = None, None
        for name in ("arrived_at", "seated_at", "dismissed_at"):
            value = getattr(self, name)
            if value is None:
                continue
            if previous is not None and value < previous:
                raise ValidationError(name, f"precedes {previous_name}")
            previous_name, previous = name, value

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @property
    def window(self) -> "TimeWindow":
        return TimeWindow(self.start, self.end)


@dataclass
class Provider:
    """Dentist or hygienist. Read-only."""

    remote_id: int
    abbreviation: str
    first_name: str = ""
    last_name: str = ""
    national_provider_id: Optional[str] = None
    is_hidden: bool = False

    @property
    def display_name(self) -> str:
        return compose_display_name(self.first_name, self.last_name, self.abbreviation)


@dataclass
class Operatory:
    """A treatment chair. Read-only."""

    remote_id: int
    name: str
    abbreviation: str = ""
    provider_id: Optional[int] = None
    hygienist_id: Optional[int] = None
    clinic_id: Optional[int] = None
    is_active: bool = True


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValidationError("end", "window must end after it starts")

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and other.start < self.end

    def localized(self, tz: tzinfo) -> "TimeWindow":
        return TimeWindow(localize(self.start, tz), localize(self.end, tz))


@dataclass(frozen=True)
class AvailabilityResult:
    """Outcome of an operatory availability check."""

    available: bool
    reason: Optional[str] = None
    conflicting_appointment_ids: Tuple[int, ...] = ()


@dataclass(frozen=True)
class Slot:
    """An open block returned by the remote slot search."""

    provider_id: int
    operatory_id: Optional[int]
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AvailabilityResult",
    "BreakType",
    "ContactMethod",
    "Gender",
    "Operatory",
    "Patient",
    "PatientStatus",
    "Provider",
    "Slot",
    "TimeWindow",
    "compose_display_name",
    "localize",
]
