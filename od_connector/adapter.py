"""Translation between Open Dental's wire format and the domain entities.

Open Dental speaks in numeric keys (``PatNum``, ``AptNum``, ``ProvNum``),
fixed-format date strings, string enums and a ``Pattern`` string in which
every character stands for one scheduling quantum. The functions here are
pure: they never perform I/O and only raise ``ValidationError`` naming the
offending field when a value cannot be interpreted.

Fields that do not survive a round trip: the per-character composition of
``Pattern`` (provider ``X`` versus hygiene ``/`` time; only its length is kept)
and durations that are not a multiple of the quantum, which encode rounded up.
"""
from __future__ import annotations

import math
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from .config import PATTERN_QUANTUM_MINUTES
from .errors import ValidationError
from .models import (
    Appointment,
    AppointmentStatus,
    ContactMethod,
    Gender,
    Operatory,
    Patient,
    PatientStatus,
    Provider,
    Slot,
)

DATE_FORMAT = "%Y-%m-%d"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
PATTERN_CHAR = "X"
_EMPTY_DATES = {"", "0001-01-01", "0001-01-01 00:00:00"}

E = TypeVar("E", bound=Enum)


# ---------------------------------------------------------------------------
# scalar codecs
# ---------------------------------------------------------------------------


def parse_date(value: Any, field: str) -> Optional[date]:
    if value is None or (isinstance(value, str) and value.strip() in _EMPTY_DATES):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip()[:10], DATE_FORMAT).date()
    except ValueError as exc:
        raise ValidationError(field, f"expected YYYY-MM-DD, got {value!r}") from exc


def format_date(value: date) -> str:
    return value.strftime(DATE_FORMAT)


def parse_datetime(value: Any, field: str, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Parse a remote timestamp. Naive values are wall-clock time in ``tz``."""

    if value is None or (isinstance(value, str) and value.strip() in _EMPTY_DATES):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        try:
            parsed = datetime.strptime(text, DATETIME_FORMAT)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError as exc:
                raise ValidationError(field, f"expected YYYY-MM-DD HH:MM:SS, got {value!r}") from exc
    if parsed.year <= 1:
        return None
    if tz is None:
        return parsed
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def format_datetime(value: datetime, tz: Optional[tzinfo] = None) -> str:
    """Render ``value`` as practice-local wall-clock time."""

    if tz is not None and value.tzinfo is not None:
        value = value.astimezone(tz)
    return value.strftime(DATETIME_FORMAT)


def decode_pattern(pattern: str, quantum: int = PATTERN_QUANTUM_MINUTES) -> int:
    """Total minutes represented by ``pattern``."""

    return len(pattern or "") * quantum


def encode_pattern(minutes: int, quantum: int = PATTERN_QUANTUM_MINUTES) -> str:
    """Pattern covering ``minutes``, rounded up to the next whole quantum."""

    if minutes <= 0:
        raise ValidationError("duration_minutes", "must be positive")
    return PATTERN_CHAR * math.ceil(minutes / quantum)


def _parse_int(value: Any, field: str) -> Optional[int]:
    """Numeric identifiers; Open Dental uses 0 for "not set"."""

    if value in (None, ""):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(field, f"expected an integer, got {value!r}") from exc
    return number or None


def _require_int(payload: Mapping[str, Any], field: str) -> int:
    number = _parse_int(payload.get(field), field)
    if number is None:
        raise ValidationError(field, "is required")
    return number


def _parse_enum(enum_type: Type[E], value: Any, field: str, default: E) -> E:
    if value in (None, ""):
        return default
    try:
        return enum_type(str(value))
    except ValueError as exc:
        raise ValidationError(field, f"unknown value {value!r}") from exc


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes", "y"}
    return False


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


def _text(payload: Mapping[str, Any], field: str) -> str:
    value = payload.get(field)
    return "" if value is None else str(value)


def _put_optional(payload: Dict[str, Any], field: str, value: Any) -> None:
    if value is not None:
        payload[field] = value


# ---------------------------------------------------------------------------
# patients
# ---------------------------------------------------------------------------


def patient_to_domain(payload: Mapping[str, Any]) -> Patient:
    return Patient(
        remote_id=_parse_int(payload.get("PatNum"), "PatNum"),
        last_name=_text(payload, "LName"),
        first_name=_text(payload, "FName"),
        middle_initial=_text(payload, "MiddleI"),
        preferred_name=_text(payload, "Preferred"),
        email=_text(payload, "Email"),
        wireless_phone=_text(payload, "WirelessPhone"),
        home_phone=_text(payload, "HmPhone"),
        work_phone=_text(payload, "WkPhone"),
        birthdate=parse_date(payload.get("Birthdate"), "Birthdate"),
        address=_text(payload, "Address"),
        address2=_text(payload, "Address2"),
        city=_text(payload, "City"),
        state=_text(payload, "State"),
        zip_code=_text(payload, "Zip"),
        gender=_parse_enum(Gender, payload.get("Gender"), "Gender", Gender.UNKNOWN),
        status=_parse_enum(PatientStatus, payload.get("PatStatus"), "PatStatus", PatientStatus.PATIENT),
        primary_provider_id=_parse_int(payload.get("PriProv"), "PriProv"),
        secondary_provider_id=_parse_int(payload.get("SecProv"), "SecProv"),
        clinic_id=_parse_int(payload.get("ClinicNum"), "ClinicNum"),
        contact_method=_parse_enum(
            ContactMethod, payload.get("PreferContactMethod"), "PreferContactMethod", ContactMethod.NONE
        ),
        recall_method=_parse_enum(
            ContactMethod, payload.get("PreferRecallMethod"), "PreferRecallMethod", ContactMethod.NONE
        ),
        confirm_method=_parse_enum(
            ContactMethod, payload.get("PreferConfirmMethod"), "PreferConfirmMethod", ContactMethod.NONE
        ),
    )


def patient_to_remote(patient: Patient) -> Dict[str, Any]:
    if not (patient.last_name or "").strip():
        raise ValidationError("last_name", "is required")
    payload: Dict[str, Any] = {
        "LName": patient.last_name,
        "FName": patient.first_name,
        "MiddleI": patient.middle_initial,
        "Preferred": patient.preferred_name,
        "Email": patient.email,
        "WirelessPhone": patient.wireless_phone,
        "HmPhone": patient.home_phone,
        "WkPhone": patient.work_phone,
        "Address": patient.address,
        "Address2": patient.address2,
        "City": patient.city,
        "State": patient.state,
        "Zip": patient.zip_code,
        "Gender": patient.gender.value,
        "PatStatus": patient.status.value,
        "PreferContactMethod": patient.contact_method.value,
        "PreferRecallMethod": patient.recall_method.value,
        "PreferConfirmMethod": patient.confirm_method.value,
    }
    _put_optional(payload, "PatNum", patient.remote_id)
    if patient.birthdate is not None:
        payload["Birthdate"] = format_date(patient.birthdate)
    _put_optional(payload, "PriProv", patient.primary_provider_id)
    _put_optional(payload, "SecProv", patient.secondary_provider_id)
    _put_optional(payload, "ClinicNum", patient.clinic_id)
    return payload


# ---------------------------------------------------------------------------
# appointments
# ---------------------------------------------------------------------------


def appointment_to_domain(
    payload: Mapping[str, Any],
    tz: Optional[tzinfo] = None,
    *,
    quantum: int = PATTERN_QUANTUM_MINUTES,
) -> Appointment:
    start = parse_datetime(payload.get("AptDateTime"), "AptDateTime", tz)
    if start is None:
        raise ValidationError("AptDateTime", "is required")
    pattern = _text(payload, "Pattern")
    if not pattern:
        raise ValidationError("Pattern", "is required")
    return Appointment(
        remote_id=_parse_int(payload.get("AptNum"), "AptNum"),
        patient_id=_require_int(payload, "PatNum"),
        start=start,
        duration_minutes=decode_pattern(pattern, quantum),
        operatory_id=_parse_int(payload.get("Op"), "Op"),
        provider_id=_parse_int(payload.get("ProvNum"), "ProvNum"),
        hygienist_id=_parse_int(payload.get("ProvHyg"), "ProvHyg"),
        status=_parse_enum(AppointmentStatus, payload.get("AptStatus"), "AptStatus", AppointmentStatus.SCHEDULED),
        confirmation_code=_parse_int(payload.get("Confirmed"), "Confirmed"),
        note=_text(payload, "Note"),
        clinic_id=_parse_int(payload.get("ClinicNum"), "ClinicNum"),
        arrived_at=parse_datetime(payload.get("DateTimeArrived"), "DateTimeArrived", tz),
        seated_at=parse_datetime(payload.get("DateTimeSeated"), "DateTimeSeated", tz),
        dismissed_at=parse_datetime(payload.get("DateTimeDismissed"), "DateTimeDismissed", tz),
    )


def appointment_to_remote(
    appointment: Appointment,
    tz: Optional[tzinfo] = None,
    *,
    quantum: int = PATTERN_QUANTUM_MINUTES,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "PatNum": appointment.patient_id,
        "AptDateTime": format_datetime(appointment.start, tz),
        "Pattern": encode_pattern(appointment.duration_minutes, quantum),
        "AptStatus": appointment.status.value,
        "Note": appointment.note,
    }
    _put_optional(payload, "AptNum", appointment.remote_id)
    _put_optional(payload, "Op", appointment.operatory_id)
    _put_optional(payload, "ProvNum", appointment.provider_id)
    _put_optional(payload, "ProvHyg", appointment.hygienist_id)
    _put_optional(payload, "Confirmed", appointment.confirmation_code)
    _put_optional(payload, "ClinicNum", appointment.clinic_id)
    for field, value in (
        ("DateTimeArrived", appointment.arrived_at),
        ("DateTimeSeated", appointment.seated_at),
        ("DateTimeDismissed", appointment.dismissed_at),
    ):
        if value is not None:
            payload[field] = format_datetime(value, tz)
    return payload


# ---------------------------------------------------------------------------
# providers, operatories, slots
# ---------------------------------------------------------------------------


def provider_to_domain(payload: Mapping[str, Any]) -> Provider:
    npi = _text(payload, "NationalProvID").strip()
    return Provider(
        remote_id=_require_int(payload, "ProvNum"),
        abbreviation=_text(payload, "Abbr"),
        first_name=_text(payload, "FName"),
        last_name=_text(payload, "LName"),
        national_provider_id=npi or None,
        is_hidden=_parse_bool(payload.get("IsHidden")),
    )


def provider_to_remote(provider: Provider) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "ProvNum": provider.remote_id,
        "Abbr": provider.abbreviation,
        "FName": provider.first_name,
        "LName": provider.last_name,
        "IsHidden": _format_bool(provider.is_hidden),
    }
    _put_optional(payload, "NationalProvID", provider.national_provider_id)
    return payload


def operatory_to_domain(payload: Mapping[str, Any]) -> Operatory:
    return Operatory(
        remote_id=_require_int(payload, "OperatoryNum"),
        name=_text(payload, "OpName"),
        abbreviation=_text(payload, "Abbrev"),
        provider_id=_parse_int(payload.get("ProvDentist"), "ProvDentist"),
        hygienist_id=_parse_int(payload.get("ProvHygienist"), "ProvHygienist"),
        clinic_id=_parse_int(payload.get("ClinicNum"), "ClinicNum"),
        is_active=not _parse_bool(payload.get("IsHidden")),
    )


def operatory_to_remote(operatory: Operatory) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "OperatoryNum": operatory.remote_id,
        "OpName": operatory.name,
        "Abbrev": operatory.abbreviation,
        "IsHidden": _format_bool(not operatory.is_active),
    }
    _put_optional(payload, "ProvDentist", operatory.provider_id)
    _put_optional(payload, "ProvHygienist", operatory.hygienist_id)
    _put_optional(payload, "ClinicNum", operatory.clinic_id)
    return payload


def slot_to_domain(payload: Mapping[str, Any], tz: Optional[tzinfo] = None) -> Slot:
    start = parse_datetime(payload.get("DateTimeStart"), "DateTimeStart", tz)
    end = parse_datetime(payload.get("DateTimeEnd"), "DateTimeEnd", tz)
    if start is None or end is None:
        raise ValidationError("DateTimeStart", "slot bounds are required")
    if end <= start:
        raise ValidationError("DateTimeEnd", "must be after DateTimeStart")
    return Slot(
        provider_id=_require_int(payload, "ProvNum"),
        operatory_id=_parse_int(payload.get("OpNum"), "OpNum"),
        start=start,
        end=end,
    )


__all__ = [
    "DATETIME_FORMAT",
    "DATE_FORMAT",
    "appointment_to_domain",
    "appointment_to_remote",
    "decode_pattern",
    "encode_pattern",
    "format_date",
    "format_datetime",
    "operatory_to_domain",
    "operatory_to_remote",
    "parse_date",
    "parse_datetime",
    "patient_to_domain",
    "patient_to_remote",
    "provider_to_domain",
    "provider_to_remote",
    "slot_to_domain",
]
