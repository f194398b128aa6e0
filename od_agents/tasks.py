"""Task kinds produced from call logs, and dispatch outcomes."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import ClassVar, List, Optional, Union

from od_connector.errors import DispatchFailedError
from od_connector.models import BreakType

DEFAULT_APPOINTMENT_MINUTES = 60


@dataclass(frozen=True)
class CancelTask:
    practice_id: str
    appointment_id: Optional[int]
    send_to_unscheduled_list: bool = True
    break_type: Optional[BreakType] = BreakType.CANCELLED

    kind: ClassVar[str] = "cancel"


@dataclass(frozen=True)
class RescheduleTask:
    """Move an appointment: the old one is broken and a new one booked at ``new_start``."""

    practice_id: str
    appointment_id: Optional[int]
    new_start: Optional[datetime]
    provider_id: Optional[int] = None

    kind: ClassVar[str] = "reschedule"


@dataclass(frozen=True)
class CreateAppointmentTask:
    practice_id: str
    patient_id: Optional[int]
    provider_id: Optional[int]
    start: Optional[datetime]
    duration_minutes: int = DEFAULT_APPOINTMENT_MINUTES
    operatory_id: Optional[int] = None
    note: str = ""

    kind: ClassVar[str] = "create_appointment"


@dataclass(frozen=True)
class NewPatientDetails:
    last_name: str
    first_name: str = ""
    birthdate: Optional[date] = None
    phone: str = ""
    email: str = ""
    primary_provider_id: Optional[int] = None


@dataclass(frozen=True)
class AppointmentRequest:
    provider_id: Optional[int]
    start: Optional[datetime]
    duration_minutes: int = DEFAULT_APPOINTMENT_MINUTES
    operatory_id: Optional[int] = None
    note: str = ""


@dataclass(frozen=True)
class OnboardPatientTask:
    practice_id: str
    patient: NewPatientDetails
    appointment: Optional[AppointmentRequest] = None

    kind: ClassVar[str] = "onboard_new_patient"


Task = Union[CancelTask, RescheduleTask, CreateAppointmentTask, OnboardPatientTask]


class DispatchState(Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    EXECUTING = "executing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class DispatchResult:
    """Outcome of one task.

    ``REJECTED`` means no remote call was made. ``FAILED`` with ``partial``
    set means the remote system was mutated before the failing step, and
    ``compensation_needed`` tells operators that state must be repaired by hand.
    """

    task_kind: str
    state: DispatchState = DispatchState.RECEIVED
    detail: str = ""
    history: List[DispatchState] = field(default_factory=lambda: [DispatchState.RECEIVED])
    completed_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    remote_mutated: bool = False
    compensation_needed: bool = False
    patient_id: Optional[int] = None
    appointment_id: Optional[int] = None
    error: Optional[DispatchFailedError] = None

    def transition(self, state: DispatchState, detail: Optional[str] = None) -> None:
        self.state = state
        self.history.append(state)
        if detail is not None:
            self.detail = detail

    @property
    def partial(self) -> bool:
        """Failed after the remote system had already been changed."""

        return self.state is DispatchState.FAILED and self.remote_mutated

    @property
    def succeeded(self) -> bool:
        return self.state is DispatchState.COMPLETED

    def raise_for_state(self) -> None:
        """Raise the recorded ``DispatchFailedError`` if the task did not complete."""

        if self.state is DispatchState.FAILED and self.error is not None:
            raise self.error
        if self.state is DispatchState.REJECTED:
            raise DispatchFailedError("validate", self.detail)

    def to_report_entry(self) -> dict:
        return {
            "task_kind": self.task_kind,
            "state": self.state.value,
            "detail": self.detail,
            "completed_steps": list(self.completed_steps),
            "failed_step": self.failed_step,
            "partial": self.partial,
            "compensation_needed": self.compensation_needed,
            "patient_id": self.patient_id,
            "appointment_id": self.appointment_id,
        }


__all__ = [
    "AppointmentRequest",
    "CancelTask",
    "CreateAppointmentTask",
    "DEFAULT_APPOINTMENT_MINUTES",
    "DispatchResult",
    "DispatchState",
    "NewPatientDetails",
    "OnboardPatientTask",
    "RescheduleTask",
    "Task",
]
