"""Turns call-log tasks into ordered Open Dental API calls.

Each task runs through ``RECEIVED -> VALIDATING -> EXECUTING`` and ends in
``COMPLETED``, ``FAILED`` or (from validation) ``REJECTED``. Nothing is kept
between tasks. Partial remote mutations are reported, never rolled back:
a reschedule whose replacement booking fails leaves the original appointment
broken on the unscheduled list for an operator to repair. Cancellation is
treated the same way: the task fails at the step it had not yet started.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, TypeVar

from od_connector import OpenDentalClient, PracticeConfig
from od_connector.errors import BadRequestError, DispatchFailedError, OpenDentalError, OperationCancelledError
from od_connector.models import Appointment, AppointmentStatus, Patient, PatientStatus, TimeWindow, localize

from .availability import SlotResolver
from .persistence import EntityKind, PersistenceGateway
from .tasks import (
    AppointmentRequest,
    CancelTask,
    CreateAppointmentTask,
    DispatchResult,
    DispatchState,
    NewPatientDetails,
    OnboardPatientTask,
    RescheduleTask,
    Task,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DUPLICATE_PATIENT_MARKERS = ("already exists", "duplicate")


class AppointmentProvider(Protocol):
    """Capability implemented once per practice management system."""

    def dispatch(self, task: Task, *, cancel_event: Optional[threading.Event] = None) -> DispatchResult:
        """Execute ``task`` and report how far it got."""


def is_duplicate_patient_error(error: BadRequestError) -> bool:
    text = (error.message or str(error)).lower()
    return any(marker in text for marker in _DUPLICATE_PATIENT_MARKERS)


class OpenDentalDispatcher:
    """``AppointmentProvider`` backed by the Open Dental API."""

    def __init__(
        self,
        client: OpenDentalClient,
        practice: PracticeConfig,
        *,
        resolver: Optional[SlotResolver] = None,
        persistence: Optional[PersistenceGateway] = None,
    ) -> None:
        self._client = client
        self._practice = practice
        self._resolver = resolver or SlotResolver(client, practice)
        self._persistence = persistence
        self._tz = practice.tz

    def dispatch(self, task: Task, *, cancel_event: Optional[threading.Event] = None) -> DispatchResult:
        """Run ``task``; setting ``cancel_event`` stops it before its next remote call."""

        result = DispatchResult(task_kind=task.kind)
        result.transition(DispatchState.VALIDATING)
        problem = self._validate(task)
        if problem:
            result.transition(DispatchState.REJECTED, problem)
            logger.warning("Rejected %s task for practice %s: %s", task.kind, task.practice_id, problem)
            return result

        result.transition(DispatchState.EXECUTING)
        try:
            if isinstance(task, CancelTask):
                self._cancel(task, result, cancel_event)
            elif isinstance(task, RescheduleTask):
                self._reschedule(task, result, cancel_event)
            elif isinstance(task, CreateAppointmentTask):
                self._create(task, result, cancel_event)
            else:
                self._onboard(task, result, cancel_event)
        except DispatchFailedError as exc:
            result.error = exc
            result.failed_step = exc.step
            result.compensation_needed = exc.compensation_needed
            result.transition(DispatchState.FAILED, str(exc))
            log = logger.error if result.partial else logger.warning
            log(
                "%s task failed at %s (partial=%s, compensation_needed=%s): %s",
                task.kind,
                exc.step,
                result.partial,
                exc.compensation_needed,
                exc,
            )
            return result

        logger.info("%s task completed: %s", task.kind, result.detail)
        result.transition(DispatchState.COMPLETED)
        return result

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    def _validate(self, task: Task) -> Optional[str]:
        if task.practice_id != self._practice.practice_id:
            return f"task targets practice {task.practice_id!r}, dispatcher serves {self._practice.practice_id!r}"
        if isinstance(task, CancelTask):
            if not task.appointment_id:
                return "cancel task has no external appointment id"
        elif isinstance(task, RescheduleTask):
            if not task.appointment_id:
                return "reschedule task has no external appointment id"
            if task.new_start is None:
                return "reschedule task has no new start time"
        elif isinstance(task, CreateAppointmentTask):
            if not task.patient_id:
                return "create task has no external patient id"
            return self._validate_booking(task.provider_id, task.start, task.duration_minutes, "create task")
        elif isinstance(task, OnboardPatientTask):
            if not (task.patient.last_name or "").strip():
                return "onboard task has no patient last name"
            if task.appointment is not None:
                request = task.appointment
                return self._validate_booking(request.provider_id, request.start, request.duration_minutes, "onboard task")
        else:
            return f"unsupported task type {type(task).__name__}"
        return None

    @staticmethod
    def _validate_booking(
        provider_id: Optional[int], start: Optional[datetime], duration_minutes: int, label: str
    ) -> Optional[str]:
        if not provider_id:
            return f"{label} has no provider id"
        if start is None:
            return f"{label} has no start time"
        if duration_minutes <= 0:
            return f"{label} has a non-positive duration"
        return None

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    @staticmethod
    def _step(
        result: DispatchResult,
        name: str,
        action: Callable[[], T],
        cancel_event: Optional[threading.Event],
        *,
        mutates: bool = False,
        compensation_needed: bool = False,
        failure_prefix: str = "",
    ) -> T:
        try:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError(f"cancelled before {name}")
            value = action()
        except OpenDentalError as exc:
            raise DispatchFailedError(
                name, f"{failure_prefix}{exc}", compensation_needed=compensation_needed
            ) from exc
        result.completed_steps.append(name)
        if mutates:
            result.remote_mutated = True
        return value

    def _cancel(self, task: CancelTask, result: DispatchResult, cancel_event: Optional[threading.Event]) -> None:
        appointment_id = int(task.appointment_id)  # type: ignore[arg-type]
        self._step(
            result,
            "break_appointment",
            lambda: self._client.break_appointment(
                appointment_id,
                send_to_unscheduled_list=task.send_to_unscheduled_list,
                break_type=task.break_type,
                cancel_event=cancel_event,
            ),
            cancel_event,
            mutates=True,
        )
        result.appointment_id = appointment_id
        destination = "unscheduled list" if task.send_to_unscheduled_list else "broken"
        result.detail = f"appointment {appointment_id} cancelled ({destination})"

    def _reschedule(
        self, task: RescheduleTask, result: DispatchResult, cancel_event: Optional[threading.Event]
    ) -> None:
        appointment_id = int(task.appointment_id)  # type: ignore[arg-type]
        original = self._step(
            result,
            "get_appointment",
            lambda: self._client.get_appointment(appointment_id, cancel_event=cancel_event),
            cancel_event,
        )
        if original.status in (AppointmentStatus.BROKEN, AppointmentStatus.UNSCHEDULED):
            raise DispatchFailedError(
                "get_appointment", f"appointment {appointment_id} is already {original.status.value}"
            )
        result.patient_id = original.patient_id

        new_start = localize(task.new_start, self._tz)  # type: ignore[arg-type]
        window = TimeWindow(new_start, new_start + timedelta(minutes=original.duration_minutes))
        provider_id = task.provider_id or original.provider_id
        operatory_id = original.operatory_id

        # The new window is checked before anything is broken.
        if operatory_id:
            availability = self._step(
                result,
                "check_availability",
                lambda: self._resolver.check_availability(
                    operatory_id, window, exclude_appointment_id=appointment_id, cancel_event=cancel_event
                ),
                cancel_event,
            )
            if not availability.available:
                raise DispatchFailedError("check_availability", availability.reason or "new time is unavailable")
        else:
            operatory_id = self._resolve_operatory(
                result, provider_id, window, cancel_event, exclude_appointment_id=appointment_id
            )

        self._step(
            result,
            "break_appointment",
            lambda: self._client.break_appointment(
                appointment_id, send_to_unscheduled_list=True, cancel_event=cancel_event
            ),
            cancel_event,
            mutates=True,
        )
        replacement = Appointment(
            patient_id=original.patient_id,
            start=new_start,
            duration_minutes=original.duration_minutes,
            operatory_id=operatory_id,
            provider_id=provider_id,
            hygienist_id=original.hygienist_id,
            clinic_id=original.clinic_id,
            note=original.note,
        )
        created = self._step(
            result,
            "create_appointment",
            lambda: self._client.create_appointment(replacement, cancel_event=cancel_event),
            cancel_event,
            mutates=True,
            compensation_needed=True,
            failure_prefix=(
                f"appointment {appointment_id} was broken and left on the unscheduled list; "
                "replacement booking failed: "
            ),
        )
        result.appointment_id = created.remote_id
        result.detail = f"appointment {appointment_id} rescheduled as {created.remote_id} at {new_start.isoformat()}"

    def _create(
        self, task: CreateAppointmentTask, result: DispatchResult, cancel_event: Optional[threading.Event]
    ) -> None:
        request = AppointmentRequest(
            provider_id=task.provider_id,
            start=task.start,
            duration_minutes=task.duration_minutes,
            operatory_id=task.operatory_id,
            note=task.note,
        )
        created = self._book(result, int(task.patient_id), request, cancel_event)  # type: ignore[arg-type]
        result.detail = f"appointment {created.remote_id} booked for patient {created.patient_id}"

    def _onboard(
        self, task: OnboardPatientTask, result: DispatchResult, cancel_event: Optional[threading.Event]
    ) -> None:
        patient = self._ensure_patient(result, task.patient, cancel_event)
        result.patient_id = patient.remote_id
        result.detail = f"patient {patient.remote_id} ready"
        if task.appointment is None:
            return
        created = self._book(result, int(patient.remote_id), task.appointment, cancel_event)  # type: ignore[arg-type]
        result.detail = f"patient {patient.remote_id} onboarded with appointment {created.remote_id}"

    def _ensure_patient(
        self, result: DispatchResult, details: NewPatientDetails, cancel_event: Optional[threading.Event]
    ) -> Patient:
        candidate = Patient(
            last_name=details.last_name.strip(),
            first_name=details.first_name.strip(),
            birthdate=details.birthdate,
            wireless_phone=details.phone,
            email=details.email,
            primary_provider_id=details.primary_provider_id,
            clinic_id=self._practice.clinic_num,
            status=PatientStatus.PATIENT,
        )
        try:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("cancelled before create_patient")
            created = self._client.create_patient(candidate, cancel_event=cancel_event)
        except BadRequestError as exc:
            if not is_duplicate_patient_error(exc):
                raise DispatchFailedError("create_patient", str(exc)) from exc
            logger.info("Patient %s already exists in Open Dental; reusing it", candidate.display_name)
            existing = self._step(
                result,
                "find_existing_patient",
                lambda: self._find_existing_patient(details, cancel_event),
                cancel_event,
            )
            if existing is None:
                raise DispatchFailedError(
                    "find_existing_patient", f"remote reported a duplicate but no match was found for {candidate.display_name}"
                ) from exc
            return existing
        except OpenDentalError as exc:
            raise DispatchFailedError("create_patient", str(exc)) from exc
        result.completed_steps.append("create_patient")
        result.remote_mutated = True
        return created

    def _find_existing_patient(
        self, details: NewPatientDetails, cancel_event: Optional[threading.Event]
    ) -> Optional[Patient]:
        criteria: Dict[str, object] = {"last_name": details.last_name.strip(), "first_name": details.first_name.strip()}
        if details.birthdate is not None:
            criteria["birthdate"] = details.birthdate
        if self._persistence is not None:
            local = self._persistence.find_existing(EntityKind.PATIENTS, criteria)
            if local is not None and getattr(local, "remote_id", None):
                return local
        matches = self._client.search_patients(
            details.last_name,
            details.first_name or None,
            details.birthdate,
            clinic_id=self._practice.clinic_num,
            cancel_event=cancel_event,
        )
        for patient in matches:
            if details.birthdate is None or patient.birthdate == details.birthdate:
                return patient
        return None

    def _resolve_operatory(
        self,
        result: DispatchResult,
        provider_id: Optional[int],
        window: TimeWindow,
        cancel_event: Optional[threading.Event],
        *,
        exclude_appointment_id: Optional[int] = None,
    ) -> int:
        if not provider_id:
            raise DispatchFailedError("resolve_operatory", "no operatory or provider to book against")
        operatory_id = self._step(
            result,
            "resolve_operatory",
            lambda: self._resolver.select_operatory(
                provider_id, window, exclude_appointment_id=exclude_appointment_id, cancel_event=cancel_event
            ),
            cancel_event,
        )
        if operatory_id is None:
            raise DispatchFailedError(
                "resolve_operatory",
                f"no free operatory for provider {provider_id} at {window.start.isoformat()}",
            )
        return operatory_id

    def _book(
        self,
        result: DispatchResult,
        patient_id: int,
        request: AppointmentRequest,
        cancel_event: Optional[threading.Event],
    ) -> Appointment:
        start = localize(request.start, self._tz)  # type: ignore[arg-type]
        window = TimeWindow(start, start + timedelta(minutes=request.duration_minutes))
        operatory_id = request.operatory_id or self._resolve_operatory(
            result, request.provider_id, window, cancel_event
        )
        appointment = Appointment(
            patient_id=patient_id,
            start=start,
            duration_minutes=request.duration_minutes,
            operatory_id=operatory_id,
            provider_id=request.provider_id,
            clinic_id=self._practice.clinic_num,
            note=request.note,
        )
        created = self._step(
            result,
            "create_appointment",
            lambda: self._client.create_appointment(appointment, cancel_event=cancel_event),
            cancel_event,
            mutates=True,
        )
        result.patient_id = patient_id
        result.appointment_id = created.remote_id
        return created


__all__ = ["AppointmentProvider", "OpenDentalDispatcher", "is_duplicate_patient_error"]
