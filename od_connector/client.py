"""Open Dental API client.

Typed operations over the Open Dental REST API. Requests are authenticated
with the ``ODFHIR {developer key}/{customer key}`` scheme, executed through a
per-practice ``RequestExecutor`` (rate limit and retries) and translated
through ``od_connector.adapter``.
"""
from __future__ import annotations

import logging
import threading
from datetime import date, tzinfo
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import adapter
from .config import DEFAULT_BASE_URL, DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT_SECONDS, PATTERN_QUANTUM_MINUTES, Credentials
from .errors import (
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    RateLimitedError,
    RemoteError,
    ServerError,
    TransportError,
    UnexpectedResponseError,
    ValidationError,
)
from .executor import RequestExecutor
from .models import (
    Appointment,
    AvailabilityResult,
    BreakType,
    Operatory,
    Patient,
    Provider,
    Slot,
    TimeWindow,
)

__all__ = ["OpenDentalClient"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_AGENT = "od-practice-bridge/1.0"


class OpenDentalClient:
    """Client for a single practice's Open Dental API access."""

    def __init__(
        self,
        credentials: Credentials,
        *,
        executor: Optional[RequestExecutor] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        timezone: Optional[tzinfo] = None,
        quantum: int = PATTERN_QUANTUM_MINUTES,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must be provided")
        if not credentials.developer_key or not credentials.customer_key:
            raise ValueError("developer_key and customer_key must be provided")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.timezone = timezone
        self.quantum = quantum
        self.executor = executor or RequestExecutor()

        self._credentials = credentials
        self._session = session or self._build_session()
        self._counter_lock = threading.Lock()
        self._request_count = 0

    @property
    def request_count(self) -> int:
        """Outbound HTTP attempts made by this client, retries included."""

        return self._request_count

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        # The executor owns retries; the transport makes exactly one attempt.
        adapter_ = HTTPAdapter(max_retries=Retry(total=0, raise_on_status=False, respect_retry_after_header=False))
        session.mount("http://", adapter_)
        session.mount("https://", adapter_)
        session.headers.update({"User-Agent": USER_AGENT})
        return session

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"ODFHIR {self._credentials.developer_key}/{self._credentials.customer_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_payload: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        if not path:
            raise ValueError("path must be provided")
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = {k: v for k, v in (params or {}).items() if v is not None}

        def send() -> Any:
            with self._counter_lock:
                self._request_count += 1
            try:
                response = self._session.request(
                    method=method.upper(),
                    url=url,
                    params=query or None,
                    json=dict(json_payload) if json_payload is not None else None,
                    headers=self._headers(),
                    timeout=self.timeout,
                )
            except requests.Timeout as exc:
                raise TransportError(f"{method} {path} timed out after {self.timeout}s") from exc
            except requests.RequestException as exc:
                raise TransportError(f"{method} {path} failed: {exc}") from exc
            return self._handle_response(response)

        return self.executor.execute(send, cancel_event=cancel_event, description=f"{method.upper()} {path}")

    @classmethod
    def _handle_response(cls, response: Response) -> Any:
        status = response.status_code
        if 200 <= status < 300:
            if status == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                return response.text

        message = cls._error_message(response)
        if status == 401:
            logger.error("Open Dental rejected the API keys (401)")
            raise AuthenticationError(status, message)
        if status == 400:
            raise BadRequestError(status, message)
        if status == 404:
            raise NotFoundError(status, message)
        if status == 429:
            raise RateLimitedError(status, message, retry_after=cls._retry_after(response))
        if status >= 500:
            raise ServerError(status, message)
        cls._log_error_response(response)
        raise RemoteError(status, message)

    @staticmethod
    def _error_message(response: Response) -> str:
        content_type = response.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                parsed = response.json()
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                for key in ("message", "Message", "error", "detail"):
                    if parsed.get(key):
                        return str(parsed[key])
            elif isinstance(parsed, str):
                return parsed
        return (response.text or "").strip()[:2048]

    @staticmethod
    def _retry_after(response: Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return max(0.0, float(value))
        except ValueError:
            return None

    @staticmethod
    def _log_error_response(response: Response) -> None:
        logger.error("Open Dental error response: status=%s body=%s", response.status_code, response.text[:2048])

    def _list(
        self,
        path: str,
        params: Mapping[str, Any],
        convert: Callable[[Mapping[str, Any]], T],
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[T]:
        try:
            payload = self._request("GET", path, params=params, cancel_event=cancel_event)
        except NotFoundError:
            return []
        if payload is None:
            return []
        rows = payload if isinstance(payload, list) else [payload]
        if not all(isinstance(row, Mapping) for row in rows):
            raise UnexpectedResponseError(path, "expected a JSON object or a list of objects")
        return [convert(row) for row in rows]

    def _get(
        self,
        path: str,
        convert: Callable[[Mapping[str, Any]], T],
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        payload = self._request("GET", path, cancel_event=cancel_event)
        if payload is None:
            raise NotFoundError(404, f"empty response for {path}")
        if not isinstance(payload, Mapping):
            raise UnexpectedResponseError(path, "expected a JSON object")
        return convert(payload)

    @staticmethod
    def _page_params(offset: int, limit: int) -> Dict[str, Any]:
        if offset < 0:
            raise ValidationError("offset", "must not be negative")
        if limit <= 0:
            raise ValidationError("limit", "must be positive")
        return {"Offset": offset, "Limit": limit}

    @staticmethod
    def _require_id(value: Optional[int], label: str) -> int:
        if not value:
            raise ValidationError(label, "must be provided")
        return int(value)

    def _to_appointment(self, payload: Mapping[str, Any]) -> Appointment:
        return adapter.appointment_to_domain(payload, self.timezone, quantum=self.quantum)

    def _to_slot(self, payload: Mapping[str, Any]) -> Slot:
        return adapter.slot_to_domain(payload, self.timezone)

    # ------------------------------------------------------------------
    # patients
    # ------------------------------------------------------------------

    def list_patients(
        self,
        *,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
        clinic_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Patient]:
        params = self._page_params(offset, limit)
        params["ClinicNum"] = clinic_id
        return self._list("patients", params, adapter.patient_to_domain, cancel_event=cancel_event)

    def get_patient(self, patient_id: int) -> Patient:
        patient_id = self._require_id(patient_id, "patient_id")
        return self._get(f"patients/{patient_id}", adapter.patient_to_domain)

    def search_patients(
        self,
        last_name: str,
        first_name: Optional[str] = None,
        birthdate: Optional[date] = None,
        *,
        clinic_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Patient]:
        """Find patients by name (and birthdate when known)."""

        if not last_name or not last_name.strip():
            raise ValidationError("last_name", "must be provided")
        params: Dict[str, Any] = {
            "LName": last_name.strip(),
            "FName": first_name.strip() if first_name else None,
            "Birthdate": adapter.format_date(birthdate) if birthdate else None,
            "ClinicNum": clinic_id,
        }
        return self._list("patients/Simple", params, adapter.patient_to_domain, cancel_event=cancel_event)

    def create_patient(self, patient: Patient, *, cancel_event: Optional[threading.Event] = None) -> Patient:
        if patient.remote_id is not None:
            raise ValidationError("remote_id", "new patients must not carry a PatNum")
        payload = adapter.patient_to_remote(patient)
        created = self._request("POST", "patients", json_payload=payload, cancel_event=cancel_event)
        if not isinstance(created, Mapping):
            raise BadRequestError(400, "patient creation returned no PatNum")
        result = adapter.patient_to_domain(created)
        logger.info("Created Open Dental patient PatNum=%s", result.remote_id)
        return result

    def update_patient(self, patient: Patient) -> Patient:
        patient_id = self._require_id(patient.remote_id, "remote_id")
        payload = adapter.patient_to_remote(patient)
        payload.pop("PatNum", None)
        updated = self._request("PUT", f"patients/{patient_id}", json_payload=payload)
        if isinstance(updated, Mapping) and updated.get("PatNum"):
            return adapter.patient_to_domain(updated)
        return patient

    # ------------------------------------------------------------------
    # providers and operatories
    # ------------------------------------------------------------------

    def list_providers(
        self,
        *,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
        clinic_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Provider]:
        params = self._page_params(offset, limit)
        params["ClinicNum"] = clinic_id
        return self._list("providers", params, adapter.provider_to_domain, cancel_event=cancel_event)

    def get_provider(self, provider_id: int) -> Provider:
        provider_id = self._require_id(provider_id, "provider_id")
        return self._get(f"providers/{provider_id}", adapter.provider_to_domain)

    def list_operatories(
        self,
        *,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
        clinic_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Operatory]:
        params = self._page_params(offset, limit)
        params["ClinicNum"] = clinic_id
        return self._list("operatories", params, adapter.operatory_to_domain, cancel_event=cancel_event)

    def get_operatory(self, operatory_id: int) -> Operatory:
        operatory_id = self._require_id(operatory_id, "operatory_id")
        return self._get(f"operatories/{operatory_id}", adapter.operatory_to_domain)

    def check_availability(
        self,
        operatory_id: int,
        window: TimeWindow,
        *,
        exclude_appointment_id: Optional[int] = None,
        clinic_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AvailabilityResult:
        """Report whether ``window`` is free of chair-occupying bookings in the operatory.

        Naive window bounds are wall-clock time in the client's timezone.
        """

        operatory_id = self._require_id(operatory_id, "operatory_id")
        if self.timezone is not None:
            window = window.localized(self.timezone)
        start, end = window.start, window.end

        conflicts: List[Appointment] = []
        offset = 0
        while True:
            page = self.list_appointments(
                offset=offset,
                date_start=start.date(),
                date_end=end.date(),
                operatory_id=operatory_id,
                clinic_id=clinic_id,
                cancel_event=cancel_event,
            )
            for appointment in page:
                if appointment.remote_id is not None and appointment.remote_id == exclude_appointment_id:
                    continue
                if appointment.operatory_id not in (None, operatory_id):
                    continue
                if appointment.status.occupies_chair and appointment.window.overlaps(window):
                    conflicts.append(appointment)
            if len(page) < DEFAULT_PAGE_SIZE:
                break
            offset += len(page)

        if not conflicts:
            return AvailabilityResult(available=True)
        first = min(conflicts, key=lambda item: item.start)
        reason = (
            f"operatory {operatory_id} is booked by appointment {first.remote_id} "
            f"from {first.start:%H:%M} to {first.end:%H:%M}"
        )
        return AvailabilityResult(
            available=False,
            reason=reason,
            conflicting_appointment_ids=tuple(a.remote_id for a in conflicts if a.remote_id is not None),
        )

    # ------------------------------------------------------------------
    # appointments
    # ------------------------------------------------------------------

    def list_appointments(
        self,
        *,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
        date_start: Optional[date] = None,
        date_end: Optional[date] = None,
        clinic_id: Optional[int] = None,
        operatory_id: Optional[int] = None,
        patient_id: Optional[int] = None,
        status: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Appointment]:
        params = self._page_params(offset, limit)
        params.update(
            {
                "dateStart": adapter.format_date(date_start) if date_start else None,
                "dateEnd": adapter.format_date(date_end) if date_end else None,
                "ClinicNum": clinic_id,
                "Op": operatory_id,
                "PatNum": patient_id,
                "AptStatus": status,
            }
        )
        return self._list("appointments", params, self._to_appointment, cancel_event=cancel_event)

    def get_appointment(self, appointment_id: int, *, cancel_event: Optional[threading.Event] = None) -> Appointment:
        appointment_id = self._require_id(appointment_id, "appointment_id")
        return self._get(f"appointments/{appointment_id}", self._to_appointment, cancel_event=cancel_event)

    def create_appointment(
        self, appointment: Appointment, *, cancel_event: Optional[threading.Event] = None
    ) -> Appointment:
        if appointment.remote_id is not None:
            raise ValidationError("remote_id", "new appointments must not carry an AptNum")
        if not appointment.operatory_id:
            raise ValidationError("operatory_id", "must be provided to book an appointment")
        payload = adapter.appointment_to_remote(appointment, self.timezone, quantum=self.quantum)
        created = self._request("POST", "appointments", json_payload=payload, cancel_event=cancel_event)
        if not isinstance(created, Mapping):
            raise BadRequestError(400, "appointment creation returned no AptNum")
        result = self._to_appointment(created)
        logger.info(
            "Created appointment AptNum=%s for PatNum=%s in Op=%s at %s",
            result.remote_id,
            result.patient_id,
            result.operatory_id,
            result.start.isoformat(),
        )
        return result

    def update_appointment(self, appointment: Appointment) -> Appointment:
        appointment_id = self._require_id(appointment.remote_id, "remote_id")
        payload = adapter.appointment_to_remote(appointment, self.timezone, quantum=self.quantum)
        payload.pop("AptNum", None)
        updated = self._request("PUT", f"appointments/{appointment_id}", json_payload=payload)
        if isinstance(updated, Mapping) and updated.get("AptNum"):
            return self._to_appointment(updated)
        return appointment

    def break_appointment(
        self,
        appointment_id: int,
        *,
        send_to_unscheduled_list: bool = True,
        break_type: Optional[BreakType] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Break an appointment, optionally moving it to the unscheduled list."""

        appointment_id = self._require_id(appointment_id, "appointment_id")
        payload: Dict[str, Any] = {"sendToUnscheduledList": "true" if send_to_unscheduled_list else "false"}
        if break_type is not None:
            payload["breakType"] = break_type.value
        self._request("PUT", f"appointments/{appointment_id}/Break", json_payload=payload, cancel_event=cancel_event)
        logger.info("Broke appointment AptNum=%s (unscheduled list=%s)", appointment_id, send_to_unscheduled_list)

    def confirm_appointment(self, appointment_id: int, confirmation_code: int) -> None:
        appointment_id = self._require_id(appointment_id, "appointment_id")
        confirmation_code = self._require_id(confirmation_code, "confirmation_code")
        self._request("PUT", f"appointments/{appointment_id}/Confirm", json_payload={"defNum": confirmation_code})

    def list_slots(
        self,
        date_start: date,
        date_end: Optional[date] = None,
        *,
        length_minutes: Optional[int] = None,
        provider_id: Optional[int] = None,
        operatory_id: Optional[int] = None,
        clinic_id: Optional[int] = None,
    ) -> List[Slot]:
        """Raw open slots from the remote slot search, in remote order."""

        date_end = date_end or date_start
        if date_end < date_start:
            raise ValidationError("date_end", "must not precede date_start")
        params: Dict[str, Any] = {
            "dateStart": adapter.format_date(date_start),
            "dateEnd": adapter.format_date(date_end),
            "lengthMinutes": length_minutes,
            "ProvNum": provider_id,
            "OpNum": operatory_id,
            "ClinicNum": clinic_id,
        }
        return self._list("appointments/Slots", params, self._to_slot)
