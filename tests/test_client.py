import json
import unittest
from datetime import date, datetime, timedelta
from unittest.mock import Mock
from zoneinfo import ZoneInfo

import requests

from od_connector import Credentials, OpenDentalClient, RequestExecutor
from od_connector.errors import (
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    RemoteUnavailableError,
    TransportError,
    UnexpectedResponseError,
    ValidationError,
)
from od_connector.models import Appointment, BreakType, Patient, TimeWindow

CHICAGO = ZoneInfo("America/Chicago")


def make_response(status: int, payload=None, *, headers=None, text=None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.encoding = "utf-8"
    if payload is not None:
        response._content = json.dumps(payload).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = (text or "").encode("utf-8")
    response.headers.update(headers or {})
    return response


def appointment_row(apt_num: int, start: str, pattern: str = "X" * 12, status: str = "Scheduled", op: int = 4):
    return {
        "AptNum": apt_num,
        "PatNum": 42,
        "AptDateTime": start,
        "Pattern": pattern,
        "Op": op,
        "ProvNum": 3,
        "AptStatus": status,
    }


class OpenDentalClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps = []
        self.session = Mock(spec=requests.Session)
        self.executor = RequestExecutor(
            min_interval=0.0,
            max_attempts=2,
            backoff_base=0.0,
            sleep=self.sleeps.append,
        )
        self.client = OpenDentalClient(
            Credentials("dev-key", "cust-key"),
            executor=self.executor,
            base_url="https://od.example.test/api/v1/",
            timezone=CHICAGO,
            session=self.session,
        )

    def last_call(self):
        return self.session.request.call_args.kwargs

    def test_requests_carry_odfhir_authorization(self) -> None:
        self.session.request.return_value = make_response(200, {"PatNum": 7, "LName": "Rivera"})

        patient = self.client.get_patient(7)

        call = self.last_call()
        self.assertEqual(patient.remote_id, 7)
        self.assertEqual(call["method"], "GET")
        self.assertEqual(call["url"], "https://od.example.test/api/v1/patients/7")
        self.assertEqual(call["headers"]["Authorization"], "ODFHIR dev-key/cust-key")
        self.assertEqual(call["headers"]["Content-Type"], "application/json")
        self.assertEqual(call["timeout"], self.client.timeout)

    def test_missing_keys_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            OpenDentalClient(Credentials("", "cust"), session=self.session)

    def test_lookup_404_raises_not_found(self) -> None:
        self.session.request.return_value = make_response(404, {"message": "Patient not found"})

        with self.assertRaises(NotFoundError) as ctx:
            self.client.get_patient(99)

        self.assertEqual(ctx.exception.message, "Patient not found")
        self.assertEqual(self.client.request_count, 1)

    def test_list_404_is_empty(self) -> None:
        self.session.request.return_value = make_response(404, text="Not Found")

        self.assertEqual(self.client.list_patients(), [])

    def test_authentication_failure_is_not_retried(self) -> None:
        self.session.request.return_value = make_response(401, text="Invalid Authorization header")

        with self.assertRaises(AuthenticationError):
            self.client.list_providers()

        self.assertEqual(self.client.request_count, 1)

    def test_server_error_is_retried_then_succeeds(self) -> None:
        self.session.request.side_effect = [
            make_response(503, text="maintenance"),
            make_response(200, [{"ProvNum": 3, "Abbr": "DOC1"}]),
        ]

        providers = self.client.list_providers()

        self.assertEqual([provider.remote_id for provider in providers], [3])
        self.assertEqual(self.client.request_count, 2)

    def test_persistent_transport_failure_exhausts_retries(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("reset by peer")

        with self.assertRaises(RemoteUnavailableError) as ctx:
            self.client.list_operatories()

        self.assertIsInstance(ctx.exception.last_error, TransportError)
        self.assertEqual(self.client.request_count, 2)

    def test_rate_limit_waits_for_retry_after(self) -> None:
        self.session.request.side_effect = [
            make_response(429, text="Too Many Requests", headers={"Retry-After": "7"}),
            make_response(200, []),
        ]

        self.assertEqual(self.client.list_patients(), [])
        self.assertIn(7.0, self.sleeps)

    def test_list_appointments_sends_filters_and_paging(self) -> None:
        self.session.request.return_value = make_response(200, [appointment_row(900, "2024-03-05 09:00:00")])

        appointments = self.client.list_appointments(
            offset=500, limit=100, date_start=date(2024, 3, 1), date_end=date(2024, 3, 31), operatory_id=4
        )

        params = self.last_call()["params"]
        self.assertEqual(
            params,
            {"Offset": 500, "Limit": 100, "dateStart": "2024-03-01", "dateEnd": "2024-03-31", "Op": 4},
        )
        self.assertEqual(appointments[0].start, datetime(2024, 3, 5, 9, 0, tzinfo=CHICAGO))

    def test_break_appointment_payload(self) -> None:
        self.session.request.return_value = make_response(200, text="")

        self.client.break_appointment(900, send_to_unscheduled_list=True, break_type=BreakType.CANCELLED)

        call = self.last_call()
        self.assertEqual(call["method"], "PUT")
        self.assertTrue(call["url"].endswith("/appointments/900/Break"))
        self.assertEqual(call["json"], {"sendToUnscheduledList": "true", "breakType": "Cancelled"})

    def test_confirm_appointment_payload(self) -> None:
        self.session.request.return_value = make_response(200, text="")

        self.client.confirm_appointment(900, 19)

        call = self.last_call()
        self.assertTrue(call["url"].endswith("/appointments/900/Confirm"))
        self.assertEqual(call["json"], {"defNum": 19})

    def test_create_appointment_requires_operatory(self) -> None:
        appointment = Appointment(patient_id=42, start=datetime(2024, 3, 5, 9, tzinfo=CHICAGO), duration_minutes=60)

        with self.assertRaises(ValidationError) as ctx:
            self.client.create_appointment(appointment)

        self.assertEqual(ctx.exception.field, "operatory_id")
        self.session.request.assert_not_called()

    def test_create_appointment_posts_pattern(self) -> None:
        self.session.request.return_value = make_response(201, appointment_row(901, "2024-03-05 09:00:00"))
        appointment = Appointment(
            patient_id=42,
            start=datetime(2024, 3, 5, 9, tzinfo=CHICAGO),
            duration_minutes=60,
            operatory_id=4,
            provider_id=3,
        )

        created = self.client.create_appointment(appointment)

        body = self.last_call()["json"]
        self.assertEqual(body["Pattern"], "X" * 12)
        self.assertEqual(body["AptDateTime"], "2024-03-05 09:00:00")
        self.assertNotIn("AptNum", body)
        self.assertEqual(created.remote_id, 901)

    def test_duplicate_patient_surfaces_bad_request(self) -> None:
        self.session.request.return_value = make_response(400, text="Patient already exists.")

        with self.assertRaises(BadRequestError) as ctx:
            self.client.create_patient(Patient(last_name="Rivera", first_name="Ana"))

        self.assertIn("already exists", ctx.exception.message)

    def test_non_json_success_body_is_rejected(self) -> None:
        self.session.request.return_value = make_response(200, text="<html>Scheduled maintenance</html>")

        with self.assertRaises(UnexpectedResponseError) as ctx:
            self.client.list_patients()

        self.assertEqual(ctx.exception.path, "patients")
        with self.assertRaises(UnexpectedResponseError):
            self.client.get_patient(7)

    def test_list_of_non_objects_is_rejected(self) -> None:
        self.session.request.return_value = make_response(200, ["DOC1", "DOC2"])

        with self.assertRaises(UnexpectedResponseError):
            self.client.list_providers()


class AvailabilityCheckTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = Mock(spec=requests.Session)
        self.session.request.return_value = make_response(
            200,
            [
                appointment_row(900, "2024-03-05 09:00:00"),
                appointment_row(901, "2024-03-05 11:00:00", status="Broken"),
            ],
        )
        self.client = OpenDentalClient(
            Credentials("dev-key", "cust-key"),
            executor=RequestExecutor(min_interval=0.0, sleep=lambda _: None),
            timezone=CHICAGO,
            session=self.session,
        )

    def window(self, start_hour: int, start_minute: int, minutes: int = 60) -> TimeWindow:
        start = datetime(2024, 3, 5, start_hour, start_minute, tzinfo=CHICAGO)
        return TimeWindow(start, start + timedelta(minutes=minutes))

    def test_overlapping_window_is_unavailable(self) -> None:
        result = self.client.check_availability(4, self.window(9, 30))

        self.assertFalse(result.available)
        self.assertEqual(result.conflicting_appointment_ids, (900,))
        self.assertIn("appointment 900", result.reason)

    def test_adjacent_window_is_available(self) -> None:
        result = self.client.check_availability(4, self.window(10, 0))

        self.assertTrue(result.available)

    def test_broken_appointments_do_not_block(self) -> None:
        result = self.client.check_availability(4, self.window(11, 0))

        self.assertTrue(result.available)

    def test_excluded_appointment_is_ignored(self) -> None:
        result = self.client.check_availability(4, self.window(9, 30), exclude_appointment_id=900)

        self.assertTrue(result.available)

    def test_naive_window_is_read_in_client_timezone(self) -> None:
        overlapping = TimeWindow(datetime(2024, 3, 5, 9, 30), datetime(2024, 3, 5, 10, 0))
        adjacent = TimeWindow(datetime(2024, 3, 5, 10, 0), datetime(2024, 3, 5, 11, 0))

        self.assertFalse(self.client.check_availability(4, overlapping).available)
        self.assertTrue(self.client.check_availability(4, adjacent).available)

    def test_naive_late_evening_window_queries_its_local_date(self) -> None:
        self.client.check_availability(4, TimeWindow(datetime(2024, 3, 5, 22, 0), datetime(2024, 3, 5, 23, 0)))

        params = self.session.request.call_args.kwargs["params"]
        self.assertEqual(params["dateStart"], "2024-03-05")
        self.assertEqual(params["dateEnd"], "2024-03-05")

    def test_queries_operatory_for_window_dates(self) -> None:
        self.client.check_availability(4, self.window(9, 30))

        params = self.session.request.call_args.kwargs["params"]
        self.assertEqual(params["Op"], 4)
        self.assertEqual(params["dateStart"], "2024-03-05")
        self.assertEqual(params["dateEnd"], "2024-03-05")


if __name__ == "__main__":
    unittest.main()
