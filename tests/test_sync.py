import threading
import unittest
from datetime import date
from unittest.mock import Mock, call

from od_agents import BulkSynchronizer, EntityKind, InMemoryPersistence
from od_connector import OpenDentalClient, PracticeConfig
from od_connector.errors import AuthenticationError, RemoteUnavailableError, ServerError, SyncIncompleteError
from od_connector.models import Patient


def patients(*ids):
    return [Patient(last_name=f"Patient{remote_id}", remote_id=remote_id) for remote_id in ids]


class BulkSynchronizerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = Mock(spec=OpenDentalClient)
        self.persistence = InMemoryPersistence()
        self.practice = PracticeConfig(practice_id="northside", clinic_num=2)
        self.progress = Mock()
        self.synchronizer = BulkSynchronizer(
            self.client,
            self.persistence,
            page_size=2,
            progress=self.progress,
            today=lambda: date(2024, 3, 5),
        )

    def test_pages_until_short_page(self) -> None:
        self.client.list_patients.side_effect = [patients(1, 2), patients(3)]

        total = self.synchronizer.sync(EntityKind.PATIENTS, self.practice)

        self.assertEqual(total, 3)
        self.assertEqual(self.persistence.count(EntityKind.PATIENTS), 3)
        self.assertEqual(
            self.client.list_patients.call_args_list,
            [
                call(offset=0, limit=2, clinic_id=2, cancel_event=None),
                call(offset=2, limit=2, clinic_id=2, cancel_event=None),
            ],
        )
        self.assertEqual(self.progress.call_count, 2)

    def test_exact_multiple_stops_on_empty_page(self) -> None:
        self.client.list_patients.side_effect = [patients(1, 2), patients(3, 4), []]

        self.assertEqual(self.synchronizer.sync(EntityKind.PATIENTS, self.practice), 4)
        self.assertEqual(self.client.list_patients.call_count, 3)

    def test_repeated_runs_converge_to_same_state(self) -> None:
        self.client.list_patients.side_effect = [patients(1, 2), patients(3), patients(1, 2), patients(3)]

        first = self.synchronizer.sync(EntityKind.PATIENTS, self.practice)
        second = self.synchronizer.sync(EntityKind.PATIENTS, self.practice)

        self.assertEqual(first, second)
        self.assertEqual(self.persistence.count(EntityKind.PATIENTS), 3)

    def test_failed_page_keeps_earlier_pages(self) -> None:
        outage = RemoteUnavailableError(ServerError(503, "down"), 4)
        self.client.list_patients.side_effect = [patients(1, 2), outage]

        with self.assertRaises(SyncIncompleteError) as ctx:
            self.synchronizer.sync(EntityKind.PATIENTS, self.practice)

        self.assertEqual(ctx.exception.committed, 2)
        self.assertIs(ctx.exception.cause, outage)
        self.assertFalse(ctx.exception.cancelled)
        self.assertEqual(self.persistence.count(EntityKind.PATIENTS), 2)

    def test_authentication_failure_aborts_before_any_write(self) -> None:
        self.client.list_providers.side_effect = AuthenticationError(401, "bad keys")

        with self.assertRaises(SyncIncompleteError) as ctx:
            self.synchronizer.sync(EntityKind.PROVIDERS, self.practice)

        self.assertEqual(ctx.exception.committed, 0)
        self.assertIsInstance(ctx.exception.__cause__, AuthenticationError)

    def test_cancellation_between_pages(self) -> None:
        cancel = threading.Event()
        self.client.list_patients.side_effect = [patients(1, 2), patients(3, 4)]
        self.progress.side_effect = lambda kind, cursor: cancel.set()

        with self.assertRaises(SyncIncompleteError) as ctx:
            self.synchronizer.sync(EntityKind.PATIENTS, self.practice, cancel_event=cancel)

        self.assertTrue(ctx.exception.cancelled)
        self.assertEqual(ctx.exception.committed, 2)
        self.assertEqual(self.client.list_patients.call_count, 1)

    def test_appointments_use_configured_window(self) -> None:
        self.client.list_appointments.return_value = []

        self.assertEqual(self.synchronizer.sync(EntityKind.APPOINTMENTS, self.practice), 0)

        self.client.list_appointments.assert_called_once_with(
            offset=0,
            limit=2,
            date_start=date(2024, 2, 4),
            date_end=date(2024, 6, 3),
            clinic_id=2,
            cancel_event=None,
        )

    def test_page_size_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            BulkSynchronizer(self.client, self.persistence, page_size=0)


if __name__ == "__main__":
    unittest.main()
