import unittest
from datetime import date, datetime
from unittest.mock import Mock
from zoneinfo import ZoneInfo

from od_agents import SlotQuery, SlotResolver, group_slots
from od_connector import OpenDentalClient, PracticeConfig
from od_connector.errors import ValidationError
from od_connector.models import AvailabilityResult, Operatory, Slot, TimeWindow

CHICAGO = ZoneInfo("America/Chicago")


def slot(provider_id: int, day: int, start: tuple, end: tuple, operatory_id: int = 4) -> Slot:
    return Slot(
        provider_id=provider_id,
        operatory_id=operatory_id,
        start=datetime(2024, 3, day, *start, tzinfo=CHICAGO),
        end=datetime(2024, 3, day, *end, tzinfo=CHICAGO),
    )


class GroupSlotsTests(unittest.TestCase):
    def test_groups_by_provider_and_day_in_order(self) -> None:
        raw = [
            slot(3, 6, (13, 0), (14, 0)),
            slot(3, 5, (9, 0), (10, 0)),
            slot(7, 5, (9, 0), (9, 20)),
            slot(3, 5, (8, 0), (8, 30)),
            slot(7, 5, (15, 0), (16, 0)),
        ]

        grouped = group_slots(raw, 30, CHICAGO)

        self.assertEqual(set(grouped), {3, 7})
        self.assertEqual(
            [s.start.hour for s in grouped[3][date(2024, 3, 5)]],
            [8, 9],
        )
        self.assertEqual(len(grouped[3][date(2024, 3, 6)]), 1)
        self.assertEqual([s.start.hour for s in grouped[7][date(2024, 3, 5)]], [15])

    def test_slots_shorter_than_duration_are_dropped(self) -> None:
        grouped = group_slots([slot(7, 5, (9, 0), (9, 20))], 30, CHICAGO)

        self.assertEqual(grouped, {})

    def test_day_follows_practice_zone(self) -> None:
        late_utc = Slot(
            provider_id=3,
            operatory_id=4,
            start=datetime(2024, 3, 6, 2, 0, tzinfo=ZoneInfo("UTC")),
            end=datetime(2024, 3, 6, 3, 0, tzinfo=ZoneInfo("UTC")),
        )

        grouped = group_slots([late_utc], 60, CHICAGO)

        self.assertIn(date(2024, 3, 5), grouped[3])


class SlotQueryTests(unittest.TestCase):
    def test_rejects_non_positive_duration(self) -> None:
        with self.assertRaises(ValidationError):
            SlotQuery(date(2024, 3, 5), date(2024, 3, 6), 0)

    def test_rejects_inverted_range(self) -> None:
        with self.assertRaises(ValidationError):
            SlotQuery(date(2024, 3, 6), date(2024, 3, 5), 30)


class SlotResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = Mock(spec=OpenDentalClient)
        self.practice = PracticeConfig(
            practice_id="northside",
            clinic_num=2,
            timezone="America/Chicago",
            operatory_providers={4: [3], 5: [3, 7]},
        )
        self.resolver = SlotResolver(self.client, self.practice)

    def test_naive_window_is_localized_before_checking(self) -> None:
        self.client.check_availability.return_value = AvailabilityResult(available=True)

        result = self.resolver.check_availability(4, TimeWindow(datetime(2024, 3, 5, 9), datetime(2024, 3, 5, 10)))

        self.assertTrue(result.available)
        args, kwargs = self.client.check_availability.call_args
        self.assertEqual(args[0], 4)
        self.assertEqual(args[1].start, datetime(2024, 3, 5, 9, tzinfo=CHICAGO))
        self.assertEqual(kwargs["clinic_id"], 2)

    def test_list_slots_passes_query_and_groups(self) -> None:
        self.client.list_slots.return_value = [slot(3, 5, (9, 0), (10, 0)), slot(3, 5, (11, 0), (11, 15))]

        grouped = self.resolver.list_slots(SlotQuery(date(2024, 3, 5), date(2024, 3, 7), 30, provider_id=3))

        self.client.list_slots.assert_called_once_with(
            date(2024, 3, 5),
            date(2024, 3, 7),
            length_minutes=30,
            provider_id=3,
            operatory_id=None,
            clinic_id=2,
        )
        self.assertEqual(len(grouped[3][date(2024, 3, 5)]), 1)

    def test_configured_operatories_take_precedence(self) -> None:
        self.assertEqual(self.resolver.candidate_operatories(3), [4, 5])
        self.assertEqual(self.resolver.candidate_operatories(7), [5])
        self.client.list_operatories.assert_not_called()

    def test_unmapped_provider_falls_back_to_remote_operatories(self) -> None:
        self.client.list_operatories.return_value = [
            Operatory(remote_id=8, name="Op 8", provider_id=9),
            Operatory(remote_id=9, name="Hyg", hygienist_id=9, is_active=False),
            Operatory(remote_id=10, name="Op 10", provider_id=1),
        ]

        self.assertEqual(self.resolver.candidate_operatories(9), [8])

    def test_select_operatory_skips_booked_chairs(self) -> None:
        self.client.check_availability.side_effect = [
            AvailabilityResult(available=False, reason="operatory 4 is booked"),
            AvailabilityResult(available=True),
        ]
        window = TimeWindow(datetime(2024, 3, 5, 9, tzinfo=CHICAGO), datetime(2024, 3, 5, 10, tzinfo=CHICAGO))

        self.assertEqual(self.resolver.select_operatory(3, window), 5)

    def test_select_operatory_returns_none_when_all_booked(self) -> None:
        self.client.check_availability.return_value = AvailabilityResult(available=False, reason="booked")
        window = TimeWindow(datetime(2024, 3, 5, 9, tzinfo=CHICAGO), datetime(2024, 3, 5, 10, tzinfo=CHICAGO))

        self.assertIsNone(self.resolver.select_operatory(3, window))


if __name__ == "__main__":
    unittest.main()
