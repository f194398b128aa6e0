"""Operatory availability checks and slot offerings."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, tzinfo
from typing import Dict, Iterable, List, Optional

from od_connector import OpenDentalClient, PracticeConfig
from od_connector.errors import ValidationError
from od_connector.models import AvailabilityResult, Slot, TimeWindow, localize

logger = logging.getLogger(__name__)

GroupedSlots = Dict[int, Dict[date, List[Slot]]]


@dataclass(frozen=True)
class SlotQuery:
    date_start: date
    date_end: date
    duration_minutes: int
    provider_id: Optional[int] = None
    operatory_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.duration_minutes <= 0:
            raise ValidationError("duration_minutes", "must be positive")
        if self.date_end < self.date_start:
            raise ValidationError("date_end", "must not precede date_start")


def group_slots(slots: Iterable[Slot], duration_minutes: int, tz: Optional[tzinfo] = None) -> GroupedSlots:
    """Group slots long enough for ``duration_minutes`` by provider, then local day.

    Slots within a day are in chronological order.
    """

    eligible = [slot for slot in slots if slot.duration_minutes >= duration_minutes]
    grouped: GroupedSlots = {}
    for slot in sorted(eligible, key=lambda item: item.start):
        local_start = localize(slot.start, tz) if tz is not None else slot.start
        grouped.setdefault(slot.provider_id, {}).setdefault(local_start.date(), []).append(slot)
    return grouped


class SlotResolver:
    """Answers availability questions for one practice."""

    def __init__(self, client: OpenDentalClient, practice: PracticeConfig) -> None:
        self._client = client
        self._practice = practice
        self._tz = practice.tz

    def check_availability(
        self,
        operatory_id: int,
        window: TimeWindow,
        *,
        exclude_appointment_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AvailabilityResult:
        result = self._client.check_availability(
            operatory_id,
            window.localized(self._tz),
            exclude_appointment_id=exclude_appointment_id,
            clinic_id=self._practice.clinic_num,
            cancel_event=cancel_event,
        )
        logger.debug("Operatory %s available=%s for %s", operatory_id, result.available, window)
        return result

    def list_slots(self, query: SlotQuery) -> GroupedSlots:
        raw = self._client.list_slots(
            query.date_start,
            query.date_end,
            length_minutes=query.duration_minutes,
            provider_id=query.provider_id,
            operatory_id=query.operatory_id,
            clinic_id=self._practice.clinic_num,
        )
        grouped = group_slots(raw, query.duration_minutes, self._tz)
        logger.info(
            "Slot search %s..%s (%d min): %d raw, %d provider group(s)",
            query.date_start,
            query.date_end,
            query.duration_minutes,
            len(raw),
            len(grouped),
        )
        return grouped

    def candidate_operatories(
        self, provider_id: int, *, cancel_event: Optional[threading.Event] = None
    ) -> List[int]:
        configured = self._practice.operatories_for_provider(provider_id)
        if configured:
            return configured
        operatories = self._client.list_operatories(clinic_id=self._practice.clinic_num, cancel_event=cancel_event)
        return [
            op.remote_id
            for op in operatories
            if op.is_active and provider_id in (op.provider_id, op.hygienist_id)
        ]

    def select_operatory(
        self,
        provider_id: int,
        window: TimeWindow,
        *,
        exclude_appointment_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[int]:
        """First operatory mapped to ``provider_id`` that is free for ``window``."""

        for operatory_id in self.candidate_operatories(provider_id, cancel_event=cancel_event):
            result = self.check_availability(
                operatory_id, window, exclude_appointment_id=exclude_appointment_id, cancel_event=cancel_event
            )
            if result.available:
                return operatory_id
            logger.debug("Operatory %s rejected: %s", operatory_id, result.reason)
        return None


__all__ = ["GroupedSlots", "SlotQuery", "SlotResolver", "group_slots", "localize"]
