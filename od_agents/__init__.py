"""Workflows built on the Open Dental connector."""

from .availability import GroupedSlots, SlotQuery, SlotResolver, group_slots
from .dispatcher import AppointmentProvider, OpenDentalDispatcher
from .persistence import EntityKind, InMemoryPersistence, PersistenceGateway
from .sync import BulkSynchronizer, SyncCursor
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

__all__ = [
    "AppointmentProvider",
    "AppointmentRequest",
    "BulkSynchronizer",
    "CancelTask",
    "CreateAppointmentTask",
    "DispatchResult",
    "DispatchState",
    "EntityKind",
    "GroupedSlots",
    "InMemoryPersistence",
    "NewPatientDetails",
    "OnboardPatientTask",
    "OpenDentalDispatcher",
    "PersistenceGateway",
    "RescheduleTask",
    "SlotQuery",
    "SlotResolver",
    "SyncCursor",
    "Task",
    "group_slots",
]
