"""Practice-level entry points for calling code.

``PracticeIntegration`` owns one ``RequestExecutor`` per practice, so every
sync, dispatch and slot lookup against a practice shares that practice's
request cadence, while different practices never contend with each other.
"""
from __future__ import annotations

import logging
import os
import re
import threading
from typing import Callable, Dict, Mapping, Optional, Protocol

import requests

from od_agents import (
    BulkSynchronizer,
    DispatchResult,
    EntityKind,
    GroupedSlots,
    OpenDentalDispatcher,
    PersistenceGateway,
    SlotQuery,
    SlotResolver,
    Task,
)
from od_connector import Credentials, OpenDentalClient, PracticeConfig, RequestExecutor
from od_connector.config import DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT_SECONDS
from od_connector.errors import CredentialsUnavailable
from od_connector.models import AvailabilityResult, TimeWindow

logger = logging.getLogger(__name__)

SYNC_ORDER = (EntityKind.PROVIDERS, EntityKind.OPERATORIES, EntityKind.PATIENTS, EntityKind.APPOINTMENTS)


class CredentialProvider(Protocol):
    def get_credentials(self, practice_id: str) -> Credentials:
        """Return the key pair for ``practice_id`` or raise ``CredentialsUnavailable``."""


class PracticeDirectory(Protocol):
    def get(self, practice_id: str) -> PracticeConfig:
        """Return the configuration for ``practice_id``."""


class EnvironmentCredentialProvider:
    """Reads ``OPEN_DENTAL_DEVELOPER_KEY`` and ``OPEN_DENTAL_CUSTOMER_KEY``.

    A practice-specific customer key (``OPEN_DENTAL_CUSTOMER_KEY_<PRACTICE>``,
    practice id upper-cased with non-alphanumerics as underscores) takes
    precedence over the shared one.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def get_credentials(self, practice_id: str) -> Credentials:
        suffix = re.sub(r"[^A-Za-z0-9]+", "_", practice_id).upper()
        developer_key = (self._environ.get("OPEN_DENTAL_DEVELOPER_KEY") or "").strip()
        customer_key = (
            self._environ.get(f"OPEN_DENTAL_CUSTOMER_KEY_{suffix}")
            or self._environ.get("OPEN_DENTAL_CUSTOMER_KEY")
            or ""
        ).strip()
        if not developer_key or not customer_key:
            raise CredentialsUnavailable(f"no Open Dental API keys configured for practice {practice_id!r}")
        return Credentials(developer_key=developer_key, customer_key=customer_key)


class StaticPracticeDirectory:
    """In-memory ``PracticeDirectory``."""

    def __init__(self, practices: Mapping[str, PracticeConfig]) -> None:
        self._practices = dict(practices)

    def get(self, practice_id: str) -> PracticeConfig:
        try:
            return self._practices[practice_id]
        except KeyError:
            raise KeyError(f"unknown practice {practice_id!r}") from None

    def practice_ids(self):
        return sorted(self._practices)


class PracticeIntegration:
    """Facade exposing sync, task dispatch and availability per practice."""

    def __init__(
        self,
        credentials: CredentialProvider,
        practices: PracticeDirectory,
        persistence: Optional[PersistenceGateway] = None,
        *,
        persistence_factory: Optional[Callable[[str], PersistenceGateway]] = None,
        executor_factory: Callable[[str], RequestExecutor] = lambda practice_id: RequestExecutor(name=practice_id),
        session_factory: Optional[Callable[[], requests.Session]] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._credentials = credentials
        self._practices = practices
        if persistence is None and persistence_factory is None:
            raise ValueError("persistence or persistence_factory must be provided")
        self._persistence = persistence
        self._persistence_factory = persistence_factory
        self._stores: Dict[str, PersistenceGateway] = {}
        self._executor_factory = executor_factory
        self._session_factory = session_factory
        self._page_size = page_size
        self._timeout = timeout
        self._lock = threading.Lock()
        self._clients: Dict[str, OpenDentalClient] = {}

    def practice(self, practice_id: str) -> PracticeConfig:
        return self._practices.get(practice_id)

    def persistence_for(self, practice_id: str) -> PersistenceGateway:
        """The shared gateway, or the practice's own one when a factory is configured."""

        if self._persistence_factory is None:
            return self._persistence  # type: ignore[return-value]
        with self._lock:
            store = self._stores.get(practice_id)
            if store is None:
                store = self._persistence_factory(practice_id)
                self._stores[practice_id] = store
            return store

    def client_for(self, practice_id: str) -> OpenDentalClient:
        """The practice's client; created on first use with its own executor."""

        with self._lock:
            client = self._clients.get(practice_id)
            if client is not None:
                return client
            practice = self._practices.get(practice_id)
            credentials = self._credentials.get_credentials(practice_id)
            client = OpenDentalClient(
                credentials,
                executor=self._executor_factory(practice_id),
                base_url=practice.base_url,
                timeout=self._timeout,
                timezone=practice.tz,
                session=self._session_factory() if self._session_factory else None,
            )
            self._clients[practice_id] = client
            logger.debug("Initialised Open Dental client for practice %s", practice_id)
            return client

    # ------------------------------------------------------------------
    # synchronization
    # ------------------------------------------------------------------

    def sync(
        self,
        entity_kind: EntityKind,
        practice_id: str,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        synchronizer = BulkSynchronizer(
            self.client_for(practice_id),
            self.persistence_for(practice_id),
            page_size=self._page_size,
        )
        return synchronizer.sync(entity_kind, self.practice(practice_id), cancel_event=cancel_event)

    def sync_patients(self, practice_id: str, *, cancel_event: Optional[threading.Event] = None) -> int:
        return self.sync(EntityKind.PATIENTS, practice_id, cancel_event=cancel_event)

    def sync_providers(self, practice_id: str, *, cancel_event: Optional[threading.Event] = None) -> int:
        return self.sync(EntityKind.PROVIDERS, practice_id, cancel_event=cancel_event)

    def sync_operatories(self, practice_id: str, *, cancel_event: Optional[threading.Event] = None) -> int:
        return self.sync(EntityKind.OPERATORIES, practice_id, cancel_event=cancel_event)

    def sync_appointments(self, practice_id: str, *, cancel_event: Optional[threading.Event] = None) -> int:
        return self.sync(EntityKind.APPOINTMENTS, practice_id, cancel_event=cancel_event)

    def sync_all(self, practice_id: str, *, cancel_event: Optional[threading.Event] = None) -> Dict[str, int]:
        """Sync every collection, reference data first."""

        return {
            kind.value: self.sync(kind, practice_id, cancel_event=cancel_event)
            for kind in SYNC_ORDER
        }

    # ------------------------------------------------------------------
    # tasks and availability
    # ------------------------------------------------------------------

    def dispatch_task(self, task: Task, *, cancel_event: Optional[threading.Event] = None) -> DispatchResult:
        client = self.client_for(task.practice_id)
        dispatcher = OpenDentalDispatcher(
            client,
            self.practice(task.practice_id),
            persistence=self.persistence_for(task.practice_id),
        )
        return dispatcher.dispatch(task, cancel_event=cancel_event)

    def confirm_appointment(self, practice_id: str, appointment_id: int) -> None:
        """Mark an appointment confirmed with the practice's configured confirmation status."""

        practice = self.practice(practice_id)
        if practice.confirmation_code is None:
            raise ValueError(f"practice {practice_id!r} has no confirmation_code configured")
        self.client_for(practice_id).confirm_appointment(appointment_id, practice.confirmation_code)

    def get_available_slots(self, practice_id: str, query: SlotQuery) -> GroupedSlots:
        return SlotResolver(self.client_for(practice_id), self.practice(practice_id)).list_slots(query)

    def check_operatory_availability(
        self,
        practice_id: str,
        operatory_id: int,
        window: TimeWindow,
    ) -> AvailabilityResult:
        resolver = SlotResolver(self.client_for(practice_id), self.practice(practice_id))
        return resolver.check_availability(operatory_id, window)


__all__ = [
    "CredentialProvider",
    "EnvironmentCredentialProvider",
    "PracticeDirectory",
    "PracticeIntegration",
    "StaticPracticeDirectory",
    "SYNC_ORDER",
]
