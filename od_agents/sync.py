"""Bulk synchronization of Open Dental collections into local storage."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, List, Optional

from od_connector import OpenDentalClient, PracticeConfig
from od_connector.config import DEFAULT_PAGE_SIZE
from od_connector.errors import OpenDentalError, OperationCancelledError, SyncIncompleteError

from .persistence import EntityKind, PersistenceGateway

logger = logging.getLogger(__name__)

PageFetcher = Callable[[int, int, Optional[threading.Event]], List[Any]]


@dataclass
class SyncCursor:
    """Pagination state for one run; never persisted."""

    offset: int = 0
    page_size: int = DEFAULT_PAGE_SIZE
    total: int = 0
    pages: int = 0


ProgressCallback = Callable[[EntityKind, SyncCursor], None]


class BulkSynchronizer:
    """Pages through a remote collection and upserts every page.

    Re-running against unchanged remote data yields the same local state
    because records are upserted by their remote identifier. A page that
    cannot be fetched aborts the run with ``SyncIncompleteError``; pages
    already upserted stay committed.
    """

    def __init__(
        self,
        client: OpenDentalClient,
        persistence: PersistenceGateway,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        progress: Optional[ProgressCallback] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._client = client
        self._persistence = persistence
        self._page_size = page_size
        self._progress = progress
        self._today = today

    def sync(
        self,
        entity_kind: EntityKind,
        practice: PracticeConfig,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        """Mirror one collection for ``practice``; return the number of records upserted."""

        entity_kind = EntityKind(entity_kind)
        fetch = self._fetcher(entity_kind, practice)
        cursor = SyncCursor(page_size=self._page_size)
        logger.info("Starting %s sync for practice %s", entity_kind.value, practice.practice_id)

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("%s sync for practice %s cancelled", entity_kind.value, practice.practice_id)
                raise SyncIncompleteError(entity_kind.value, cursor.total, cancelled=True)
            try:
                page = fetch(cursor.offset, cursor.page_size, cancel_event)
            except OperationCancelledError as exc:
                raise SyncIncompleteError(entity_kind.value, cursor.total, exc, cancelled=True) from exc
            except OpenDentalError as exc:
                logger.error(
                    "%s sync for practice %s failed at offset %d: %s",
                    entity_kind.value,
                    practice.practice_id,
                    cursor.offset,
                    exc,
                )
                raise SyncIncompleteError(entity_kind.value, cursor.total, exc) from exc

            if not page:
                break
            cursor.total += self._persistence.upsert(entity_kind, page)
            cursor.offset += len(page)
            cursor.pages += 1
            logger.debug(
                "%s page %d committed (%d records, %d total)",
                entity_kind.value,
                cursor.pages,
                len(page),
                cursor.total,
            )
            if self._progress is not None:
                self._progress(entity_kind, cursor)
            if len(page) < cursor.page_size:
                break

        logger.info(
            "Finished %s sync for practice %s: %d record(s) in %d page(s)",
            entity_kind.value,
            practice.practice_id,
            cursor.total,
            cursor.pages,
        )
        return cursor.total

    def _fetcher(self, entity_kind: EntityKind, practice: PracticeConfig) -> PageFetcher:
        client = self._client
        clinic = practice.clinic_num

        if entity_kind is EntityKind.PATIENTS:
            return lambda offset, limit, cancel: client.list_patients(
                offset=offset, limit=limit, clinic_id=clinic, cancel_event=cancel
            )
        if entity_kind is EntityKind.PROVIDERS:
            return lambda offset, limit, cancel: client.list_providers(offset=offset, limit=limit, cancel_event=cancel)
        if entity_kind is EntityKind.OPERATORIES:
            return lambda offset, limit, cancel: client.list_operatories(
                offset=offset, limit=limit, clinic_id=clinic, cancel_event=cancel
            )

        today = self._today()
        date_start = today - timedelta(days=practice.sync_lookback_days)
        date_end = today + timedelta(days=practice.sync_lookahead_days)
        return lambda offset, limit, cancel: client.list_appointments(
            offset=offset,
            limit=limit,
            date_start=date_start,
            date_end=date_end,
            clinic_id=clinic,
            cancel_event=cancel,
        )


__all__ = ["BulkSynchronizer", "SyncCursor"]
