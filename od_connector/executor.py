"""Rate-limited, retrying execution of outbound Open Dental calls.

One ``RequestExecutor`` exists per practice credential set. Every call made by
an ``OpenDentalClient`` passes through it, so concurrent sync runs, task
dispatches and slot lookups against the same practice share one cadence.
Callers are admitted strictly in the order they asked (ticket queue), and two
admissions never start closer together than the current interval.
"""
from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Set, TypeVar

from .config import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MIN_INTERVAL_SECONDS,
)
from .errors import TRANSIENT_ERRORS, OperationCancelledError, RateLimitedError, RemoteUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_START_HISTORY = 256
_QUEUE_POLL_SECONDS = 0.05


class RequestExecutor:
    """Serializes request starts and retries transient failures."""

    def __init__(
        self,
        *,
        min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_multiplier: float = 2.0,
        jitter: float = 0.0,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        cooldown_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        name: str = "opendental",
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff_base < 0 or backoff_multiplier < 1:
            raise ValueError("backoff_base must be >= 0 and backoff_multiplier >= 1")
        if jitter < 0:
            raise ValueError("jitter must not be negative")

        self.min_interval = min_interval
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self.cooldown_seconds = cooldown_seconds
        self.cooldown_interval = cooldown_interval if cooldown_interval is not None else min_interval * 3
        self.name = name

        self._clock = clock
        self._sleep = sleep
        self._condition = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0
        self._abandoned: Set[int] = set()
        self._last_start: Optional[float] = None
        self._cooldown_until: Optional[float] = None
        self._starts: Deque[float] = deque(maxlen=_START_HISTORY)

    @property
    def current_interval(self) -> float:
        """Spacing enforced right now; widened while a rate-limit cooldown is active."""

        if self._cooldown_until is not None and self._clock() < self._cooldown_until:
            return max(self.min_interval, self.cooldown_interval)
        return self.min_interval

    @property
    def recent_starts(self) -> List[float]:
        """Clock readings of the most recent admissions, oldest first."""

        return list(self._starts)

    @property
    def pending(self) -> int:
        """Callers holding a ticket that have not finished admission."""

        with self._condition:
            return self._next_ticket - self._now_serving - len(self._abandoned)

    def execute(
        self,
        request_fn: Callable[[], T],
        *,
        cancel_event: Optional[threading.Event] = None,
        description: str = "request",
    ) -> T:
        """Run ``request_fn`` under the rate limit, retrying transient failures.

        Non-transient errors propagate from the first attempt. After
        ``max_attempts`` transient failures ``RemoteUnavailableError`` wraps the
        last one.
        """

        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            self._admit(cancel_event)
            try:
                return request_fn()
            except TRANSIENT_ERRORS as exc:
                last_error = exc
                if isinstance(exc, RateLimitedError):
                    self._enter_cooldown()
                if attempt == self.max_attempts:
                    break
                delay = self._backoff_delay(attempt, exc)
                logger.warning(
                    "[%s] %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    self.name,
                    description,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self._pause(delay, cancel_event)

        assert last_error is not None
        logger.error("[%s] %s gave up after %d attempt(s): %s", self.name, description, self.max_attempts, last_error)
        raise RemoteUnavailableError(last_error, self.max_attempts) from last_error

    def _admit(self, cancel_event: Optional[threading.Event]) -> None:
        self._check_cancelled(cancel_event)
        poll = _QUEUE_POLL_SECONDS if cancel_event is not None else None
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._condition.wait(poll)
                if ticket != self._now_serving and cancel_event is not None and cancel_event.is_set():
                    # Give the ticket up; whoever is served before it skips over it.
                    self._abandoned.add(ticket)
                    raise OperationCancelledError("operation cancelled while queued")
        try:
            self._check_cancelled(cancel_event)
            if self._last_start is not None:
                wait = self._last_start + self.current_interval - self._clock()
                if wait > 0:
                    self._pause(wait, cancel_event)
            self._last_start = self._clock()
            self._starts.append(self._last_start)
        finally:
            with self._condition:
                self._now_serving += 1
                while self._now_serving in self._abandoned:
                    self._abandoned.discard(self._now_serving)
                    self._now_serving += 1
                self._condition.notify_all()

    def _enter_cooldown(self) -> None:
        self._cooldown_until = self._clock() + self.cooldown_seconds
        logger.info(
            "[%s] rate limited; spacing requests %.2fs apart for %.0fs",
            self.name,
            max(self.min_interval, self.cooldown_interval),
            self.cooldown_seconds,
        )

    def _backoff_delay(self, attempt: int, error: BaseException) -> float:
        delay = self.backoff_base * (self.backoff_multiplier ** (attempt - 1))
        if self.jitter:
            delay += random.uniform(0, self.jitter * delay)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    def _pause(self, seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            self._sleep(seconds)
            return
        if cancel_event.wait(seconds):
            raise OperationCancelledError("operation cancelled while waiting")

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("operation cancelled")


__all__ = ["RequestExecutor"]
