"""Core refresh workflow: gate, fetch, decompose, commit, reschedule."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List

from .db import PriceStore
from .decomposer import decompose
from .errors import DecodeError, FetchError
from .fetcher import FeedFetcher
from .models import CycleResult, CycleState, CycleStatus, Snapshot
from .scheduler import RefreshScheduler, next_refresh_time

logger = logging.getLogger(__name__)

RAW_EXCERPT_LENGTH = 200

CompletionListener = Callable[[CycleResult], None]


def always_eligible() -> bool:
    return True


def background_data_gate(enabled: bool) -> Callable[[], bool]:
    """Gate that mirrors the device-wide background data switch."""

    def gate() -> bool:
        return enabled

    return gate


@dataclass
class RefreshCycle:
    """Coordinates the fetch, decompose, commit and reschedule steps.

    Only one cycle runs at a time; a trigger that arrives while a cycle is
    active is dropped.
    """

    store: PriceStore
    scheduler: RefreshScheduler
    fetcher: Callable[[], str] = field(default_factory=FeedFetcher)
    gate: Callable[[], bool] = always_eligible
    clock: Callable[[], dt.datetime] = dt.datetime.now
    listeners: List[CompletionListener] = field(default_factory=list)
    state: CycleState = field(default=CycleState.IDLE, init=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def init(self) -> None:
        """Initialize required persistence structures."""
        logger.info("Initializing price store at %s", self.store.path)
        self.store.initialize()

    def add_listener(self, listener: CompletionListener) -> None:
        self.listeners.append(listener)

    def run(self) -> CycleResult | None:
        """Execute a single refresh cycle.

        Returns None when another cycle is already in progress.
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Refresh already in progress; dropping trigger")
            return None
        try:
            result = self._run_locked()
        finally:
            self.state = CycleState.IDLE
            self._lock.release()

        self._emit_complete(result)
        return result

    def _run_locked(self) -> CycleResult:
        executed_at = self.clock()
        logger.info("Starting refresh cycle at %s", executed_at.isoformat())

        snapshot: Snapshot | None = None
        status = CycleStatus.SKIPPED
        error: str | None = None

        self.state = CycleState.CHECKING
        if not self.gate():
            logger.info("Background data is disabled; skipping fetch")
        else:
            self.state = CycleState.FETCHING
            try:
                raw = self.fetcher()
            except FetchError as exc:
                logger.error("Fetching gas prices failed: %s", exc)
                status, error = CycleStatus.FETCH_FAILED, str(exc)
            else:
                self.state = CycleState.DECOMPOSING
                try:
                    snapshot = decompose(raw, retrieved_at=self.clock())
                except DecodeError as exc:
                    logger.error(
                        "Decoding gas prices failed: %s (body starts %r)",
                        exc,
                        raw[:RAW_EXCERPT_LENGTH],
                    )
                    status, error = CycleStatus.DECODE_FAILED, str(exc)

        if snapshot is not None:
            self.state = CycleState.COMMITTING
            self.store.commit_snapshot(snapshot)
            status = CycleStatus.SUCCESS

        self.state = CycleState.SCHEDULING
        base_time = None
        if status is CycleStatus.SUCCESS:
            base_time = self.store.get_last_updated()
        if base_time is None:
            base_time = self.clock()
        next_refresh = next_refresh_time(base_time)
        self.scheduler.schedule(next_refresh, self.run)

        city_count = len(snapshot.cities) if snapshot is not None else 0
        note = _format_note(status, city_count, error)
        self.store.record_attempt(
            executed_at=executed_at,
            status=status,
            next_refresh=next_refresh,
            notes=note,
        )
        logger.info("Refresh cycle finished: %s", note)
        return CycleResult(
            executed_at=executed_at,
            status=status,
            next_refresh=next_refresh,
            city_count=city_count,
            error=error,
        )

    def _emit_complete(self, result: CycleResult) -> None:
        for listener in list(self.listeners):
            try:
                listener(result)
            except Exception:  # noqa: BLE001
                logger.exception("Refresh-complete listener %r failed", listener)


def _format_note(status: CycleStatus, city_count: int, error: str | None) -> str:
    """Render a concise run note summarizing the cycle outcome."""
    if status is CycleStatus.SUCCESS:
        return f"success cities={city_count}"
    if error:
        return f"{status.value}: {error}"
    return status.value
