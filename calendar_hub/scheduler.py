from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Iterable, Optional
from urllib.parse import urlparse

from calendar_hub.config_manager import ConfigManager
from calendar_hub.errors import IngestionError, TransientNetworkError
from calendar_hub.models import AttemptStatus, CalendarSource, SyncAttempt, utc_now
from calendar_hub.state_store import StateStore
from calendar_hub.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

UNKNOWN_DOMAIN = "unknown"
RETRYABLE_ERRORS = (IngestionError, TransientNetworkError)


def extract_apex_domain(url: str | None) -> str:
    try:
        host = urlparse(str(url or "")).hostname
    except ValueError:
        return UNKNOWN_DOMAIN
    if not host:
        return UNKNOWN_DOMAIN
    labels = host.split(".")
    if len(labels) >= 2:
        return ".".join(labels[-2:])
    return host


def group_sources_by_domain(sources: Iterable[CalendarSource]) -> dict[str, list[CalendarSource]]:
    groups: dict[str, list[CalendarSource]] = {}
    for source in sources:
        groups.setdefault(extract_apex_domain(source.ingestion_url), []).append(source)
    return groups


def optimize_schedule(
    sources: Iterable[CalendarSource],
    window_minutes: int = 5,
    now: datetime | None = None,
) -> dict[int, datetime]:
    """Stagger start times so sources on the same apex domain run ``window_minutes`` apart."""
    start = now or utc_now()
    step = timedelta(minutes=max(1, window_minutes))
    schedule: dict[int, datetime] = {}
    for domain_sources in group_sources_by_domain(sources).values():
        next_slot = start
        for source in sorted(domain_sources, key=lambda item: item.id):
            schedule[source.id] = next_slot
            next_slot += step
    return schedule


class JobRunner:
    """Runs ``SyncEngine.run_sync`` on a worker pool, now or at a later time.

    Fetch and network failures are retried as fresh attempts with exponential
    backoff; the failed attempt stays recorded.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        max_workers: int = 4,
        max_retries: int = 4,
        retry_base_seconds: float = 5.0,
    ) -> None:
        self.engine = engine
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="calendar-hub-sync")
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._closed = False

    def enqueue(
        self,
        source_id: int,
        attempt_id: int | None = None,
        *,
        run_at: datetime | None = None,
        now: datetime | None = None,
        retry: int = 0,
    ) -> Future | None:
        delay = 0.0
        if run_at is not None:
            delay = max(0.0, (run_at - (now or utc_now())).total_seconds())
        if delay <= 0:
            return self._submit(source_id, attempt_id, retry)
        self._defer(delay, source_id, attempt_id, retry)
        return None

    def _defer(self, delay: float, source_id: int, attempt_id: int | None, retry: int) -> None:
        timer: threading.Timer

        def fire() -> None:
            with self._lock:
                self._timers.discard(timer)
            self._submit(source_id, attempt_id, retry)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._lock:
            if self._closed:
                return
            self._timers.add(timer)
        timer.start()

    def _submit(self, source_id: int, attempt_id: int | None, retry: int) -> Future | None:
        with self._lock:
            if self._closed:
                logger.warning("Job runner closed; dropping sync of source=%s", source_id)
                return None
            return self._executor.submit(self._run, source_id, attempt_id, retry)

    def _run(self, source_id: int, attempt_id: int | None, retry: int) -> None:
        try:
            self.engine.run_sync(source_id, attempt_id)
        except RETRYABLE_ERRORS as exc:
            if retry >= self.max_retries:
                logger.error("Sync of source=%s failed after %s retries: %s", source_id, retry, exc)
                return
            delay = self.retry_base_seconds * (2**retry)
            logger.warning("Sync of source=%s failed (%s), retrying in %ss", source_id, exc, delay)
            self._defer(delay, source_id, None, retry + 1)
        except Exception:
            logger.exception("Sync of source=%s failed", source_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=wait)


class AutoSyncScheduler:
    def __init__(self, state_store: StateStore, config_manager: ConfigManager, runner: JobRunner) -> None:
        self.state_store = state_store
        self.config_manager = config_manager
        self.runner = runner

    def run(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        return self.schedule_syncs(self.find_sources_due_for_sync(now), now)

    def find_sources_due_for_sync(self, now: datetime) -> list[CalendarSource]:
        sync_config = self.config_manager.load().sync
        due: list[CalendarSource] = []
        for source in self.state_store.list_active_auto_sync_sources():
            if not source.sync_due(now, sync_config.default_sync_frequency_minutes):
                continue
            if not source.within_sync_window(now, sync_config.default_time_zone):
                continue
            # Check-then-insert; a concurrent scheduler may still slip in a duplicate.
            if self.state_store.has_pending_attempt(source.id):
                continue
            due.append(source)
        return due

    def schedule_syncs(self, sources: list[CalendarSource], now: datetime) -> int:
        if not sources:
            return 0
        window_minutes = self.config_manager.load().sync.domain_window_minutes
        schedule = optimize_schedule(sources, window_minutes=window_minutes, now=now)
        for source_id, scheduled_at in schedule.items():
            attempt = self.state_store.create_attempt(source_id)
            self.runner.enqueue(source_id, attempt.id, run_at=scheduled_at if scheduled_at > now else None, now=now)
        logger.info("Scheduled %s sync jobs with domain optimization", len(schedule))
        return len(schedule)

    def schedule_sync(self, source_id: int, force: bool = False, now: datetime | None = None) -> SyncAttempt | None:
        source = self.state_store.get_source(source_id)
        if source is None or not source.active or not source.ingestion_url:
            return None
        if self.state_store.has_pending_attempt(source.id):
            logger.debug("Sync already pending for source=%s", source.id)
            return None
        default_tz = self.config_manager.load().sync.default_time_zone
        if not force and not source.within_sync_window(now or utc_now(), default_tz):
            return None
        attempt = self.state_store.create_attempt(source.id)
        self.runner.enqueue(source.id, attempt.id)
        return attempt

    def next_sync_time(self, source: CalendarSource, now: datetime | None = None) -> datetime:
        default_tz = self.config_manager.load().sync.default_time_zone
        return source.next_sync_time(now or utc_now(), default_tz)

    def sweep_stale_attempts(self, threshold: timedelta | None = None, now: datetime | None = None) -> int:
        if threshold is None:
            threshold = timedelta(minutes=self.config_manager.load().sync.stale_attempt_threshold_minutes)
        now = now or utc_now()
        stale = self.state_store.stale_attempts(now - threshold)
        for attempt in stale:
            attempt.status = AttemptStatus.FAILED
            attempt.message = f"Sync attempt timed out after {threshold}"
            attempt.finished_at = now
            self.state_store.update_attempt(attempt)
            logger.warning(
                "Marked stale attempt %s for source %s as failed (created at %s)",
                attempt.id,
                attempt.calendar_source_id,
                attempt.created_at,
            )
        return len(stale)


class SyncScheduler:
    def __init__(self, auto_scheduler: AutoSyncScheduler, config_manager: ConfigManager) -> None:
        self.auto_scheduler = auto_scheduler
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calendar-hub-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def tick(self) -> int:
        try:
            self.auto_scheduler.sweep_stale_attempts()
            return self.auto_scheduler.run()
        except Exception:
            logger.exception("Scheduler tick failed")
            return 0

    def _loop(self) -> None:
        self.tick()
        while not self._stop_event.is_set():
            interval_seconds = max(30, int(self.config_manager.load().sync.scheduler_interval_seconds))
            self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.tick()
