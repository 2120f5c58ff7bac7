from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Protocol

from calendar_hub.models import AttemptStatus, CalendarEvent, SyncAction, SyncAttempt, SyncEventResult, utc_now

if TYPE_CHECKING:
    from calendar_hub.state_store import StateStore


logger = logging.getLogger(__name__)


class SyncObserver(Protocol):
    def start(self, total: int) -> None: ...

    def upsert_success(self, event: CalendarEvent) -> None: ...

    def upsert_error(self, event: CalendarEvent, error: BaseException) -> None: ...

    def delete_success(self, event: CalendarEvent) -> None: ...

    def delete_error(self, event: CalendarEvent, error: BaseException) -> None: ...

    def finish(self, status: AttemptStatus, message: str | None = None) -> None: ...


class NullObserver:
    def start(self, total: int) -> None:
        pass

    def upsert_success(self, event: CalendarEvent) -> None:
        pass

    def upsert_error(self, event: CalendarEvent, error: BaseException) -> None:
        pass

    def delete_success(self, event: CalendarEvent) -> None:
        pass

    def delete_error(self, event: CalendarEvent, error: BaseException) -> None:
        pass

    def finish(self, status: AttemptStatus, message: str | None = None) -> None:
        pass


class AttemptObserver:
    """Persists progress onto a ``SyncAttempt`` row and its per-event result trail."""

    def __init__(self, store: StateStore, attempt: SyncAttempt) -> None:
        self.store = store
        self.attempt = attempt
        self._lock = threading.Lock()

    @property
    def finished(self) -> bool:
        return self.attempt.status.is_terminal

    def start(self, total: int) -> None:
        with self._lock:
            if self.finished:
                logger.debug("Attempt %s already finished as %s", self.attempt.id, self.attempt.status.value)
                return
            self.attempt.status = AttemptStatus.RUNNING
            self.attempt.total_events = int(total)
            self.attempt.started_at = self.attempt.started_at or utc_now()
            self.store.update_attempt(self.attempt)

    def _record(
        self,
        event: CalendarEvent,
        action: SyncAction,
        error: BaseException | None = None,
    ) -> None:
        with self._lock:
            self.store.record_event_result(
                SyncEventResult(
                    sync_attempt_id=self.attempt.id,
                    calendar_event_id=event.id,
                    external_id=event.external_id,
                    action=action,
                    success=error is None,
                    error_message=str(error) if error is not None else None,
                )
            )
            if error is not None:
                self.attempt.errors_count += 1
            elif action is SyncAction.UPSERT:
                self.attempt.upserts += 1
            else:
                self.attempt.deletes += 1
            self.store.update_attempt(self.attempt)

    def upsert_success(self, event: CalendarEvent) -> None:
        self._record(event, SyncAction.UPSERT)

    def upsert_error(self, event: CalendarEvent, error: BaseException) -> None:
        self._record(event, SyncAction.UPSERT, error)

    def delete_success(self, event: CalendarEvent) -> None:
        self._record(event, SyncAction.DELETE)

    def delete_error(self, event: CalendarEvent, error: BaseException) -> None:
        self._record(event, SyncAction.DELETE, error)

    def finish(self, status: AttemptStatus, message: str | None = None) -> None:
        with self._lock:
            if self.finished:
                logger.debug("Attempt %s already finished as %s", self.attempt.id, self.attempt.status.value)
                return
            self.attempt.status = status
            self.attempt.message = message
            self.attempt.finished_at = utc_now()
            self.store.update_attempt(self.attempt)
