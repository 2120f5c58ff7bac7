from __future__ import annotations

import itertools
import logging
import secrets
import time
from typing import Any, Callable, Iterable

import requests

from calendar_hub.caldav_client import CalDAVClient, DiscoveryCache
from calendar_hub.config_manager import ConfigManager
from calendar_hub.errors import ConfigurationError, InvalidValueError
from calendar_hub.event_filter import EventFilter
from calendar_hub.ingestion import EnhancedIcsAdapter, GenericIcsAdapter, compute_change_hash
from calendar_hub.key_manager import CredentialStore
from calendar_hub.models import (
    AppConfig,
    AttemptStatus,
    CalendarEvent,
    CalendarSource,
    EventStatus,
    FetchedEvent,
    SyncSummary,
    coerce_enum,
    local_date,
    utc_now,
)
from calendar_hub.name_mapper import NameMapper
from calendar_hub.observer import AttemptObserver, NullObserver, SyncObserver
from calendar_hub.state_store import StateStore
from calendar_hub.throttle import IntervalThrottle
from calendar_hub.translator import EventTranslator, composite_uid_for, legacy_uid_for


logger = logging.getLogger(__name__)


def generate_sync_token() -> str:
    return secrets.token_hex(16)


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


class SyncEngine:
    """Feed -> local store -> CalDAV for one source at a time.

    ``sync`` runs the fetch, upsert, push, reconcile and mark-synced steps for a
    loaded source. ``run_sync`` is the job body used by the scheduler: it takes
    the per-source lock and owns the attempt's final status.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        caldav_client: CalDAVClient | None = None,
        credential_store: CredentialStore | None = None,
        name_mapper: NameMapper | None = None,
        feed_session: requests.Session | None = None,
        discovery_cache: DiscoveryCache | None = None,
        throttle_factory: Callable[[float], IntervalThrottle] = IntervalThrottle,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.caldav_client = caldav_client
        self.credential_store = credential_store
        self.name_mapper = name_mapper or NameMapper(state_store)
        self.event_filter = EventFilter(state_store)
        self.feed_session = feed_session
        self.discovery_cache = discovery_cache or DiscoveryCache()
        self.throttle_factory = throttle_factory

    def client_for(self, config: AppConfig) -> CalDAVClient:
        if self.caldav_client is not None:
            return self.caldav_client
        return CalDAVClient(config.caldav, discovery_cache=self.discovery_cache)

    def translator_for(self, source: CalendarSource, config: AppConfig) -> EventTranslator:
        return EventTranslator(
            source,
            name_mapper=self.name_mapper,
            link_base_url=config.app.base_url,
            default_time_zone=config.sync.default_time_zone,
        )

    def build_adapter(self, source: CalendarSource, config: AppConfig, enhanced: bool) -> GenericIcsAdapter:
        adapter_cls = EnhancedIcsAdapter if enhanced else GenericIcsAdapter
        return adapter_cls(
            source,
            store=self.state_store,
            credential_store=self.credential_store,
            session=self.feed_session,
            sync_config=config.sync,
            timeout_seconds=config.caldav.timeout_seconds,
        )

    def sync(
        self,
        source: CalendarSource,
        observer: SyncObserver | None = None,
        *,
        enhanced: bool | None = None,
        adapter: GenericIcsAdapter | None = None,
    ) -> SyncSummary:
        config = self.config_manager.load()
        observer = observer or NullObserver()
        if enhanced is None:
            enhanced = config.sync.use_enhanced_sync
        if adapter is None and source.ingestion_url:
            adapter = self.build_adapter(source, config, enhanced)
        if adapter is None:
            raise ConfigurationError("No ingestion adapter configured")
        if not source.calendar_identifier.strip():
            raise ConfigurationError("Calendar identifier is required")

        try:
            return self._sync(source, observer, adapter, config, enhanced)
        except Exception as exc:
            observer.finish(AttemptStatus.FAILED, str(exc) or type(exc).__name__)
            raise

    def _sync(
        self,
        source: CalendarSource,
        observer: SyncObserver,
        adapter: GenericIcsAdapter,
        config: AppConfig,
        enhanced: bool,
    ) -> SyncSummary:
        started = time.monotonic()
        use_change_detection = enhanced and isinstance(adapter, EnhancedIcsAdapter)

        if use_change_detection:
            if not adapter.has_changes():
                return self._finish_unchanged(source, observer, started)
            changed, fetched_events = adapter.fetch_with_change_detection()
            if not changed:
                return self._finish_unchanged(source, observer, started)
        else:
            result = adapter.fetch()
            changed, fetched_events = result.changed, result.events

        observer.start(len(fetched_events))
        client = self.client_for(config)
        translator = self.translator_for(source, config)
        events = self.upsert_events(source, fetched_events, config, observer)
        upserts, deletes = self.push_updates(source, events, client, translator, observer, config)
        # A 304 carries no event list, so nothing can be judged missing.
        canceled = self.cancel_missing_events(source, fetched_events, client, observer) if changed else 0

        self.mark_synced(source, config)
        observer.finish(AttemptStatus.SUCCESS)

        summary = SyncSummary(
            source_id=source.id,
            changed=changed,
            fetched=len(fetched_events),
            upserts=upserts,
            deletes=deletes + canceled,
            canceled=canceled,
            duration_ms=_elapsed_ms(started),
            events=events,
        )
        self._log_summary(summary)
        return summary

    def _finish_unchanged(self, source: CalendarSource, observer: SyncObserver, started: float) -> SyncSummary:
        logger.info("No changes detected for source=%s, skipping sync", source.id)
        # Only the timestamp moves; the stored change hash is still current.
        timestamp = utc_now()
        self.state_store.mark_synced(
            source.id, token=source.sync_token, timestamp=timestamp, change_hash=source.last_change_hash
        )
        source.last_synced_at = timestamp
        observer.finish(AttemptStatus.SUCCESS)
        summary = SyncSummary(source_id=source.id, changed=False, duration_ms=_elapsed_ms(started))
        self._log_summary(summary)
        return summary

    def _log_summary(self, summary: SyncSummary) -> None:
        logger.info(
            "source=%s fetched=%s upserts=%s deletes=%s canceled=%s duration_ms=%s",
            summary.source_id,
            summary.fetched,
            summary.upserts,
            summary.deletes,
            summary.canceled,
            summary.duration_ms,
            extra={"event": "calendar_hub.sync", **summary.to_dict()},
        )

    def upsert_events(
        self,
        source: CalendarSource,
        fetched_events: Iterable[FetchedEvent],
        config: AppConfig,
        observer: SyncObserver,
    ) -> list[CalendarEvent]:
        rules = self.event_filter.rules_for(source.id)
        time_zone = source.resolved_time_zone(config.sync.default_time_zone)
        saved: list[CalendarEvent] = []
        for fetched in fetched_events:
            event = self.state_store.find_event(source.id, fetched.uid) or CalendarEvent(
                calendar_source_id=source.id,
                external_id=fetched.uid,
            )
            event.title = fetched.summary or event.title
            event.description = fetched.description
            event.location = fetched.location
            event.starts_at = fetched.starts_at
            event.ends_at = fetched.ends_at
            event.status = coerce_enum(EventStatus, fetched.status)
            event.all_day = fetched.all_day
            event.time_zone = time_zone
            event.source_updated_at = utc_now()
            event.data = {**(event.data or {}), **(fetched.raw_properties or {})}
            event.sync_exempt = self.event_filter.should_filter(event, rules)
            try:
                saved.append(self.state_store.save_event(event))
            except InvalidValueError as exc:
                logger.warning("Skipping invalid event %s for source=%s: %s", fetched.uid, source.id, exc)
                observer.upsert_error(event, exc)
        return saved

    def push_updates(
        self,
        source: CalendarSource,
        events: list[CalendarEvent],
        client: CalDAVClient,
        translator: EventTranslator,
        observer: SyncObserver,
        config: AppConfig,
    ) -> tuple[int, int]:
        upserts = 0
        deletes = 0
        throttle = self.throttle_factory(config.sync.batch_pause_seconds)

        def day_of(event: CalendarEvent):
            return local_date(event.starts_at, event.time_zone)

        for _day, day_events in itertools.groupby(sorted(events, key=day_of), key=day_of):
            throttle.wait()
            for event in day_events:
                removing = event.sync_exempt or event.cancelled
                try:
                    if removing:
                        client.delete(source.calendar_identifier, composite_uid_for(event))
                        observer.delete_success(event)
                        deletes += 1
                    else:
                        client.upsert(source.calendar_identifier, translator.call(event))
                        observer.upsert_success(event)
                        upserts += 1
                    self.state_store.mark_event_synced(event.id)
                except Exception as exc:
                    logger.error("Failed to sync event %s for source=%s: %s", event.external_id, source.id, exc)
                    if removing:
                        observer.delete_error(event, exc)
                    else:
                        observer.upsert_error(event, exc)
        return upserts, deletes

    def cancel_missing_events(
        self,
        source: CalendarSource,
        fetched_events: Iterable[FetchedEvent],
        client: CalDAVClient,
        observer: SyncObserver,
    ) -> int:
        canceled = 0
        external_ids = {event.uid for event in fetched_events}
        for event in self.state_store.list_events_missing(source.id, external_ids):
            try:
                event.status = EventStatus.CANCELLED
                event.source_updated_at = utc_now()
                self.state_store.save_event(event)
                client.delete(source.calendar_identifier, composite_uid_for(event))
                observer.delete_success(event)
                canceled += 1
                self.state_store.mark_event_synced(event.id)
            except Exception as exc:
                logger.warning("Failed to cancel event %s for source=%s: %s", event.external_id, source.id, exc)
                observer.delete_error(event, exc)
        return canceled

    def mark_synced(self, source: CalendarSource, config: AppConfig) -> None:
        token = generate_sync_token()
        timestamp = utc_now()
        change_hash = compute_change_hash(
            source,
            self.state_store.active_event_mappings(source.id),
            config.sync,
            filter_rules=self.state_store.active_filter_rules(source.id),
        )
        self.state_store.mark_synced(source.id, token=token, timestamp=timestamp, change_hash=change_hash)
        source.sync_token = token
        source.last_synced_at = timestamp
        source.last_change_hash = change_hash

    def run_sync(
        self,
        source_id: int,
        attempt_id: int | None = None,
        *,
        enhanced: bool | None = None,
    ) -> SyncSummary:
        observer: AttemptObserver | None = None
        try:
            with self.state_store.source_lock(source_id):
                source = self.state_store.get_source(source_id)
                if source is None:
                    raise ConfigurationError(f"Calendar source {source_id} not found")
                attempt = self.state_store.get_attempt(attempt_id) if attempt_id is not None else None
                if attempt is None:
                    attempt = self.state_store.create_attempt(source_id)
                observer = AttemptObserver(self.state_store, attempt)
                summary = self.sync(source, observer, enhanced=enhanced)
                observer.finish(AttemptStatus.SUCCESS)
                return summary
        except Exception as exc:
            if observer is None and attempt_id is not None:
                attempt = self.state_store.get_attempt(attempt_id)
                observer = AttemptObserver(self.state_store, attempt) if attempt is not None else None
            if observer is not None:
                observer.finish(AttemptStatus.FAILED, str(exc) or type(exc).__name__)
            raise


class FilterSyncService:
    """Reconciles stored events after filter rules change.

    Pushes from this path address remote objects by the legacy UID form.
    """

    def __init__(
        self,
        engine: SyncEngine,
        schedule_sync: Callable[..., Any] | None = None,
    ) -> None:
        self.engine = engine
        self.state_store = engine.state_store
        self.event_filter = engine.event_filter
        self.schedule_sync = schedule_sync

    def sync_filter_rules(self, source: CalendarSource | None) -> dict[str, int]:
        if source is None:
            return {"filtered": 0, "re_included": 0}
        filtered = self.event_filter.apply_backward_filtering(source)
        re_included = self.event_filter.apply_reverse_filtering(source)
        if (filtered or re_included) and self.schedule_sync is not None:
            self.schedule_sync(source.id, force=True)
        return {"filtered": filtered, "re_included": re_included}

    def sync_rule_scope(self, source_id: int | None) -> dict[int, dict[str, int]]:
        """Resync one source, or every active source for a global rule."""
        if source_id is not None:
            source = self.state_store.get_source(source_id)
            return {source.id: self.sync_filter_rules(source)} if source else {}
        return {
            source.id: self.sync_filter_rules(source)
            for source in self.state_store.list_sources()
            if source.active
        }

    def sync_event_filter_status(self, source: CalendarSource, event: CalendarEvent | None) -> None:
        if event is None or event.calendar_source_id != source.id:
            return
        config = self.engine.config_manager.load()
        client = self.engine.client_for(config)
        uid = legacy_uid_for(event)
        try:
            if event.sync_exempt or event.cancelled:
                client.delete(source.calendar_identifier, uid)
            else:
                translator = self.engine.translator_for(source, config)
                client.upsert(source.calendar_identifier, translator.call(event, uid=uid))
            self.state_store.mark_event_synced(event.id)
        except Exception as exc:
            logger.error("Failed to sync filter status of event %s: %s", event.id, exc)
            raise
