from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable

import requests

from calendar_hub.errors import ConfigurationError, IngestionError
from calendar_hub.ics_parser import parse_ics
from calendar_hub.models import (
    UNTITLED_EVENT,
    CalendarSource,
    EventMapping,
    EventStatus,
    FeedEvent,
    FetchedEvent,
    FilterRule,
    SyncConfig,
)

if TYPE_CHECKING:
    from calendar_hub.key_manager import CredentialStore
    from calendar_hub.state_store import StateStore


logger = logging.getLogger(__name__)

USER_AGENT = "CalendarHub/1.0"


@dataclass
class FeedResponse:
    changed: bool
    body: str | None = None
    status_code: int = 200


@dataclass
class FetchResult:
    changed: bool
    events: list[FetchedEvent] = field(default_factory=list)


def _hash_payload(payload: Any) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")).hexdigest()


def _ordered_active(rules: Iterable[Any]) -> list[Any]:
    return [rule for rule in sorted(rules, key=lambda item: (item.position, item.id or 0)) if rule.active]


def compute_change_hash(
    source: CalendarSource,
    mappings: Iterable[EventMapping],
    sync_config: SyncConfig | None = None,
    filter_rules: Iterable[FilterRule] = (),
) -> str:
    """Hash of everything local that changes what a sync would push.

    Mapping rules, filter rules (each in position order) and the source's sync
    settings are hashed separately and then combined, so any edit to one of
    them forces a re-sync.
    """
    sync_config = sync_config or SyncConfig()
    mapping_part = _hash_payload(
        [
            [
                mapping.pattern,
                mapping.replacement,
                mapping.match_type.value if mapping.match_type else None,
                bool(mapping.case_sensitive),
            ]
            for mapping in _ordered_active(mappings)
        ]
    )
    filter_part = _hash_payload(
        [
            [
                rule.pattern,
                rule.field_name.value if rule.field_name else None,
                rule.match_type.value if rule.match_type else None,
                bool(rule.case_sensitive),
                rule.position,
            ]
            for rule in _ordered_active(filter_rules)
        ]
    )
    settings_part = _hash_payload(
        [
            source.resolved_frequency_minutes(sync_config.default_sync_frequency_minutes),
            source.sync_window_start_hour,
            source.sync_window_end_hour,
            source.resolved_time_zone(sync_config.default_time_zone),
        ]
    )
    return hashlib.sha256(f"{mapping_part}:{filter_part}:{settings_part}".encode("utf-8")).hexdigest()


def normalized_status(value: str | None) -> str:
    text = str(value or "").strip().lower()
    if text == EventStatus.CANCELLED.value:
        return EventStatus.CANCELLED.value
    if text == EventStatus.TENTATIVE.value:
        return EventStatus.TENTATIVE.value
    return EventStatus.CONFIRMED.value


class FeedHttpClient:
    """GETs an ICS feed with If-None-Match / If-Modified-Since from the source's cached headers."""

    def __init__(
        self,
        source: CalendarSource,
        *,
        store: StateStore | None = None,
        credentials: dict[str, Any] | None = None,
        session: requests.Session | None = None,
        timeout_seconds: int = 30,
    ) -> None:
        self.source = source
        self.store = store
        self.credentials = credentials or {}
        self._session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

    def _auth(self) -> tuple[str, str] | None:
        username = str(self.credentials.get("http_basic_username", "") or "").strip()
        password = str(self.credentials.get("http_basic_password", "") or "")
        if not username or not password:
            return None
        return username, password

    def _conditional_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.source.ics_feed_etag:
            headers["If-None-Match"] = self.source.ics_feed_etag
        if self.source.ics_feed_last_modified:
            headers["If-Modified-Since"] = self.source.ics_feed_last_modified
        return headers

    def get_with_caching(self, url: str, conditional: bool = True) -> FeedResponse:
        headers = {"User-Agent": USER_AGENT}
        if conditional:
            headers.update(self._conditional_headers())
        try:
            response = self._session.get(url, headers=headers, auth=self._auth(), timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise IngestionError(f"HTTP request failed: {exc}") from exc

        if response.status_code == 304:
            return FeedResponse(changed=False, body=None, status_code=304)
        if response.status_code == 200:
            self._update_cache_headers(response)
            return FeedResponse(changed=True, body=response.text, status_code=200)
        raise IngestionError(f"HTTP {response.status_code}: {response.reason or ''}".rstrip())

    def _update_cache_headers(self, response: requests.Response) -> None:
        etag = str(response.headers.get("ETag", "") or "").strip()
        last_modified = str(response.headers.get("Last-Modified", "") or "").strip()
        changed = False
        if etag and etag != self.source.ics_feed_etag:
            self.source.ics_feed_etag = etag
            changed = True
        if last_modified and last_modified != self.source.ics_feed_last_modified:
            self.source.ics_feed_last_modified = last_modified
            changed = True
        if changed and self.store is not None and self.source.id is not None:
            self.store.update_feed_cache(
                self.source.id,
                etag=self.source.ics_feed_etag,
                last_modified=self.source.ics_feed_last_modified,
            )


class GenericIcsAdapter:
    def __init__(
        self,
        source: CalendarSource,
        *,
        store: StateStore | None = None,
        credential_store: CredentialStore | None = None,
        session: requests.Session | None = None,
        sync_config: SyncConfig | None = None,
        timeout_seconds: int = 30,
    ) -> None:
        self.source = source
        self.store = store
        self.sync_config = sync_config or SyncConfig()
        credentials = credential_store.get(source.id) if credential_store and source.id is not None else {}
        self.http_client = FeedHttpClient(
            source,
            store=store,
            credentials=credentials,
            session=session,
            timeout_seconds=timeout_seconds,
        )

    @property
    def time_zone(self) -> str:
        return self.source.resolved_time_zone(self.sync_config.default_time_zone)

    def fetch(self, conditional: bool = True) -> FetchResult:
        if not self.source.ingestion_url:
            raise ConfigurationError("ingestion URL is missing")
        result = self.http_client.get_with_caching(self.source.ingestion_url, conditional=conditional)
        if not result.changed:
            logger.debug("Feed for source=%s not modified", self.source.id)
            return FetchResult(changed=False)

        events = [self.to_fetched_event(event) for event in parse_ics(result.body, self.time_zone)]
        if self.source.import_start_date is not None:
            events = [event for event in events if event.starts_at >= self.source.import_start_date]
        return FetchResult(changed=True, events=events)

    def fetch_events(self) -> list[FetchedEvent]:
        return self.fetch().events

    def to_fetched_event(self, event: FeedEvent) -> FetchedEvent:
        summary = event.summary if event.summary and event.summary.strip() else UNTITLED_EVENT
        return FetchedEvent(
            uid=event.uid,
            summary=summary,
            description=event.description,
            location=event.location,
            starts_at=event.starts_at,
            ends_at=event.ends_at,
            status=normalized_status(event.status),
            time_zone=self.time_zone,
            all_day=bool(event.all_day),
            raw_properties=dict(event.raw_properties),
        )


class EnhancedIcsAdapter(GenericIcsAdapter):
    """Adds a cheap "anything changed?" check ahead of the full sync."""

    def __init__(self, source: CalendarSource, **kwargs: Any) -> None:
        super().__init__(source, **kwargs)
        self._prefetched: FetchResult | None = None

    def current_change_hash(self) -> str:
        if self.store is None:
            return compute_change_hash(self.source, [], self.sync_config)
        return compute_change_hash(
            self.source,
            self.store.active_event_mappings(self.source.id),
            self.sync_config,
            filter_rules=self.store.active_filter_rules(self.source.id),
        )

    def settings_changed(self) -> bool:
        stored = self.source.last_change_hash
        return stored is None or stored != self.current_change_hash()

    def has_changes(self) -> bool:
        if self.settings_changed():
            return True
        # Local settings are unchanged, but the feed itself may not be.
        self._prefetched = self.fetch(conditional=True)
        return self._prefetched.changed

    def fetch_with_change_detection(self) -> tuple[bool, list[FetchedEvent]]:
        if self._prefetched is not None:
            result, self._prefetched = self._prefetched, None
        else:
            # Changed mappings or settings must be re-applied to every event, 304 or not.
            result = self.fetch(conditional=not self.settings_changed())
        return result.changed, result.events
