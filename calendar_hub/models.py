from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calendar_hub.errors import InvalidValueError


DEFAULT_CALDAV_BASE_URL = "https://caldav.icloud.com"
DEFAULT_TIME_ZONE = "UTC"
DEFAULT_SYNC_FREQUENCY_MINUTES = 60
UNTITLED_EVENT = "(untitled event)"


class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class AttemptStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.SUCCESS, AttemptStatus.FAILED)


class MatchType(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"
    REGEX = "regex"


class FieldName(str, Enum):
    TITLE = "title"
    DESCRIPTION = "description"
    LOCATION = "location"


class SyncAction(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: type[E], value: Any) -> E:
    """Strictly convert ``value`` to ``enum_cls``; unknown values are rejected."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value or "").strip().lower())
    except ValueError as exc:
        raise InvalidValueError(f"Unknown {enum_cls.__name__} value: {value!r}") from exc


def lenient_enum(enum_cls: type[E], value: Any) -> E | None:
    try:
        return coerce_enum(enum_cls, value)
    except InvalidValueError:
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def utc_iso8601(value: datetime) -> str:
    return _ensure_tz(value).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def resolve_zone(name: str | None) -> ZoneInfo | None:
    text = str(name or "").strip()
    if not text:
        return None
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def zone_or_utc(name: str | None) -> ZoneInfo:
    return resolve_zone(name) or ZoneInfo("UTC")


def local_date(value: datetime, zone_name: str | None) -> date:
    return _ensure_tz(value).astimezone(zone_or_utc(zone_name)).date()


@dataclass
class CalDAVConfig:
    base_url: str = DEFAULT_CALDAV_BASE_URL
    username: str = ""
    app_specific_password: str = ""
    read_only: bool = False
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", DEFAULT_CALDAV_BASE_URL)).strip() or DEFAULT_CALDAV_BASE_URL,
            username=str(data.get("username", "")).strip(),
            app_specific_password=str(data.get("app_specific_password", "")).strip(),
            read_only=bool(data.get("read_only", False)),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SyncConfig:
    default_time_zone: str = DEFAULT_TIME_ZONE
    default_sync_frequency_minutes: int = DEFAULT_SYNC_FREQUENCY_MINUTES
    domain_window_minutes: int = 5
    batch_pause_seconds: float = 0.05
    stale_attempt_threshold_minutes: int = 120
    scheduler_interval_seconds: int = 60
    use_enhanced_sync: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            default_time_zone=str(data.get("default_time_zone", DEFAULT_TIME_ZONE)).strip() or DEFAULT_TIME_ZONE,
            default_sync_frequency_minutes=max(
                1, int(data.get("default_sync_frequency_minutes", DEFAULT_SYNC_FREQUENCY_MINUTES))
            ),
            domain_window_minutes=max(1, int(data.get("domain_window_minutes", 5))),
            batch_pause_seconds=max(0.0, float(data.get("batch_pause_seconds", 0.05))),
            stale_attempt_threshold_minutes=max(1, int(data.get("stale_attempt_threshold_minutes", 120))),
            scheduler_interval_seconds=max(30, int(data.get("scheduler_interval_seconds", 60))),
            use_enhanced_sync=bool(data.get("use_enhanced_sync", True)),
        )


@dataclass
class LinkConfig:
    base_url: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LinkConfig":
        data = data or {}
        return cls(base_url=str(data.get("base_url", "")).strip().rstrip("/"))


@dataclass
class StorageConfig:
    state_path: str = "data/calendar_hub.db"
    key_path: str = "data/credential.key"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(
            state_path=str(data.get("state_path", "data/calendar_hub.db")).strip() or "data/calendar_hub.db",
            key_path=str(data.get("key_path", "data/credential.key")).strip() or "data/credential.key",
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    app: LinkConfig = field(default_factory=LinkConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            app=LinkConfig.from_dict(data.get("app")),
            storage=StorageConfig.from_dict(data.get("storage")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarSource:
    name: str
    calendar_identifier: str = ""
    ingestion_url: str = ""
    id: int | None = None
    time_zone: str = ""
    active: bool = True
    deleted_at: datetime | None = None
    auto_sync_enabled: bool = True
    sync_frequency_minutes: int | None = None
    sync_window_start_hour: int | None = None
    sync_window_end_hour: int | None = None
    last_synced_at: datetime | None = None
    sync_token: str = ""
    last_change_hash: str | None = None
    ics_feed_etag: str = ""
    ics_feed_last_modified: str = ""
    import_start_date: datetime | None = None
    credentials: str = ""
    created_at: datetime | None = None

    def resolved_time_zone(self, default: str = DEFAULT_TIME_ZONE) -> str:
        return self.time_zone.strip() or default or DEFAULT_TIME_ZONE

    def resolved_frequency_minutes(self, default: int = DEFAULT_SYNC_FREQUENCY_MINUTES) -> int:
        if self.sync_frequency_minutes:
            return int(self.sync_frequency_minutes)
        return int(default)

    def within_sync_window(self, now: datetime, default_time_zone: str = DEFAULT_TIME_ZONE) -> bool:
        start_h = self.sync_window_start_hour
        end_h = self.sync_window_end_hour
        if start_h is None or end_h is None:
            return True
        hour = _ensure_tz(now).astimezone(zone_or_utc(self.resolved_time_zone(default_time_zone))).hour
        if start_h <= end_h:
            return start_h <= hour <= end_h
        # wraps midnight, e.g. 22 -> 2
        return hour >= start_h or hour <= end_h

    def sync_due(self, now: datetime, default_frequency_minutes: int = DEFAULT_SYNC_FREQUENCY_MINUTES) -> bool:
        if self.last_synced_at is None:
            return True
        frequency = timedelta(minutes=self.resolved_frequency_minutes(default_frequency_minutes))
        return _ensure_tz(now) - _ensure_tz(self.last_synced_at) >= frequency

    def next_sync_time(self, now: datetime, default_time_zone: str = DEFAULT_TIME_ZONE) -> datetime:
        if self.sync_window_start_hour is None or self.sync_window_end_hour is None:
            return now
        if self.within_sync_window(now, default_time_zone):
            return now
        zone = zone_or_utc(self.resolved_time_zone(default_time_zone))
        tz_now = _ensure_tz(now).astimezone(zone)
        next_start = tz_now.replace(hour=self.sync_window_start_hour, minute=0, second=0, microsecond=0)
        if tz_now.hour >= self.sync_window_start_hour:
            next_start += timedelta(days=1)
        return next_start

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("credentials", None)
        for key in ("deleted_at", "last_synced_at", "import_start_date", "created_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass(frozen=True)
class FeedEvent:
    uid: str
    starts_at: datetime
    ends_at: datetime
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    status: str = EventStatus.CONFIRMED.value
    time_zone: str = DEFAULT_TIME_ZONE
    all_day: bool = False
    raw_properties: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchedEvent(FeedEvent):
    """A feed event after adapter normalization (title default, status, source zone)."""


@dataclass
class CalendarEvent:
    calendar_source_id: int
    external_id: str
    title: str = UNTITLED_EVENT
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    id: int | None = None
    description: str | None = None
    location: str | None = None
    time_zone: str = DEFAULT_TIME_ZONE
    status: EventStatus = EventStatus.CONFIRMED
    source_updated_at: datetime | None = None
    synced_at: datetime | None = None
    fingerprint: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    sync_exempt: bool = False
    all_day: bool = False

    @property
    def cancelled(self) -> bool:
        return self.status is EventStatus.CANCELLED

    def validate(self) -> None:
        if not self.external_id:
            raise InvalidValueError("external_id is required")
        if self.starts_at is None or self.ends_at is None:
            raise InvalidValueError(f"Event {self.external_id} needs both start and end")
        if self.ends_at < self.starts_at:
            raise InvalidValueError(f"Event {self.external_id} ends before it starts")

    def compute_fingerprint(self) -> str:
        payload = "--".join(
            [
                self.title or "",
                self.description or "",
                self.location or "",
                utc_iso8601(self.starts_at) if self.starts_at else "",
                utc_iso8601(self.ends_at) if self.ends_at else "",
                self.status.value,
                json.dumps(self.data or {}, sort_keys=True, ensure_ascii=False),
            ]
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def refresh_fingerprint(self) -> str:
        self.fingerprint = self.compute_fingerprint()
        return self.fingerprint

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        for key in ("starts_at", "ends_at", "source_updated_at", "synced_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class SyncAttempt:
    calendar_source_id: int
    status: AttemptStatus = AttemptStatus.QUEUED
    id: int | None = None
    total_events: int = 0
    upserts: int = 0
    deletes: int = 0
    errors_count: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    message: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        for key in ("started_at", "finished_at", "created_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class SyncEventResult:
    sync_attempt_id: int
    external_id: str
    action: SyncAction
    success: bool
    id: int | None = None
    calendar_event_id: int | None = None
    error_message: str | None = None
    occurred_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["action"] = self.action.value
        payload["occurred_at"] = serialize_datetime(self.occurred_at)
        return payload


@dataclass
class CalendarEventAudit:
    calendar_event_id: int
    calendar_source_id: int
    action: AuditAction
    id: int | None = None
    changes_from: dict[str, Any] = field(default_factory=dict)
    changes_to: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["action"] = self.action.value
        payload["occurred_at"] = serialize_datetime(self.occurred_at)
        return payload


@dataclass
class FilterRule:
    pattern: str
    match_type: MatchType | None = MatchType.CONTAINS
    field_name: FieldName | None = FieldName.TITLE
    id: int | None = None
    calendar_source_id: int | None = None
    case_sensitive: bool = False
    active: bool = True
    position: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["match_type"] = self.match_type.value if self.match_type else None
        payload["field_name"] = self.field_name.value if self.field_name else None
        return payload


@dataclass
class EventMapping:
    pattern: str
    replacement: str
    match_type: MatchType | None = MatchType.CONTAINS
    id: int | None = None
    calendar_source_id: int | None = None
    case_sensitive: bool = False
    active: bool = True
    position: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["match_type"] = self.match_type.value if self.match_type else None
        return payload


@dataclass
class CalendarPayload:
    uid: str
    starts_at: datetime
    ends_at: datetime
    summary: str = ""
    description: str = ""
    location: str = ""
    status: EventStatus = EventStatus.CONFIRMED
    all_day: bool = False
    transparency: str = "opaque"
    url: str | None = None
    x_props: dict[str, str] = field(default_factory=dict)


@dataclass
class SyncSummary:
    source_id: int | None
    changed: bool
    fetched: int = 0
    upserts: int = 0
    deletes: int = 0
    canceled: int = 0
    errors: int = 0
    duration_ms: int = 0
    events: list[CalendarEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "changed": self.changed,
            "fetched": self.fetched,
            "upserts": self.upserts,
            "deletes": self.deletes,
            "canceled": self.canceled,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }
