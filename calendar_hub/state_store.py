from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable

from calendar_hub.errors import InvalidValueError
from calendar_hub.models import (
    AttemptStatus,
    AuditAction,
    CalendarEvent,
    CalendarEventAudit,
    CalendarSource,
    EventMapping,
    EventStatus,
    FieldName,
    FilterRule,
    MatchType,
    SyncAction,
    SyncAttempt,
    SyncEventResult,
    coerce_enum,
    lenient_enum,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


SOURCE_COLUMNS = (
    "name",
    "calendar_identifier",
    "ingestion_url",
    "time_zone",
    "active",
    "deleted_at",
    "auto_sync_enabled",
    "sync_frequency_minutes",
    "sync_window_start_hour",
    "sync_window_end_hour",
    "last_synced_at",
    "sync_token",
    "last_change_hash",
    "ics_feed_etag",
    "ics_feed_last_modified",
    "import_start_date",
    "credentials",
    "created_at",
)

# Sync bookkeeping columns move on every run and are not audited.
AUDITED_EVENT_COLUMNS = (
    "title",
    "description",
    "location",
    "time_zone",
    "starts_at",
    "ends_at",
    "status",
    "sync_exempt",
    "all_day",
)


def _utc_now() -> str:
    return serialize_datetime(utc_now()) or ""


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _validate_hour(value: int | None, label: str) -> int | None:
    if value is None:
        return None
    hour = int(value)
    if not 0 <= hour <= 23:
        raise InvalidValueError(f"{label} must be between 0 and 23")
    return hour


def _source_from_row(row: sqlite3.Row) -> CalendarSource:
    return CalendarSource(
        id=int(row["id"]),
        name=str(row["name"]),
        calendar_identifier=str(row["calendar_identifier"] or ""),
        ingestion_url=str(row["ingestion_url"] or ""),
        time_zone=str(row["time_zone"] or ""),
        active=bool(row["active"]),
        deleted_at=parse_iso_datetime(row["deleted_at"]),
        auto_sync_enabled=bool(row["auto_sync_enabled"]),
        sync_frequency_minutes=_optional_int(row["sync_frequency_minutes"]),
        sync_window_start_hour=_optional_int(row["sync_window_start_hour"]),
        sync_window_end_hour=_optional_int(row["sync_window_end_hour"]),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        sync_token=str(row["sync_token"] or ""),
        last_change_hash=row["last_change_hash"],
        ics_feed_etag=str(row["ics_feed_etag"] or ""),
        ics_feed_last_modified=str(row["ics_feed_last_modified"] or ""),
        import_start_date=parse_iso_datetime(row["import_start_date"]),
        credentials=str(row["credentials"] or ""),
        created_at=parse_iso_datetime(row["created_at"]),
    )


def _event_from_row(row: sqlite3.Row) -> CalendarEvent:
    return CalendarEvent(
        id=int(row["id"]),
        calendar_source_id=int(row["calendar_source_id"]),
        external_id=str(row["external_id"]),
        title=str(row["title"] or ""),
        description=row["description"],
        location=row["location"],
        time_zone=str(row["time_zone"] or ""),
        starts_at=parse_iso_datetime(row["starts_at"]),
        ends_at=parse_iso_datetime(row["ends_at"]),
        status=coerce_enum(EventStatus, row["status"]),
        source_updated_at=parse_iso_datetime(row["source_updated_at"]),
        synced_at=parse_iso_datetime(row["synced_at"]),
        fingerprint=str(row["fingerprint"] or ""),
        data=json.loads(row["data_json"] or "{}"),
        sync_exempt=bool(row["sync_exempt"]),
        all_day=bool(row["all_day"]),
    )


def _attempt_from_row(row: sqlite3.Row) -> SyncAttempt:
    return SyncAttempt(
        id=int(row["id"]),
        calendar_source_id=int(row["calendar_source_id"]),
        status=coerce_enum(AttemptStatus, row["status"]),
        total_events=int(row["total_events"]),
        upserts=int(row["upserts"]),
        deletes=int(row["deletes"]),
        errors_count=int(row["errors_count"]),
        started_at=parse_iso_datetime(row["started_at"]),
        finished_at=parse_iso_datetime(row["finished_at"]),
        message=row["message"],
        created_at=parse_iso_datetime(row["created_at"]),
    )


def _audit_from_row(row: sqlite3.Row) -> CalendarEventAudit:
    return CalendarEventAudit(
        id=int(row["id"]),
        calendar_event_id=int(row["calendar_event_id"]),
        calendar_source_id=int(row["calendar_source_id"]),
        action=coerce_enum(AuditAction, row["action"]),
        changes_from=json.loads(row["changes_from"] or "{}"),
        changes_to=json.loads(row["changes_to"] or "{}"),
        occurred_at=parse_iso_datetime(row["occurred_at"]),
    )


def _audited_values(row: sqlite3.Row | None) -> dict[str, Any]:
    if row is None:
        return {}
    values = {name: row[name] for name in AUDITED_EVENT_COLUMNS}
    for flag in ("sync_exempt", "all_day"):
        values[flag] = bool(values[flag])
    return values


def _result_from_row(row: sqlite3.Row) -> SyncEventResult:
    return SyncEventResult(
        id=int(row["id"]),
        sync_attempt_id=int(row["sync_attempt_id"]),
        calendar_event_id=_optional_int(row["calendar_event_id"]),
        external_id=str(row["external_id"]),
        action=coerce_enum(SyncAction, row["action"]),
        success=bool(row["success"]),
        error_message=row["error_message"],
        occurred_at=parse_iso_datetime(row["occurred_at"]),
    )


def _filter_rule_from_row(row: sqlite3.Row) -> FilterRule:
    # Unknown match types or fields load as None and never match.
    return FilterRule(
        id=int(row["id"]),
        calendar_source_id=_optional_int(row["calendar_source_id"]),
        pattern=str(row["pattern"] or ""),
        match_type=lenient_enum(MatchType, row["match_type"]),
        field_name=lenient_enum(FieldName, row["field_name"]),
        case_sensitive=bool(row["case_sensitive"]),
        active=bool(row["active"]),
        position=int(row["position"]),
    )


def _mapping_from_row(row: sqlite3.Row) -> EventMapping:
    return EventMapping(
        id=int(row["id"]),
        calendar_source_id=_optional_int(row["calendar_source_id"]),
        pattern=str(row["pattern"] or ""),
        replacement=str(row["replacement"] or ""),
        match_type=lenient_enum(MatchType, row["match_type"]),
        case_sensitive=bool(row["case_sensitive"]),
        active=bool(row["active"]),
        position=int(row["position"]),
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._source_locks: dict[int, threading.RLock] = {}
        self._source_locks_guard = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendar_sources (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            calendar_identifier TEXT NOT NULL DEFAULT '',
            ingestion_url TEXT NOT NULL DEFAULT '',
            time_zone TEXT NOT NULL DEFAULT '',
            active INTEGER NOT NULL DEFAULT 1,
            deleted_at TEXT,
            auto_sync_enabled INTEGER NOT NULL DEFAULT 1,
            sync_frequency_minutes INTEGER,
            sync_window_start_hour INTEGER,
            sync_window_end_hour INTEGER,
            last_synced_at TEXT,
            sync_token TEXT NOT NULL DEFAULT '',
            last_change_hash TEXT,
            ics_feed_etag TEXT NOT NULL DEFAULT '',
            ics_feed_last_modified TEXT NOT NULL DEFAULT '',
            import_start_date TEXT,
            credentials TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS calendar_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            calendar_source_id INTEGER NOT NULL,
            external_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            time_zone TEXT NOT NULL,
            starts_at TEXT NOT NULL,
            ends_at TEXT NOT NULL,
            status TEXT NOT NULL,
            source_updated_at TEXT,
            synced_at TEXT,
            fingerprint TEXT NOT NULL,
            data_json TEXT NOT NULL,
            sync_exempt INTEGER NOT NULL DEFAULT 0,
            all_day INTEGER NOT NULL DEFAULT 0,
            UNIQUE (calendar_source_id, external_id)
        );

        CREATE TABLE IF NOT EXISTS calendar_event_audits (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            calendar_event_id INTEGER NOT NULL,
            calendar_source_id INTEGER NOT NULL,
            action TEXT NOT NULL,
            changes_from TEXT NOT NULL DEFAULT '{}',
            changes_to TEXT NOT NULL DEFAULT '{}',
            occurred_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_attempts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            calendar_source_id INTEGER NOT NULL,
            status TEXT NOT NULL,
            total_events INTEGER NOT NULL DEFAULT 0,
            upserts INTEGER NOT NULL DEFAULT 0,
            deletes INTEGER NOT NULL DEFAULT 0,
            errors_count INTEGER NOT NULL DEFAULT 0,
            started_at TEXT,
            finished_at TEXT,
            message TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_event_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sync_attempt_id INTEGER NOT NULL,
            calendar_event_id INTEGER,
            external_id TEXT NOT NULL,
            action TEXT NOT NULL,
            success INTEGER NOT NULL,
            error_message TEXT,
            occurred_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS filter_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            calendar_source_id INTEGER,
            pattern TEXT NOT NULL,
            match_type TEXT NOT NULL,
            field_name TEXT NOT NULL,
            case_sensitive INTEGER NOT NULL DEFAULT 0,
            active INTEGER NOT NULL DEFAULT 1,
            position INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS event_mappings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            calendar_source_id INTEGER,
            pattern TEXT NOT NULL,
            replacement TEXT NOT NULL,
            match_type TEXT NOT NULL,
            case_sensitive INTEGER NOT NULL DEFAULT 0,
            active INTEGER NOT NULL DEFAULT 1,
            position INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_sync_attempts_source_status
            ON sync_attempts(calendar_source_id, status);
        CREATE INDEX IF NOT EXISTS idx_sync_event_results_attempt
            ON sync_event_results(sync_attempt_id);
        CREATE INDEX IF NOT EXISTS idx_calendar_event_audits_event
            ON calendar_event_audits(calendar_event_id, occurred_at);
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def source_lock(self, source_id: int) -> threading.RLock:
        with self._source_locks_guard:
            lock = self._source_locks.get(int(source_id))
            if lock is None:
                lock = threading.RLock()
                self._source_locks[int(source_id)] = lock
            return lock

    # Sources

    def _source_values(self, source: CalendarSource) -> tuple[Any, ...]:
        if not source.name.strip():
            raise InvalidValueError("source name is required")
        return (
            source.name.strip(),
            source.calendar_identifier.strip(),
            source.ingestion_url.strip(),
            source.time_zone.strip(),
            int(bool(source.active)),
            serialize_datetime(source.deleted_at),
            int(bool(source.auto_sync_enabled)),
            _optional_int(source.sync_frequency_minutes),
            _validate_hour(source.sync_window_start_hour, "sync_window_start_hour"),
            _validate_hour(source.sync_window_end_hour, "sync_window_end_hour"),
            serialize_datetime(source.last_synced_at),
            source.sync_token or "",
            source.last_change_hash,
            source.ics_feed_etag or "",
            source.ics_feed_last_modified or "",
            serialize_datetime(source.import_start_date),
            source.credentials or "",
            serialize_datetime(source.created_at),
        )

    def create_source(self, source: CalendarSource) -> CalendarSource:
        now = utc_now()
        source.created_at = source.created_at or now
        if source.import_start_date is None:
            source.import_start_date = source.created_at
        placeholders = ", ".join("?" for _ in SOURCE_COLUMNS)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"INSERT INTO calendar_sources({', '.join(SOURCE_COLUMNS)}) VALUES ({placeholders})",
                    self._source_values(source),
                )
                conn.commit()
                source.id = int(cursor.lastrowid)
        return source

    def get_source(self, source_id: int, include_deleted: bool = False) -> CalendarSource | None:
        sql = "SELECT * FROM calendar_sources WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(sql, (int(source_id),)).fetchone()
        return _source_from_row(row) if row else None

    def list_sources(self, include_deleted: bool = False) -> list[CalendarSource]:
        sql = "SELECT * FROM calendar_sources"
        if not include_deleted:
            sql += " WHERE deleted_at IS NULL"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql + " ORDER BY id").fetchall()
        return [_source_from_row(row) for row in rows]

    def list_active_auto_sync_sources(self) -> list[CalendarSource]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM calendar_sources
                    WHERE deleted_at IS NULL AND active = 1 AND auto_sync_enabled = 1
                    ORDER BY id
                    """
                ).fetchall()
        return [_source_from_row(row) for row in rows]

    def update_source(self, source: CalendarSource) -> CalendarSource:
        if source.id is None:
            raise InvalidValueError("source id is required for update")
        existing = self.get_source(source.id, include_deleted=True)
        if existing is None:
            raise KeyError(f"Calendar source {source.id} not found")
        # import_start_date is fixed at creation.
        source.import_start_date = existing.import_start_date
        source.created_at = existing.created_at
        assignments = ", ".join(f"{column} = ?" for column in SOURCE_COLUMNS)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE calendar_sources SET {assignments} WHERE id = ?",
                    (*self._source_values(source), int(source.id)),
                )
                conn.commit()
        return source

    def mark_synced(self, source_id: int, *, token: str, timestamp: datetime, change_hash: str | None) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE calendar_sources
                    SET last_synced_at = ?, sync_token = ?, last_change_hash = ?
                    WHERE id = ?
                    """,
                    (serialize_datetime(timestamp), token, change_hash, int(source_id)),
                )
                conn.commit()

    def update_feed_cache(self, source_id: int, *, etag: str, last_modified: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE calendar_sources SET ics_feed_etag = ?, ics_feed_last_modified = ? WHERE id = ?",
                    (etag or "", last_modified or "", int(source_id)),
                )
                conn.commit()

    def soft_delete_source(self, source_id: int) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE calendar_sources SET deleted_at = ?, active = 0 WHERE id = ? AND deleted_at IS NULL",
                    (_utc_now(), int(source_id)),
                )
                conn.commit()
                return cursor.rowcount > 0

    def unarchive_source(self, source_id: int) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE calendar_sources SET deleted_at = NULL, active = 1 WHERE id = ? AND deleted_at IS NOT NULL",
                    (int(source_id),),
                )
                conn.commit()
                return cursor.rowcount > 0

    def purge_source(self, source_id: int) -> dict[str, int]:
        source_id = int(source_id)
        counts: dict[str, int] = {}
        with self._lock:
            with self._connect() as conn:
                counts["sync_event_results"] = conn.execute(
                    """
                    DELETE FROM sync_event_results
                    WHERE sync_attempt_id IN (SELECT id FROM sync_attempts WHERE calendar_source_id = ?)
                    """,
                    (source_id,),
                ).rowcount
                for table in (
                    "calendar_event_audits",
                    "sync_attempts",
                    "calendar_events",
                    "filter_rules",
                    "event_mappings",
                ):
                    counts[table] = conn.execute(
                        f"DELETE FROM {table} WHERE calendar_source_id = ?", (source_id,)
                    ).rowcount
                counts["calendar_sources"] = conn.execute(
                    "DELETE FROM calendar_sources WHERE id = ?", (source_id,)
                ).rowcount
                conn.commit()
        with self._source_locks_guard:
            self._source_locks.pop(source_id, None)
        return counts

    def get_source_credentials(self, source_id: int) -> str:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT credentials FROM calendar_sources WHERE id = ?", (int(source_id),)).fetchone()
        return str(row["credentials"] or "") if row else ""

    def set_source_credentials(self, source_id: int, blob: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("UPDATE calendar_sources SET credentials = ? WHERE id = ?", (blob or "", int(source_id)))
                conn.commit()

    def rewrite_credentials(self, transform: Callable[[str], str]) -> int:
        """Re-encode every non-empty credential blob in one transaction.

        An exception from ``transform`` rolls back every row.
        """
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute("SELECT id, credentials FROM calendar_sources WHERE credentials != ''").fetchall()
                for row in rows:
                    conn.execute(
                        "UPDATE calendar_sources SET credentials = ? WHERE id = ?",
                        (transform(str(row["credentials"])), int(row["id"])),
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        return len(rows)

    # Events

    def find_event(self, source_id: int, external_id: str) -> CalendarEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM calendar_events WHERE calendar_source_id = ? AND external_id = ?",
                    (int(source_id), str(external_id)),
                ).fetchone()
        return _event_from_row(row) if row else None

    def get_event(self, event_id: int) -> CalendarEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM calendar_events WHERE id = ?", (int(event_id),)).fetchone()
        return _event_from_row(row) if row else None

    def save_event(self, event: CalendarEvent) -> CalendarEvent:
        event.validate()
        status = coerce_enum(EventStatus, event.status)
        event.status = status
        event.refresh_fingerprint()
        with self._lock:
            with self._connect() as conn:
                lookup = (int(event.calendar_source_id), event.external_id)
                before = conn.execute(
                    "SELECT * FROM calendar_events WHERE calendar_source_id = ? AND external_id = ?", lookup
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO calendar_events(
                        calendar_source_id, external_id, title, description, location, time_zone,
                        starts_at, ends_at, status, source_updated_at, synced_at, fingerprint,
                        data_json, sync_exempt, all_day
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(calendar_source_id, external_id) DO UPDATE SET
                        title = excluded.title,
                        description = excluded.description,
                        location = excluded.location,
                        time_zone = excluded.time_zone,
                        starts_at = excluded.starts_at,
                        ends_at = excluded.ends_at,
                        status = excluded.status,
                        source_updated_at = excluded.source_updated_at,
                        synced_at = excluded.synced_at,
                        fingerprint = excluded.fingerprint,
                        data_json = excluded.data_json,
                        sync_exempt = excluded.sync_exempt,
                        all_day = excluded.all_day
                    """,
                    (
                        int(event.calendar_source_id),
                        event.external_id,
                        event.title,
                        event.description,
                        event.location,
                        event.time_zone,
                        serialize_datetime(event.starts_at),
                        serialize_datetime(event.ends_at),
                        status.value,
                        serialize_datetime(event.source_updated_at),
                        serialize_datetime(event.synced_at),
                        event.fingerprint,
                        json.dumps(event.data or {}, ensure_ascii=False, sort_keys=True),
                        int(bool(event.sync_exempt)),
                        int(bool(event.all_day)),
                    ),
                )
                row = conn.execute(
                    "SELECT * FROM calendar_events WHERE calendar_source_id = ? AND external_id = ?", lookup
                ).fetchone()
                self._audit_event_change(conn, before, row)
                conn.commit()
        event.id = int(row["id"])
        return event

    def _audit_event_change(self, conn: sqlite3.Connection, before: sqlite3.Row | None, after: sqlite3.Row) -> None:
        old, new = _audited_values(before), _audited_values(after)
        if before is None:
            action, changes_from, changes_to = AuditAction.CREATED, {}, new
        else:
            changed = [name for name in AUDITED_EVENT_COLUMNS if old[name] != new[name]]
            if not changed:
                return
            action = AuditAction.UPDATED
            changes_from = {name: old[name] for name in changed}
            changes_to = {name: new[name] for name in changed}
        conn.execute(
            """
            INSERT INTO calendar_event_audits(
                calendar_event_id, calendar_source_id, action, changes_from, changes_to, occurred_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                int(after["id"]),
                int(after["calendar_source_id"]),
                action.value,
                json.dumps(changes_from, ensure_ascii=False, sort_keys=True),
                json.dumps(changes_to, ensure_ascii=False, sort_keys=True),
                _utc_now(),
            ),
        )

    def list_event_audits(self, event_id: int) -> list[CalendarEventAudit]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM calendar_event_audits WHERE calendar_event_id = ? ORDER BY id",
                    (int(event_id),),
                ).fetchall()
        return [_audit_from_row(row) for row in rows]

    def list_events(self, source_id: int, sync_exempt: bool | None = None) -> list[CalendarEvent]:
        sql = "SELECT * FROM calendar_events WHERE calendar_source_id = ?"
        params: list[Any] = [int(source_id)]
        if sync_exempt is not None:
            sql += " AND sync_exempt = ?"
            params.append(int(bool(sync_exempt)))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql + " ORDER BY starts_at, id", params).fetchall()
        return [_event_from_row(row) for row in rows]

    def list_events_missing(self, source_id: int, external_ids: Iterable[str]) -> list[CalendarEvent]:
        """Events of ``source_id`` that are not cancelled and whose external id is not in ``external_ids``."""
        keep = set(external_ids)
        return [
            event
            for event in self.list_events(source_id)
            if event.external_id not in keep and not event.cancelled
        ]

    def mark_event_synced(self, event_id: int, synced_at: datetime | None = None) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE calendar_events SET synced_at = ? WHERE id = ?",
                    (serialize_datetime(synced_at or utc_now()), int(event_id)),
                )
                conn.commit()

    def set_event_exempt(self, event_id: int, sync_exempt: bool) -> None:
        with self._lock:
            with self._connect() as conn:
                before = conn.execute("SELECT * FROM calendar_events WHERE id = ?", (int(event_id),)).fetchone()
                if before is None:
                    return
                conn.execute(
                    "UPDATE calendar_events SET sync_exempt = ? WHERE id = ?",
                    (int(bool(sync_exempt)), int(event_id)),
                )
                after = conn.execute("SELECT * FROM calendar_events WHERE id = ?", (int(event_id),)).fetchone()
                self._audit_event_change(conn, before, after)
                conn.commit()

    # Attempts

    def create_attempt(self, source_id: int, status: AttemptStatus = AttemptStatus.QUEUED) -> SyncAttempt:
        status = coerce_enum(AttemptStatus, status)
        created_at = utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO sync_attempts(calendar_source_id, status, created_at) VALUES (?, ?, ?)",
                    (int(source_id), status.value, serialize_datetime(created_at)),
                )
                conn.commit()
                attempt_id = int(cursor.lastrowid)
        return SyncAttempt(calendar_source_id=int(source_id), status=status, id=attempt_id, created_at=created_at)

    def get_attempt(self, attempt_id: int) -> SyncAttempt | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM sync_attempts WHERE id = ?", (int(attempt_id),)).fetchone()
        return _attempt_from_row(row) if row else None

    def update_attempt(self, attempt: SyncAttempt) -> SyncAttempt:
        if attempt.id is None:
            raise InvalidValueError("attempt id is required for update")
        status = coerce_enum(AttemptStatus, attempt.status)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_attempts
                    SET status = ?, total_events = ?, upserts = ?, deletes = ?, errors_count = ?,
                        started_at = ?, finished_at = ?, message = ?
                    WHERE id = ?
                    """,
                    (
                        status.value,
                        int(attempt.total_events),
                        int(attempt.upserts),
                        int(attempt.deletes),
                        int(attempt.errors_count),
                        serialize_datetime(attempt.started_at),
                        serialize_datetime(attempt.finished_at),
                        attempt.message,
                        int(attempt.id),
                    ),
                )
                conn.commit()
        return attempt

    def has_pending_attempt(self, source_id: int) -> bool:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT 1 FROM sync_attempts WHERE calendar_source_id = ? AND status IN (?, ?) LIMIT 1",
                    (int(source_id), AttemptStatus.QUEUED.value, AttemptStatus.RUNNING.value),
                ).fetchone()
        return row is not None

    def list_attempts(self, source_id: int | None = None, limit: int = 20) -> list[SyncAttempt]:
        with self._lock:
            with self._connect() as conn:
                if source_id is None:
                    rows = conn.execute(
                        "SELECT * FROM sync_attempts ORDER BY id DESC LIMIT ?", (max(1, limit),)
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM sync_attempts WHERE calendar_source_id = ? ORDER BY id DESC LIMIT ?",
                        (int(source_id), max(1, limit)),
                    ).fetchall()
        return [_attempt_from_row(row) for row in rows]

    def stale_attempts(self, older_than: datetime) -> list[SyncAttempt]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM sync_attempts WHERE status IN (?, ?) ORDER BY id",
                    (AttemptStatus.QUEUED.value, AttemptStatus.RUNNING.value),
                ).fetchall()
        attempts = [_attempt_from_row(row) for row in rows]
        return [attempt for attempt in attempts if (attempt.started_at or attempt.created_at) < older_than]

    def record_event_result(self, result: SyncEventResult) -> SyncEventResult:
        action = coerce_enum(SyncAction, result.action)
        result.action = action
        result.occurred_at = result.occurred_at or utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_event_results(
                        sync_attempt_id, calendar_event_id, external_id, action, success, error_message, occurred_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(result.sync_attempt_id),
                        result.calendar_event_id,
                        result.external_id,
                        action.value,
                        int(bool(result.success)),
                        result.error_message,
                        serialize_datetime(result.occurred_at),
                    ),
                )
                conn.commit()
                result.id = int(cursor.lastrowid)
        return result

    def list_event_results(self, attempt_id: int) -> list[SyncEventResult]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM sync_event_results WHERE sync_attempt_id = ? ORDER BY id",
                    (int(attempt_id),),
                ).fetchall()
        return [_result_from_row(row) for row in rows]

    # Filter rules

    def create_filter_rule(self, rule: FilterRule) -> FilterRule:
        match_type = coerce_enum(MatchType, rule.match_type)
        field_name = coerce_enum(FieldName, rule.field_name)
        if not rule.pattern:
            raise InvalidValueError("filter rule pattern is required")
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO filter_rules(calendar_source_id, pattern, match_type, field_name, case_sensitive, active, position)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rule.calendar_source_id,
                        rule.pattern,
                        match_type.value,
                        field_name.value,
                        int(bool(rule.case_sensitive)),
                        int(bool(rule.active)),
                        int(rule.position),
                    ),
                )
                conn.commit()
                rule.id = int(cursor.lastrowid)
        rule.match_type, rule.field_name = match_type, field_name
        return rule

    def update_filter_rule(self, rule: FilterRule) -> FilterRule:
        if rule.id is None:
            raise InvalidValueError("filter rule id is required for update")
        match_type = coerce_enum(MatchType, rule.match_type)
        field_name = coerce_enum(FieldName, rule.field_name)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE filter_rules
                    SET calendar_source_id = ?, pattern = ?, match_type = ?, field_name = ?,
                        case_sensitive = ?, active = ?, position = ?
                    WHERE id = ?
                    """,
                    (
                        rule.calendar_source_id,
                        rule.pattern,
                        match_type.value,
                        field_name.value,
                        int(bool(rule.case_sensitive)),
                        int(bool(rule.active)),
                        int(rule.position),
                        int(rule.id),
                    ),
                )
                conn.commit()
        rule.match_type, rule.field_name = match_type, field_name
        return rule

    def get_filter_rule(self, rule_id: int) -> FilterRule | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM filter_rules WHERE id = ?", (int(rule_id),)).fetchone()
        return _filter_rule_from_row(row) if row else None

    def delete_filter_rule(self, rule_id: int) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM filter_rules WHERE id = ?", (int(rule_id),))
                conn.commit()
                return cursor.rowcount > 0

    def active_filter_rules(self, source_id: int | None) -> list[FilterRule]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM filter_rules
                    WHERE active = 1 AND (calendar_source_id IS NULL OR calendar_source_id = ?)
                    ORDER BY position, id
                    """,
                    (source_id,),
                ).fetchall()
        return [_filter_rule_from_row(row) for row in rows]

    # Event mappings

    def _bump_mapping_version(self, conn: sqlite3.Connection, source_id: int | None) -> None:
        key = self._mapping_version_key(source_id)
        row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (key,)).fetchone()
        version = int(row["value"]) + 1 if row else 1
        conn.execute(
            """
            INSERT INTO app_meta(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, str(version), _utc_now()),
        )

    @staticmethod
    def _mapping_version_key(source_id: int | None) -> str:
        return "mapping_version:global" if source_id is None else f"mapping_version:{int(source_id)}"

    def mapping_version(self, source_id: int | None) -> str:
        global_version = self.get_meta(self._mapping_version_key(None)) or "0"
        if source_id is None:
            return global_version
        return f"{global_version}.{self.get_meta(self._mapping_version_key(source_id)) or '0'}"

    def create_event_mapping(self, mapping: EventMapping) -> EventMapping:
        match_type = coerce_enum(MatchType, mapping.match_type)
        if not mapping.pattern:
            raise InvalidValueError("event mapping pattern is required")
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO event_mappings(calendar_source_id, pattern, replacement, match_type, case_sensitive, active, position)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        mapping.calendar_source_id,
                        mapping.pattern,
                        mapping.replacement or "",
                        match_type.value,
                        int(bool(mapping.case_sensitive)),
                        int(bool(mapping.active)),
                        int(mapping.position),
                    ),
                )
                self._bump_mapping_version(conn, mapping.calendar_source_id)
                conn.commit()
                mapping.id = int(cursor.lastrowid)
        mapping.match_type = match_type
        return mapping

    def update_event_mapping(self, mapping: EventMapping) -> EventMapping:
        if mapping.id is None:
            raise InvalidValueError("event mapping id is required for update")
        match_type = coerce_enum(MatchType, mapping.match_type)
        previous = self.get_event_mapping(mapping.id)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE event_mappings
                    SET calendar_source_id = ?, pattern = ?, replacement = ?, match_type = ?,
                        case_sensitive = ?, active = ?, position = ?
                    WHERE id = ?
                    """,
                    (
                        mapping.calendar_source_id,
                        mapping.pattern,
                        mapping.replacement or "",
                        match_type.value,
                        int(bool(mapping.case_sensitive)),
                        int(bool(mapping.active)),
                        int(mapping.position),
                        int(mapping.id),
                    ),
                )
                self._bump_mapping_version(conn, mapping.calendar_source_id)
                if previous is not None and previous.calendar_source_id != mapping.calendar_source_id:
                    self._bump_mapping_version(conn, previous.calendar_source_id)
                conn.commit()
        mapping.match_type = match_type
        return mapping

    def get_event_mapping(self, mapping_id: int) -> EventMapping | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM event_mappings WHERE id = ?", (int(mapping_id),)).fetchone()
        return _mapping_from_row(row) if row else None

    def delete_event_mapping(self, mapping_id: int) -> bool:
        existing = self.get_event_mapping(mapping_id)
        if existing is None:
            return False
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM event_mappings WHERE id = ?", (int(mapping_id),))
                self._bump_mapping_version(conn, existing.calendar_source_id)
                conn.commit()
        return True

    def active_event_mappings(self, source_id: int | None) -> list[EventMapping]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM event_mappings
                    WHERE active = 1 AND (calendar_source_id IS NULL OR calendar_source_id = ?)
                    ORDER BY position, id
                    """,
                    (source_id,),
                ).fetchall()
        return [_mapping_from_row(row) for row in rows]

    # Meta

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (str(key),)).fetchone()
        if row is None:
            return None
        return str(row["value"])
