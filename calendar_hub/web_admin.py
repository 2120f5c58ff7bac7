from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calendar_hub.config_manager import MASK, ConfigManager
from calendar_hub.errors import InvalidValueError
from calendar_hub.event_filter import EventFilter
from calendar_hub.key_manager import CredentialStore, KeyManager
from calendar_hub.models import (
    CalendarEvent,
    CalendarSource,
    EventMapping,
    FieldName,
    FilterRule,
    MatchType,
    parse_iso_datetime,
)
from calendar_hub.name_mapper import NameMapper
from calendar_hub.scheduler import AutoSyncScheduler, JobRunner, SyncScheduler
from calendar_hub.state_store import StateStore
from calendar_hub.sync_engine import FilterSyncService, SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SourceCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    calendar_identifier: str = Field(min_length=1)
    ingestion_url: str = Field(min_length=1)
    time_zone: str = ""
    auto_sync_enabled: bool = True
    sync_frequency_minutes: int | None = Field(default=None, ge=1)
    sync_window_start_hour: int | None = Field(default=None, ge=0, le=23)
    sync_window_end_hour: int | None = Field(default=None, ge=0, le=23)
    import_start_date: str | None = None
    http_basic_username: str = ""
    http_basic_password: str = ""


class FilterRuleRequest(BaseModel):
    pattern: str = Field(min_length=1)
    match_type: MatchType = MatchType.CONTAINS
    field_name: FieldName = FieldName.TITLE
    calendar_source_id: int | None = None
    case_sensitive: bool = False
    active: bool = True
    position: int = 0


class EventMappingRequest(BaseModel):
    pattern: str = Field(min_length=1)
    replacement: str = ""
    match_type: MatchType = MatchType.CONTAINS
    calendar_source_id: int | None = None
    case_sensitive: bool = False
    active: bool = True
    position: int = 0


class MappingTestRequest(BaseModel):
    title: str
    source_id: int | None = None


class FilterTestRequest(BaseModel):
    title: str = ""
    description: str = ""
    location: str = ""
    source_id: int | None = None


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        storage = self.config_manager.load().storage
        self.state_store = StateStore(storage.state_path)
        self.key_manager = KeyManager(storage.key_path)
        self.credential_store = CredentialStore(self.state_store, self.key_manager)
        self.name_mapper = NameMapper(self.state_store)
        self.sync_engine = SyncEngine(
            self.config_manager,
            self.state_store,
            credential_store=self.credential_store,
            name_mapper=self.name_mapper,
        )
        self.runner = JobRunner(self.sync_engine)
        self.auto_scheduler = AutoSyncScheduler(self.state_store, self.config_manager, self.runner)
        self.filter_sync = FilterSyncService(self.sync_engine, schedule_sync=self.auto_scheduler.schedule_sync)
        self.scheduler = SyncScheduler(self.auto_scheduler, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_password = str(current.get("caldav", {}).get("app_specific_password", ""))
    caldav = sanitized.get("caldav")
    if isinstance(caldav, dict):
        caldav = dict(caldav)
        password = caldav.get("app_specific_password")
        if password is not None and str(password).strip() in {"", MASK} and current_password:
            caldav.pop("app_specific_password", None)
        if caldav:
            sanitized["caldav"] = caldav
        else:
            sanitized.pop("caldav", None)
    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("CALENDAR_HUB_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)

    app = FastAPI(title="Calendar Hub", version="0.1.0")
    app.state.context = context

    def _source_or_404(source_id: int, include_deleted: bool = False) -> CalendarSource:
        source = app.state.context.state_store.get_source(source_id, include_deleted=include_deleted)
        if source is None:
            raise HTTPException(status_code=404, detail="source not found")
        return source

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()
        app.state.context.runner.shutdown(wait=False)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        try:
            app.state.context.config_manager.update(_sanitize_config_payload(request.payload, current))
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.get("/api/sources")
    def list_sources(include_deleted: bool = False) -> dict[str, Any]:
        sources = app.state.context.state_store.list_sources(include_deleted=include_deleted)
        return {"sources": [source.to_dict() for source in sources]}

    @app.post("/api/sources", status_code=201)
    def create_source(request: SourceCreateRequest) -> dict[str, Any]:
        try:
            import_start_date = parse_iso_datetime(request.import_start_date)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="invalid import_start_date") from exc
        source = CalendarSource(
            name=request.name,
            calendar_identifier=request.calendar_identifier,
            ingestion_url=request.ingestion_url,
            time_zone=request.time_zone,
            auto_sync_enabled=request.auto_sync_enabled,
            sync_frequency_minutes=request.sync_frequency_minutes,
            sync_window_start_hour=request.sync_window_start_hour,
            sync_window_end_hour=request.sync_window_end_hour,
            import_start_date=import_start_date,
        )
        try:
            source = app.state.context.state_store.create_source(source)
        except InvalidValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        app.state.context.credential_store.set(
            source.id,
            {
                "http_basic_username": request.http_basic_username,
                "http_basic_password": request.http_basic_password,
            },
        )
        return {"source": source.to_dict()}

    @app.delete("/api/sources/{source_id}")
    def delete_source(source_id: int) -> dict[str, Any]:
        _source_or_404(source_id)
        app.state.context.state_store.soft_delete_source(source_id)
        return {"message": "source archived"}

    @app.post("/api/sources/{source_id}/unarchive")
    def unarchive_source(source_id: int) -> dict[str, Any]:
        _source_or_404(source_id, include_deleted=True)
        if not app.state.context.state_store.unarchive_source(source_id):
            raise HTTPException(status_code=400, detail="source is not archived")
        return {"source": _source_or_404(source_id).to_dict()}

    @app.post("/api/sources/{source_id}/purge")
    def purge_source(source_id: int) -> dict[str, Any]:
        _source_or_404(source_id, include_deleted=True)
        counts = app.state.context.state_store.purge_source(source_id)
        return {"message": "source purged", "deleted": counts}

    @app.post("/api/sources/{source_id}/sync", status_code=202)
    def sync_source(source_id: int) -> dict[str, Any]:
        _source_or_404(source_id)
        attempt = app.state.context.auto_scheduler.schedule_sync(source_id, force=True)
        if attempt is None:
            raise HTTPException(status_code=409, detail="sync already pending or source not syncable")
        return {"attempt": attempt.to_dict()}

    @app.get("/api/sources/{source_id}/attempts")
    def list_attempts(source_id: int, limit: int = 20) -> dict[str, Any]:
        _source_or_404(source_id, include_deleted=True)
        attempts = app.state.context.state_store.list_attempts(source_id, limit=limit)
        return {"attempts": [attempt.to_dict() for attempt in attempts]}

    @app.get("/api/attempts/{attempt_id}/results")
    def attempt_results(attempt_id: int) -> dict[str, Any]:
        attempt = app.state.context.state_store.get_attempt(attempt_id)
        if attempt is None:
            raise HTTPException(status_code=404, detail="attempt not found")
        results = app.state.context.state_store.list_event_results(attempt_id)
        return {"attempt": attempt.to_dict(), "results": [result.to_dict() for result in results]}

    @app.get("/api/events/{event_id}/audits")
    def event_audits(event_id: int) -> dict[str, Any]:
        store = app.state.context.state_store
        if store.get_event(event_id) is None:
            raise HTTPException(status_code=404, detail="event not found")
        return {"audits": [audit.to_dict() for audit in store.list_event_audits(event_id)]}

    @app.post("/api/filter-rules", status_code=201)
    def create_filter_rule(request: FilterRuleRequest) -> dict[str, Any]:
        if request.calendar_source_id is not None:
            _source_or_404(request.calendar_source_id)
        rule = app.state.context.state_store.create_filter_rule(FilterRule(**request.model_dump()))
        resync = app.state.context.filter_sync.sync_rule_scope(rule.calendar_source_id)
        return {"rule": rule.to_dict(), "resync": resync}

    @app.delete("/api/filter-rules/{rule_id}")
    def delete_filter_rule(rule_id: int) -> dict[str, Any]:
        rule = app.state.context.state_store.get_filter_rule(rule_id)
        if rule is None:
            raise HTTPException(status_code=404, detail="filter rule not found")
        app.state.context.state_store.delete_filter_rule(rule_id)
        resync = app.state.context.filter_sync.sync_rule_scope(rule.calendar_source_id)
        return {"message": "filter rule deleted", "resync": resync}

    @app.post("/api/filter-rules/test")
    def test_filter_rules(request: FilterTestRequest) -> dict[str, Any]:
        event_filter = EventFilter(app.state.context.state_store)
        event = CalendarEvent(
            calendar_source_id=request.source_id or 0,
            external_id="filter-test",
            title=request.title,
            description=request.description,
            location=request.location,
        )
        rules = event_filter.rules_for(request.source_id)
        return {"filtered": event_filter.should_filter(event, rules)}

    @app.post("/api/event-mappings", status_code=201)
    def create_event_mapping(request: EventMappingRequest) -> dict[str, Any]:
        if request.calendar_source_id is not None:
            _source_or_404(request.calendar_source_id)
        mapping = app.state.context.state_store.create_event_mapping(EventMapping(**request.model_dump()))
        return {"mapping": mapping.to_dict()}

    @app.delete("/api/event-mappings/{mapping_id}")
    def delete_event_mapping(mapping_id: int) -> dict[str, Any]:
        if not app.state.context.state_store.delete_event_mapping(mapping_id):
            raise HTTPException(status_code=404, detail="event mapping not found")
        return {"message": "event mapping deleted"}

    @app.post("/api/event-mappings/test")
    def test_event_mapping(request: MappingTestRequest) -> dict[str, Any]:
        mapped = app.state.context.name_mapper.apply(request.title, request.source_id)
        return {"title": request.title, "mapped": mapped}

    @app.post("/api/schedule")
    def schedule_due_syncs() -> dict[str, Any]:
        scheduled = app.state.context.auto_scheduler.run()
        return {"scheduled": scheduled}

    return app


app = create_app()
