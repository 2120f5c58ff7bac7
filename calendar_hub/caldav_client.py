from __future__ import annotations

import logging
import random
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar
from urllib.parse import quote, unquote, urljoin, urlsplit, urlunsplit

import caldav
from caldav.elements import dav
from caldav.lib import error as dav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from tenacity import RetryCallState, Retrying, retry_if_exception_type

from calendar_hub.errors import ConfigurationError, ProtocolError, TransientNetworkError
from calendar_hub.models import CalDAVConfig, CalendarPayload


logger = logging.getLogger(__name__)

T = TypeVar("T")

DISCOVERY_TTL_SECONDS = 12 * 60 * 60
THROTTLE_STATUSES = (429, 503)
MAX_THROTTLE_ATTEMPTS = 4
MAX_TRANSPORT_ATTEMPTS = 3
PRODID = "-//CalendarHub//EN"


class DiscoveryCache:
    """Time-bounded map of (username, calendar identifier) -> collection URL.

    Shared by every sync; stale entries simply expire and are rediscovered.
    """

    def __init__(self, ttl_seconds: float = DISCOVERY_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: tuple[str, str]) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: tuple[str, str], value: str) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class _ThrottledResponse(Exception):
    def __init__(self, response: Any) -> None:
        super().__init__(f"HTTP {response.status}")
        self.response = response


def _retry_after_seconds(response: Any) -> float | None:
    raw = str(response.headers.get("Retry-After", "") or "").strip()
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _wait_for_retry(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    attempt = retry_state.attempt_number
    if isinstance(exc, _ThrottledResponse):
        base = _retry_after_seconds(exc.response) or 0.5 * (2**attempt)
        return base + random.uniform(0, 0.2)  # nosec B311
    return 0.2 * attempt


def _stop_retrying(retry_state: RetryCallState) -> bool:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    limit = MAX_THROTTLE_ATTEMPTS if isinstance(exc, _ThrottledResponse) else MAX_TRANSPORT_ATTEMPTS
    return retry_state.attempt_number >= limit


def encoded_path(path: str) -> str:
    return "/".join(quote(unquote(segment), safe="") for segment in path.split("/"))


def calendar_display_name(calendar: Any) -> str:
    name = getattr(calendar, "name", None)
    if not name:
        props = calendar.get_properties([dav.DisplayName()])
        name = props.get(dav.DisplayName.tag)
    return str(name or "")


def build_ics(payload: CalendarPayload, now: datetime | None = None) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("CALSCALE", "GREGORIAN")
    calendar_obj.add("METHOD", "PUBLISH")

    vevent = ICEvent()
    vevent.add("UID", payload.uid)
    vevent.add("DTSTAMP", (now or datetime.now(timezone.utc)).astimezone(timezone.utc).replace(microsecond=0))
    if payload.all_day:
        start_date = payload.starts_at.date()
        end_date = payload.ends_at.date()
        if end_date <= start_date:
            end_date = start_date + timedelta(days=1)
        vevent.add("DTSTART", start_date)
        vevent.add("DTEND", end_date)
    else:
        vevent.add("DTSTART", payload.starts_at.astimezone(timezone.utc).replace(microsecond=0))
        vevent.add("DTEND", payload.ends_at.astimezone(timezone.utc).replace(microsecond=0))
    vevent.add("SUMMARY", payload.summary or "")
    vevent.add("DESCRIPTION", payload.description or "")
    vevent.add("LOCATION", payload.location or "")
    vevent.add("TRANSP", payload.transparency.upper() if payload.transparency else "OPAQUE")
    if payload.url:
        vevent.add("URL", payload.url)
    for key, value in (payload.x_props or {}).items():
        vevent.add(key, str(value))
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


class CalDAVClient:
    """Pushes calendar objects into one named collection of the user's CalDAV account.

    Discovery (principal, calendar-home-set, collection listing) goes through
    ``caldav``; object writes are issued as raw requests on the same
    ``DAVClient`` so the If-None-Match / If-Match preconditions stay explicit.
    """

    def __init__(
        self,
        config: CalDAVConfig,
        *,
        dav_client: Any = None,
        discovery_cache: DiscoveryCache | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._dav = dav_client
        self._cache = discovery_cache or DiscoveryCache()
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return self.config.base_url or CalDAVConfig().base_url

    @property
    def dav(self) -> Any:
        if self._dav is None:
            self._dav = caldav.DAVClient(
                url=self.base_url,
                username=self.config.username,
                password=self.config.app_specific_password,
                timeout=self.config.timeout_seconds,
            )
        return self._dav

    def _ensure_ready(self, calendar_identifier: str) -> None:
        if not str(calendar_identifier or "").strip():
            raise ConfigurationError("calendar identifier required")
        if not self.config.username:
            raise ConfigurationError("CalDAV username required")
        if not self.config.app_specific_password:
            raise ConfigurationError("CalDAV app-specific password required")

    # --- discovery -------------------------------------------------------

    def discover(self, calendar_identifier: str) -> str:
        self._ensure_ready(calendar_identifier)
        cache_key = (self.config.username, calendar_identifier)
        cached = self._cache.get(cache_key)
        if cached:
            logger.debug("Using cached collection URL for %s", calendar_identifier)
            return cached

        def find_collection() -> str | None:
            for calendar in self.dav.principal().calendars():
                if calendar_display_name(calendar) == calendar_identifier:
                    return str(calendar.url)
            return None

        started = time.monotonic()
        try:
            collection_url = self._with_retries("discover", self.base_url, find_collection)
        except dav_error.DAVError as exc:
            raise ProtocolError(f"CalDAV discovery failed: {exc}") from exc
        logger.info("Discovered calendars for %s in %sms", calendar_identifier, round((time.monotonic() - started) * 1000, 1))
        if not collection_url:
            raise ProtocolError(f"Calendar '{calendar_identifier}' not found")
        self._cache.set(cache_key, collection_url)
        return collection_url

    # --- calendar objects ------------------------------------------------

    def build_calendar_object_url(self, collection_url: str, uid: str) -> str:
        if not urlsplit(collection_url).scheme:
            collection_url = urljoin(self.base_url, collection_url)
        parts = urlsplit(collection_url)
        path = encoded_path(parts.path)
        if not path.endswith("/"):
            path += "/"
        path += quote(f"{uid}.ics", safe="")
        return urlunsplit((parts.scheme, parts.netloc, path, "", ""))

    def upsert(self, calendar_identifier: str, payload: CalendarPayload) -> str:
        self._ensure_ready(calendar_identifier)
        if not payload.uid:
            raise ValueError("payload uid required")
        collection_url = self.discover(calendar_identifier)
        url = self.build_calendar_object_url(collection_url, payload.uid)
        body = build_ics(payload)
        headers = {"Content-Type": "text/calendar; charset=utf-8"}

        try:
            self._request("PUT", url, headers={**headers, "If-None-Match": "*"}, body=body)
        except ProtocolError as exc:
            if exc.status_code != 412:
                raise
            # Object already exists; update it under optimistic concurrency.
            etag = self._head_etag(url)
            if etag:
                self._request("PUT", url, headers={**headers, "If-Match": etag}, body=body)
            else:
                self._request("PUT", url, headers=headers, body=body)
        return payload.uid

    def delete(self, calendar_identifier: str, uid: str) -> str:
        if self.config.read_only:
            return uid
        self._ensure_ready(calendar_identifier)
        if not uid:
            raise ValueError("uid required")
        collection_url = self.discover(calendar_identifier)
        url = self.build_calendar_object_url(collection_url, uid)
        response = self._request("DELETE", url, allowed_statuses=(404,))
        if response.status == 404:
            logger.debug("DELETE %s returned 404 - event already deleted", uid)
        return uid

    def _head_etag(self, url: str) -> str | None:
        try:
            response = self._request("HEAD", url)
        except (ProtocolError, TransientNetworkError):
            return None
        etag = str(response.headers.get("ETag", "") or "").strip()
        return etag or None

    # --- HTTP --------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: str = "",
        allowed_statuses: tuple[int, ...] = (),
    ) -> Any:
        def send() -> Any:
            response = self.dav.request(url, method, body, headers or {})
            if response.status in THROTTLE_STATUSES:
                raise _ThrottledResponse(response)
            return response

        started = time.monotonic()
        try:
            response = self._with_retries(method, url, send)
        except dav_error.AuthorizationError as exc:
            raise ProtocolError(f"CalDAV {method} {url} unauthorized: {exc.reason}") from exc
        duration_ms = round((time.monotonic() - started) * 1000, 1)
        status = response.status
        logger.info("%s %s -> %s in %sms", method, urlsplit(url).path, status, duration_ms)
        if status in allowed_statuses or 200 <= status < 400:
            return response
        detail = str(getattr(response, "raw", "") or "")[:300]
        reason = response.reason or ""
        raise ProtocolError(
            f"CalDAV {method} {url} failed: {status} {reason}{' - ' + detail if detail else ''}",
            status_code=status,
        )

    def _with_retries(self, action: str, url: str, call: Callable[[], T]) -> T:
        # Transport failures from the HTTP stack under caldav all derive from OSError.
        retryer = Retrying(
            retry=retry_if_exception_type((_ThrottledResponse, OSError)),
            wait=_wait_for_retry,
            stop=_stop_retrying,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retryer(call)
        except _ThrottledResponse as exc:
            status = exc.response.status
            raise TransientNetworkError(
                f"CalDAV {action} {url} throttled: {status} after {MAX_THROTTLE_ATTEMPTS} attempts",
                status_code=status,
            ) from exc
        except OSError as exc:
            raise TransientNetworkError(f"CalDAV {action} {url} failed: {exc}") from exc
