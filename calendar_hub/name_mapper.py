from __future__ import annotations

import logging
import re
import threading
from typing import TYPE_CHECKING

from calendar_hub.event_filter import compile_pattern, text_matches
from calendar_hub.models import EventMapping, MatchType

if TYPE_CHECKING:
    from calendar_hub.state_store import StateStore


logger = logging.getLogger(__name__)

MAX_CACHE_ENTRIES = 2048


def apply_mapping(mapping: EventMapping, title: str) -> str | None:
    """Mapped title, or None when ``mapping`` does not match."""
    if mapping.match_type is MatchType.REGEX:
        compiled = compile_pattern(mapping.pattern, mapping.case_sensitive)
        if compiled is None or not compiled.search(title):
            return None
        try:
            return compiled.sub(mapping.replacement, title)
        except re.error as exc:
            # bad backreference in the replacement
            logger.debug("Skipping mapping %s: %s", mapping.id, exc)
            return None
    if text_matches(title, mapping.pattern, mapping.match_type, mapping.case_sensitive):
        return mapping.replacement
    return None


class NameMapper:
    """Rewrites event titles with the first matching mapping rule.

    Results are cached per (source, mapping version, title). The store bumps the
    version on every mapping mutation, so stale entries are never served.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self._cache: dict[tuple[int | None, str, str], str] = {}
        self._lock = threading.Lock()

    def apply(self, title: str, source_id: int | None) -> str:
        title = title or ""
        key = (source_id, self.store.mapping_version(source_id), title)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        mapped = self._map(title, source_id)
        with self._lock:
            if len(self._cache) >= MAX_CACHE_ENTRIES:
                self._cache.clear()
            self._cache[key] = mapped
        return mapped

    def _map(self, title: str, source_id: int | None) -> str:
        for mapping in self.store.active_event_mappings(source_id):
            mapped = apply_mapping(mapping, title)
            if mapped is not None:
                return mapped
        return title

    def invalidate(self, source_id: int | None = None) -> None:
        with self._lock:
            if source_id is None:
                self._cache.clear()
                return
            for key in [key for key in self._cache if key[0] == source_id]:
                self._cache.pop(key, None)
