"""In-memory set of target URLs already confirmed as matched."""

from __future__ import annotations

from threading import Lock
from typing import Any, Iterable

from .candidates import TARGET_URL_KEYS
from .log_config import get_logger

logger = get_logger("dedup")


def matched_entry_key(entry: dict[str, Any]) -> str | None:
    for key in TARGET_URL_KEYS:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class DedupCache:
    def __init__(self, identifiers: Iterable[str] = ()) -> None:
        self._lock = Lock()
        self._items: set[str] = {item for item in identifiers if isinstance(item, str) and item}

    @classmethod
    def from_matched(cls, entries: Iterable[Any]) -> "DedupCache":
        cache = cls()
        cache.rehydrate(entries)
        return cache

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.contains(identifier)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def contains(self, identifier: str | None) -> bool:
        if not identifier:
            return False
        with self._lock:
            return identifier in self._items

    def add(self, identifier: str | None) -> bool:
        """Insert `identifier`; returns True only on first insertion."""
        if not identifier:
            return False
        with self._lock:
            if identifier in self._items:
                return False
            self._items.add(identifier)
        logger.info("Added %s to the matched cache; it will be skipped from now on.", identifier)
        return True

    def rehydrate(self, entries: Iterable[Any]) -> int:
        """Merge keys derived from durable matched records; returns how many were new."""
        keys = [matched_entry_key(entry) for entry in entries if isinstance(entry, dict)]
        with self._lock:
            before = len(self._items)
            self._items.update(key for key in keys if key)
            added = len(self._items) - before
        if added:
            logger.info("%d already-matched targets will be skipped.", added)
        return added

    def clear(self) -> int:
        with self._lock:
            removed = len(self._items)
            self._items.clear()
        return removed

    def snapshot(self) -> list[str]:
        with self._lock:
            return sorted(self._items)
