from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any, Callable

import pytest

from src.subwatch.core.state_store import StateStore
from src.subwatch.core.sweep_controller import SweepController, SweepSettings


class _FakeOpener:
    """Records opened/closed contexts; urls containing a `fail_markers` entry refuse to open."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._next_id = 0
        self.fail_markers: set[str] = set()
        self.on_open: Callable[[str], None] | None = None
        self.opened_urls: list[str] = []
        self.closed_ids: list[str] = []
        self.live: dict[str, str] = {}
        self.max_live = 0
        self.shutdown_calls = 0

    def open(self, url: str) -> str:
        if any(marker in url for marker in self.fail_markers):
            raise RuntimeError(f"cannot open {url}")
        if self.on_open is not None:
            self.on_open(url)
        with self._lock:
            self._next_id += 1
            context_id = f"ctx_{self._next_id}"
            self.opened_urls.append(url)
            self.live[context_id] = url
            self.max_live = max(self.max_live, len(self.live))
        return context_id

    def close(self, context_id: str) -> None:
        with self._lock:
            self.closed_ids.append(context_id)
            self.live.pop(context_id, None)

    def is_closed(self, context_id: str) -> bool:
        with self._lock:
            return context_id not in self.live

    def close_externally(self, context_id: str) -> None:
        with self._lock:
            self.live.pop(context_id, None)

    def shutdown(self) -> None:
        self.shutdown_calls += 1


class _ManualDefer:
    """Queue deferred callbacks so tests decide when they run."""

    def __init__(self) -> None:
        self.pending: list[tuple[float, Callable[[], Any]]] = []
        self.delays: list[float] = []

    def __call__(self, delay_sec: float, fn: Callable[[], Any]) -> None:
        self.pending.append((delay_sec, fn))
        self.delays.append(delay_sec)

    def run_pending(self, *, max_calls: int = 100) -> int:
        ran = 0
        while self.pending and ran < max_calls:
            _, fn = self.pending.pop(0)
            fn()
            ran += 1
        return ran


@pytest.fixture()
def fake_opener() -> _FakeOpener:
    return _FakeOpener()


@pytest.fixture()
def manual_defer() -> _ManualDefer:
    return _ManualDefer()


@pytest.fixture()
def store(tmp_path: Path) -> StateStore:
    return StateStore(db_path=tmp_path / "subwatch_state.db")


@pytest.fixture()
def make_controller(store: StateStore, fake_opener: _FakeOpener, manual_defer: _ManualDefer):
    def _make(**overrides: Any) -> SweepController:
        return SweepController(
            store=store,
            opener=fake_opener,
            settings=SweepSettings(**overrides),
            defer=manual_defer,
            run_monitor=False,
        )

    return _make
