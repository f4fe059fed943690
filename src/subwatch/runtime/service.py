"""Shared runtime ownership facade for daemon/app entrypoints."""

from __future__ import annotations

from threading import RLock
from typing import Any

from src.subwatch.core.sweep_controller import SweepController, get_sweep_controller


class RuntimeService:
    """Single authority for runtime lifecycle + app-facing operations."""

    def __init__(self, controller: SweepController | None = None) -> None:
        self._lock = RLock()
        self._controller = controller
        self._started = False
        self._last_start_source: str | None = None
        self._last_stop_source: str | None = None

    @property
    def controller(self) -> SweepController:
        with self._lock:
            if self._controller is None:
                self._controller = get_sweep_controller()
            return self._controller

    def start(self, *, start_sweep_if_enabled: bool = True, source: str = "runtime") -> dict[str, Any]:
        with self._lock:
            already_started = self._started
            self._started = True
            self._last_start_source = source

        sweep_started = False
        controller = self.controller
        if start_sweep_if_enabled and controller.settings.enabled and not controller.is_running():
            out = self.sweep_start(source=source)
            sweep_started = bool(out.get("ok")) and bool(out.get("running"))

        return {
            "ok": True,
            "source": "runtime_service",
            "already_started": already_started,
            "started": True,
            "start_source": source,
            "sweep_started": sweep_started,
        }

    def stop(self, *, stop_sweep: bool = True, source: str = "runtime") -> dict[str, Any]:
        sweep_stopped = False
        if stop_sweep:
            out = self.controller.shutdown()
            sweep_stopped = bool(out.get("ok")) and not out.get("already_stopped", False)

        with self._lock:
            self._started = False
            self._last_stop_source = source

        return {
            "ok": True,
            "source": "runtime_service",
            "stopped": True,
            "stop_source": source,
            "sweep_stopped": sweep_stopped,
        }

    def health(self) -> dict[str, Any]:
        status = self.sweep_status()
        return {
            "ok": True,
            "source": "runtime_service",
            "runtime": {
                "started": self._started,
                "last_start_source": self._last_start_source,
                "last_stop_source": self._last_stop_source,
            },
            "sweep": {
                "running": bool(status.get("running")),
                "monitor_state": status.get("monitor_state"),
                "progress": status.get("progress"),
                "completed_sweeps": status.get("completed_sweeps"),
            },
        }

    def sweep_status(self) -> dict[str, Any]:
        return self.controller.status()

    def sweep_start(self, *, force: bool = False, source: str = "api") -> dict[str, Any]:
        return self.controller.start(force=force, source=source)

    def sweep_stop(self, *, source: str = "api") -> dict[str, Any]:
        return self.controller.stop(source=source)

    def complete_job(
        self,
        *,
        handle_id: str,
        matched: bool = False,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.controller.report_completion(handle_id, matched=matched, payload=payload)

    def job_closed(self, *, handle_id: str) -> dict[str, Any]:
        return self.controller.report_closed(handle_id)

    def list_candidates(self) -> dict[str, Any]:
        entries = self.controller.store.load_candidates()
        return {"ok": True, "candidates": entries, "count": len(entries)}

    def replace_candidates(self, *, entries: list[dict[str, Any]]) -> dict[str, Any]:
        return self.controller.store.replace_candidates(entries)

    def list_matches(self) -> dict[str, Any]:
        entries = self.controller.store.load_matched()
        return {"ok": True, "matches": entries, "count": len(entries)}

    def clear_matches(self) -> dict[str, Any]:
        return self.controller.clear_matches()

    def get_settings(self) -> dict[str, Any]:
        status = self.controller.status()
        return {"ok": True, "settings": status.get("settings", {})}

    def update_settings(
        self,
        *,
        filter_expression: str | None = None,
        include_failing: bool | None = None,
        concurrency_limit: int | None = None,
    ) -> dict[str, Any]:
        out = self.controller.store.update_settings(
            filter_expression=filter_expression,
            include_failing=include_failing,
            concurrency_limit=concurrency_limit,
        )
        if not out.get("ok"):
            return out
        return self.get_settings()

    def events(self, *, limit: int = 50) -> dict[str, Any]:
        events = self.controller.recent_events(limit=limit)
        return {"ok": True, "events": events, "count": len(events)}


_RUNTIME_SERVICE: RuntimeService | None = None


def get_runtime_service() -> RuntimeService:
    global _RUNTIME_SERVICE
    if _RUNTIME_SERVICE is None:
        _RUNTIME_SERVICE = RuntimeService()
    return _RUNTIME_SERVICE
