"""Sweep controller: start/stop, auto-restart and completion intake for monitoring sweeps."""

from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from threading import Event, RLock, Thread, current_thread
from typing import Any
from uuid import uuid4

from .candidates import Candidate, build_candidates
from .config_loader import get_sweep_config
from .dedup_cache import DedupCache
from .execution_context import ExecutionContextOpener, PlaywrightContextOpener
from .filter_engine import filter_candidates, parse_filter_expression
from .job_lifecycle import JobLifecycleManager, JobOutcome
from .job_scheduler import Deferrer, JobScheduler, SweepState, timer_defer
from .log_config import get_logger
from .state_store import DEFAULT_DB_PATH, MONITOR_OFF, MONITOR_ON, StateStore

logger = get_logger("sweep")


@dataclass(slots=True)
class SweepSettings:
    enabled: bool = False
    state_db_path: str = DEFAULT_DB_PATH
    default_concurrency_limit: int = 5
    default_filter: str = "all"
    marker_param: str = "looper"
    job_param: str = "subwatch_job"
    invalid_skip_delay_sec: float = 0.05
    open_failure_delay_sec: float = 0.1
    restart_delay_sec: float = 2.0
    idle_restart_delay_sec: float = 5.0
    job_timeout_sec: float = 300.0
    poll_interval_sec: float = 1.0
    event_buffer_size: int = 500
    url_host_aliases: dict[str, str] = field(default_factory=dict)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def load_sweep_settings() -> SweepSettings:
    try:
        sweep = get_sweep_config()
    except Exception:
        sweep = {}

    enabled = bool(sweep.get("enabled", False))
    db_path = sweep.get("state_db_path", DEFAULT_DB_PATH)
    conc = sweep.get("default_concurrency_limit", 5)
    default_filter = sweep.get("default_filter", "all")
    marker = sweep.get("marker_param", "looper")
    job_param = sweep.get("job_param", "subwatch_job")
    invalid_delay = sweep.get("invalid_skip_delay_sec", 0.05)
    failure_delay = sweep.get("open_failure_delay_sec", 0.1)
    restart_delay = sweep.get("restart_delay_sec", 2.0)
    idle_restart_delay = sweep.get("idle_restart_delay_sec", 5.0)
    timeout = sweep.get("job_timeout_sec", 300)
    poll = sweep.get("poll_interval_sec", 1.0)
    buffer_size = sweep.get("event_buffer_size", 500)
    aliases = sweep.get("url_host_aliases", {})

    return SweepSettings(
        enabled=enabled,
        state_db_path=str(db_path) if isinstance(db_path, str) and db_path.strip() else DEFAULT_DB_PATH,
        default_concurrency_limit=int(conc) if isinstance(conc, int) and not isinstance(conc, bool) and conc > 0 else 5,
        default_filter=str(default_filter) if isinstance(default_filter, str) else "all",
        marker_param=str(marker) if isinstance(marker, str) and marker.strip() else "looper",
        job_param=str(job_param) if isinstance(job_param, str) and job_param.strip() else "subwatch_job",
        invalid_skip_delay_sec=float(invalid_delay) if _is_number(invalid_delay) and invalid_delay >= 0 else 0.05,
        open_failure_delay_sec=float(failure_delay) if _is_number(failure_delay) and failure_delay >= 0 else 0.1,
        restart_delay_sec=float(restart_delay) if _is_number(restart_delay) and restart_delay >= 0 else 2.0,
        idle_restart_delay_sec=(
            float(idle_restart_delay) if _is_number(idle_restart_delay) and idle_restart_delay >= 0 else 5.0
        ),
        job_timeout_sec=float(timeout) if _is_number(timeout) and timeout >= 0 else 300.0,
        poll_interval_sec=float(poll) if _is_number(poll) and poll > 0 else 1.0,
        event_buffer_size=int(buffer_size) if isinstance(buffer_size, int) and buffer_size > 0 else 500,
        url_host_aliases={
            str(key): str(val) for key, val in aliases.items() if isinstance(key, str) and isinstance(val, str)
        }
        if isinstance(aliases, dict)
        else {},
    )


class SweepController:
    """IDLE/RUNNING state machine around one JobScheduler."""

    def __init__(
        self,
        *,
        store: StateStore | None = None,
        opener: ExecutionContextOpener | None = None,
        settings: SweepSettings | None = None,
        defer: Deferrer | None = None,
        run_monitor: bool = True,
    ) -> None:
        self._settings = settings or load_sweep_settings()
        self._store = store or StateStore(db_path=self._settings.state_db_path)
        self._opener = opener or PlaywrightContextOpener()
        self._defer = defer or timer_defer
        self._lifecycle = JobLifecycleManager(
            self._opener,
            marker_param=self._settings.marker_param,
            job_param=self._settings.job_param,
        )
        self._scheduler = JobScheduler(
            self._lifecycle,
            defer=self._defer,
            invalid_skip_delay_sec=self._settings.invalid_skip_delay_sec,
            open_failure_delay_sec=self._settings.open_failure_delay_sec,
            on_progress=self._persist_progress,
            on_sweep_complete=self._on_sweep_complete,
            on_event=self._on_scheduler_event,
        )
        self._lifecycle_lock = RLock()
        self._events_lock = RLock()
        self._events: list[dict[str, Any]] = []
        self._run_monitor = run_monitor
        self._stop_event = Event()
        self._loop_thread: Thread | None = None
        self._completed_sweeps = 0
        self._last_sweep: dict[str, Any] | None = None

    @staticmethod
    def _utc_now_iso() -> str:
        return datetime.now(tz=UTC).isoformat()

    @property
    def settings(self) -> SweepSettings:
        return self._settings

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def scheduler(self) -> JobScheduler:
        return self._scheduler

    def is_running(self) -> bool:
        state = self._scheduler.state
        return state is not None and state.is_running

    def _record_event(self, *, event_type: str, payload: dict[str, Any] | None = None) -> None:
        event = {
            "event_id": f"sevt_{uuid4().hex}",
            "type": event_type,
            "timestamp": self._utc_now_iso(),
            "payload": payload or {},
        }
        limit = self._settings.event_buffer_size
        with self._events_lock:
            self._events.append(event)
            if len(self._events) > limit:
                self._events = self._events[-limit:]

    def _on_scheduler_event(self, event_type: str, payload: dict[str, Any]) -> None:
        self._record_event(event_type=event_type, payload=payload)

    def recent_events(self, *, limit: int = 20) -> list[dict[str, Any]]:
        safe_limit = max(1, min(self._settings.event_buffer_size, int(limit)))
        with self._events_lock:
            return [dict(event) for event in self._events[-safe_limit:]]

    def _persist_progress(self, state: SweepState, current: int, total: int) -> None:
        self._store.save_progress(current=current, total=total)

    # Lifecycle

    def start(self, *, force: bool = False, source: str = "api") -> dict[str, Any]:
        return self._start(force=force, source=source)

    def _start(self, *, force: bool, source: str, replaces: str | None = None) -> dict[str, Any]:
        result = self._start_locked(force=force, source=source, replaces=replaces)
        if result.get("empty") and self._scheduler.state is None:
            # Joined outside the lifecycle lock; the monitor may be waiting on it.
            self._stop_monitor()
        return result

    def _start_locked(self, *, force: bool, source: str, replaces: str | None) -> dict[str, Any]:
        with self._lifecycle_lock:
            current = self._scheduler.state
            if replaces is not None and (current is None or current.sweep_id != replaces or not current.is_running):
                return {"ok": True, "action": "stale_restart", "sweep_id": replaces}
            if current is not None and current.is_running and not force:
                return {"ok": True, "running": True, "already_running": True, "sweep_id": current.sweep_id}

            if current is not None:
                self._teardown(current)

            settings = self._settings
            limit = self._store.get_concurrency_limit(settings.default_concurrency_limit)
            raw_filter = self._store.get_filter_expression(settings.default_filter)
            include_failing = self._store.get_include_failing(False)
            dedup = DedupCache.from_matched(self._store.load_matched())
            candidates = build_candidates(self._store.load_candidates(), host_aliases=settings.url_host_aliases)
            expression = parse_filter_expression(raw_filter)
            filtered = filter_candidates(candidates, expression, include_failing=include_failing)

            if not filtered:
                self._scheduler.detach()
                self._store.clear_progress()
                self._store.set_monitor_state(MONITOR_OFF)
                logger.info("No candidates to monitor (filter=%s, loaded=%d).", expression.raw, len(candidates))
                self._record_event(
                    event_type="sweep_idle",
                    payload={"source": source, "filter": expression.to_dict(), "loaded": len(candidates)},
                )
                return {
                    "ok": True,
                    "running": False,
                    "empty": True,
                    "filter": expression.to_dict(),
                    "loaded": len(candidates),
                }

            state = SweepState.create(
                candidates=filtered,
                concurrency_limit=limit,
                dedup=dedup,
                filter_expression=expression,
            )
            self._store.save_progress(current=0, total=state.total)
            self._store.set_monitor_state(MONITOR_ON)
            self._scheduler.install(state)
            logger.info(
                "Sweep %s started by %s: %d of %d candidates, concurrency %d.",
                state.sweep_id,
                source,
                state.total,
                len(candidates),
                limit,
            )
            self._record_event(
                event_type="sweep_started",
                payload={
                    "sweep_id": state.sweep_id,
                    "source": source,
                    "total": state.total,
                    "loaded": len(candidates),
                    "concurrency_limit": limit,
                    "filter": expression.to_dict(),
                    "include_failing": include_failing,
                },
            )

        self._ensure_monitor()
        admissions = self._scheduler.prime()
        return {
            "ok": True,
            "running": True,
            "already_running": False,
            "sweep_id": state.sweep_id,
            "total": state.total,
            "loaded": len(candidates),
            "concurrency_limit": limit,
            "filter": expression.to_dict(),
            "opened": sum(1 for item in admissions if item.get("action") == "opened"),
        }

    def _teardown(self, state: SweepState) -> int:
        """Detach `state`, cancel its futures and close its contexts."""
        with self._scheduler.lock:
            if self._scheduler.state is state:
                self._scheduler.detach()
            state.is_running = False
            handles = JobScheduler.evict_all(state)
        for handle in handles:
            handle.future.cancel()
            self._lifecycle.close_context(handle)
        return len(handles)

    def stop(self, *, source: str = "api") -> dict[str, Any]:
        with self._lifecycle_lock:
            state = self._scheduler.state
            if state is None:
                return {"ok": True, "running": False, "already_stopped": True}
            self._store.clear_progress()
            closed = self._teardown(state)
            self._store.set_monitor_state(MONITOR_OFF)
            logger.info("Sweep %s stopped by %s; closed %d active jobs.", state.sweep_id, source, closed)
            self._record_event(
                event_type="sweep_stopped",
                payload={"sweep_id": state.sweep_id, "source": source, "closed": closed, "cursor": state.cursor},
            )
        self._stop_monitor()
        return {"ok": True, "running": False, "already_stopped": False, "sweep_id": state.sweep_id, "closed": closed}

    def shutdown(self) -> dict[str, Any]:
        result = self.stop(source="shutdown")
        try:
            self._opener.shutdown()
        except Exception:
            logger.warning("Execution context shutdown failed", exc_info=True)
        return result

    def _on_sweep_complete(self, state: SweepState) -> None:
        with self._lifecycle_lock:
            self._completed_sweeps += 1
            self._last_sweep = state.to_dict()
        delay = self._settings.restart_delay_sec
        if state.stats.opened == 0:
            # Nothing left to inspect; back off instead of spinning through empty sweeps.
            delay = max(delay, self._settings.idle_restart_delay_sec)
        self._defer(delay, partial(self._restart, state.sweep_id))

    def _restart(self, sweep_id: str) -> dict[str, Any]:
        return self._start(force=True, source="auto_restart", replaces=sweep_id)

    # Job intake

    def admit_next(self, finished_handle_id: str | None = None) -> dict[str, Any]:
        return self._scheduler.admit_next(finished_handle_id)

    def report_closed(self, handle_id: str) -> dict[str, Any]:
        """Context torn down outside the scheduler; recycle its slot."""
        result = self._scheduler.admit_next(handle_id)
        if result.get("action") == "stale_handle":
            return {"ok": False, "error": "job not found", "handle_id": handle_id}
        return {"ok": True, "handle_id": handle_id, "admit": result}

    @staticmethod
    def _matched_record(candidate: Candidate, payload: dict[str, Any] | None, *, matched_at: str) -> dict[str, Any]:
        record = dict(candidate.entry)
        record["targetUrl"] = candidate.target_url
        record["url"] = candidate.target_url
        if candidate.identifier is not None:
            record["identifier"] = candidate.identifier
        if candidate.name is not None:
            record["name"] = candidate.name
        record["matched_at"] = matched_at
        record["submission"] = dict(payload) if isinstance(payload, dict) else {}
        return record

    def report_completion(
        self,
        handle_id: str,
        *,
        matched: bool = False,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        handle = self._scheduler.get_active(handle_id)
        state = self._scheduler.state
        if handle is None or state is None:
            logger.debug("Ignoring completion for unknown job %s", handle_id)
            return {"ok": False, "error": "job not found", "handle_id": handle_id}

        stored: dict[str, Any] | None = None
        if matched:
            candidate = handle.candidate
            event_payload = {"sweep_id": state.sweep_id, "handle_id": handle_id, "target_url": candidate.target_url}
            try:
                stored = self._store.record_match(
                    self._matched_record(candidate, payload, matched_at=self._utc_now_iso())
                )
            except Exception as exc:
                # The slot is still released below; the target is re-inspected next sweep.
                logger.exception("Failed to record match for %s", candidate.label)
                stored = {"ok": False, "error": str(exc)}
                self._record_event(event_type="match_record_failed", payload={**event_payload, "error": str(exc)})
            else:
                state.dedup.add(candidate.dedup_key)
                logger.info("Submission found for %s", candidate.label)
                self._record_event(event_type="match_recorded", payload=event_payload)

        outcome = JobOutcome(status="matched" if matched else "done", payload=payload)
        result = self._scheduler.complete_job(handle_id, outcome)
        if stored is not None:
            result["match"] = stored
        return result

    def clear_matches(self) -> dict[str, Any]:
        removed = self._store.clear_matched()
        state = self._scheduler.state
        cache_cleared = state.dedup.clear() if state is not None else 0
        logger.info("Cleared %d matched records.", removed)
        self._record_event(event_type="matches_cleared", payload={"removed": removed, "cache_cleared": cache_cleared})
        return {"ok": True, "removed": removed, "cache_cleared": cache_cleared}

    # Monitor

    def tick(self, *, now_mono: float | None = None) -> dict[str, Any]:
        state = self._scheduler.state
        if state is None or not state.is_running:
            return {"ok": True, "running": False, "completed": 0, "closed": 0, "timed_out": 0}

        completed = self._scheduler.drain_completed()

        closed = 0
        for handle in self._scheduler.active_handles():
            if not self._lifecycle.context_closed(handle):
                continue
            if self._scheduler.admit_next(handle.handle_id).get("action") != "stale_handle":
                closed += 1

        timed_out = 0
        timeout_sec = self._settings.job_timeout_sec
        for handle in self._scheduler.expired_handles(timeout_sec, now_mono=now_mono):
            logger.warning("Job %s for %s ran past %.0fs; reclaiming its slot.", handle.handle_id, handle.candidate.label, timeout_sec)
            if self._scheduler.complete_job(handle.handle_id, JobOutcome(status="timeout")).get("ok"):
                timed_out += 1

        return {"ok": True, "running": True, "completed": completed, "closed": closed, "timed_out": timed_out}

    def _ensure_monitor(self) -> None:
        if not self._run_monitor:
            return
        with self._lifecycle_lock:
            if self._loop_thread is not None and self._loop_thread.is_alive():
                return
            self._stop_event.clear()
            self._loop_thread = Thread(target=self._run_loop, daemon=True, name="subwatch-sweep-monitor")
            self._loop_thread.start()

    def _stop_monitor(self) -> None:
        with self._lifecycle_lock:
            thread = self._loop_thread
            self._stop_event.set()
        if thread is not None and thread.is_alive() and thread is not current_thread():
            thread.join(timeout=2.0)
        with self._lifecycle_lock:
            if self._loop_thread is thread:
                self._loop_thread = None

    def _run_loop(self) -> None:
        poll = max(0.05, self._settings.poll_interval_sec)
        while not self._stop_event.is_set():
            futures = [handle.future for handle in self._scheduler.active_handles()]
            if futures:
                wait(futures, timeout=poll, return_when=FIRST_COMPLETED)
            else:
                self._stop_event.wait(timeout=poll)
            if self._stop_event.is_set():
                break
            try:
                self.tick()
            except Exception:
                logger.exception("Sweep monitor tick failed")

    # Reporting

    def status(self) -> dict[str, Any]:
        with self._scheduler.lock:
            state = self._scheduler.state
            sweep = state.to_dict() if state is not None else None
            active = [handle.to_dict() for handle in state.active_jobs.values()] if state is not None else []
        with self._lifecycle_lock:
            completed_sweeps = self._completed_sweeps
            last_sweep = self._last_sweep
            monitor_alive = self._loop_thread is not None and self._loop_thread.is_alive()
        settings = self._settings
        return {
            "ok": True,
            "running": bool(state is not None and state.is_running),
            "sweep": sweep,
            "active_jobs": active,
            "completed_sweeps": completed_sweeps,
            "last_sweep": last_sweep,
            "progress": self._store.load_progress(),
            "monitor_state": self._store.get_monitor_state(),
            "matched_count": len(self._store.load_matched()),
            "monitor_thread_alive": monitor_alive,
            "settings": {
                "concurrency_limit": self._store.get_concurrency_limit(settings.default_concurrency_limit),
                "filter_expression": self._store.get_filter_expression(settings.default_filter),
                "include_failing": self._store.get_include_failing(False),
                "job_timeout_sec": settings.job_timeout_sec,
                "restart_delay_sec": settings.restart_delay_sec,
                "idle_restart_delay_sec": settings.idle_restart_delay_sec,
            },
            "recent_events": self.recent_events(limit=20),
        }


_SWEEP_CONTROLLER: SweepController | None = None


def get_sweep_controller() -> SweepController:
    global _SWEEP_CONTROLLER
    if _SWEEP_CONTROLLER is None:
        _SWEEP_CONTROLLER = SweepController()
    return _SWEEP_CONTROLLER
