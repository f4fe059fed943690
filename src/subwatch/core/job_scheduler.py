"""Cursor-driven admission of candidates into a bounded set of in-flight jobs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from functools import partial
from threading import RLock, Timer
from time import monotonic
from typing import Any, Callable
from uuid import uuid4

from .candidates import Candidate, is_actionable_url
from .dedup_cache import DedupCache
from .filter_engine import FilterExpression
from .job_lifecycle import JobHandle, JobLifecycleManager, JobOpenError, JobOutcome
from .log_config import get_logger

Deferrer = Callable[[float, Callable[[], Any]], Any]
ProgressHook = Callable[["SweepState", int, int], None]
SweepCompleteHook = Callable[["SweepState"], None]
EventHook = Callable[[str, dict[str, Any]], None]

DEFAULT_INVALID_SKIP_DELAY_SEC = 0.05
DEFAULT_OPEN_FAILURE_DELAY_SEC = 0.1

logger = get_logger("scheduler")


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def timer_defer(delay_sec: float, fn: Callable[[], Any]) -> Timer:
    """Run `fn` on a daemon timer thread after `delay_sec`."""
    timer = Timer(max(0.0, float(delay_sec)), fn)
    timer.daemon = True
    timer.start()
    return timer


@dataclass(slots=True)
class SweepStats:
    opened: int = 0
    skipped_duplicate: int = 0
    skipped_invalid: int = 0
    open_failures: int = 0
    completed: int = 0
    matched: int = 0
    timed_out: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True, eq=False)
class SweepState:
    """State of one sweep; replaced, never reset, when a new sweep begins."""

    sweep_id: str
    candidates: list[Candidate]
    concurrency_limit: int
    dedup: DedupCache
    filter_expression: FilterExpression = field(default_factory=lambda: FilterExpression(kind="all", raw="all"))
    started_at: str = field(default_factory=_utc_now_iso)
    cursor: int = 0
    is_running: bool = True
    pending_opens: int = 0
    completion_signalled: bool = False
    active_jobs: dict[str, JobHandle] = field(default_factory=dict)
    stats: SweepStats = field(default_factory=SweepStats)

    @classmethod
    def create(
        cls,
        *,
        candidates: list[Candidate],
        concurrency_limit: int,
        dedup: DedupCache | None = None,
        filter_expression: FilterExpression | None = None,
    ) -> "SweepState":
        if concurrency_limit <= 0:
            raise ValueError("concurrency_limit must be >= 1")
        return cls(
            sweep_id=f"sweep_{uuid4().hex[:10]}",
            candidates=list(candidates),
            concurrency_limit=int(concurrency_limit),
            dedup=dedup if dedup is not None else DedupCache(),
            filter_expression=filter_expression or FilterExpression(kind="all", raw="all"),
        )

    @property
    def total(self) -> int:
        return len(self.candidates)

    @property
    def exhausted(self) -> bool:
        return self.cursor >= len(self.candidates)

    @property
    def in_flight(self) -> int:
        return len(self.active_jobs) + self.pending_opens

    def to_dict(self) -> dict[str, Any]:
        return {
            "sweep_id": self.sweep_id,
            "started_at": self.started_at,
            "is_running": self.is_running,
            "cursor": self.cursor,
            "total": self.total,
            "concurrency_limit": self.concurrency_limit,
            "active_count": len(self.active_jobs),
            "pending_opens": self.pending_opens,
            "filter": self.filter_expression.to_dict(),
            "dedup_size": len(self.dedup),
            "stats": self.stats.to_dict(),
        }


class JobScheduler:
    """Keep `min(concurrency_limit, remaining)` jobs in flight for the installed sweep.

    Every transition runs its bookkeeping under one re-entrant lock; opening a
    context and the progress/event hooks run outside it.
    """

    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        *,
        defer: Deferrer | None = None,
        invalid_skip_delay_sec: float = DEFAULT_INVALID_SKIP_DELAY_SEC,
        open_failure_delay_sec: float = DEFAULT_OPEN_FAILURE_DELAY_SEC,
        on_progress: ProgressHook | None = None,
        on_sweep_complete: SweepCompleteHook | None = None,
        on_event: EventHook | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._defer = defer or timer_defer
        self._invalid_skip_delay_sec = max(0.0, float(invalid_skip_delay_sec))
        self._open_failure_delay_sec = max(0.0, float(open_failure_delay_sec))
        self._on_progress = on_progress
        self._on_sweep_complete = on_sweep_complete
        self._on_event = on_event
        self._lock = RLock()
        self._state: SweepState | None = None

    @property
    def lock(self) -> RLock:
        return self._lock

    @property
    def state(self) -> SweepState | None:
        with self._lock:
            return self._state

    def install(self, state: SweepState) -> SweepState | None:
        """Make `state` the current sweep and return the one it replaced."""
        with self._lock:
            previous = self._state
            self._state = state
            if previous is not None and previous is not state:
                previous.is_running = False
            return previous

    def detach(self) -> SweepState | None:
        with self._lock:
            state = self._state
            self._state = None
            if state is not None:
                state.is_running = False
            return state

    @staticmethod
    def evict_all(state: SweepState) -> list[JobHandle]:
        handles = list(state.active_jobs.values())
        state.active_jobs.clear()
        return handles

    def get_active(self, handle_id: str) -> JobHandle | None:
        with self._lock:
            state = self._state
            return state.active_jobs.get(handle_id) if state is not None else None

    def active_handles(self) -> list[JobHandle]:
        with self._lock:
            state = self._state
            return list(state.active_jobs.values()) if state is not None else []

    def prime(self) -> list[dict[str, Any]]:
        """Admit once per concurrency slot; called at sweep start."""
        with self._lock:
            state = self._state
            if state is None or not state.is_running:
                return []
            sweep_id = state.sweep_id
            slots = state.concurrency_limit
        return [self._admit(sweep_id) for _ in range(slots)]

    def admit_next(self, finished_handle_id: str | None = None) -> dict[str, Any]:
        """Fill one freed slot; `finished_handle_id` evicts a context torn down elsewhere."""
        return self._admit(None, finished_handle_id)

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event_type, payload)
        except Exception:
            logger.exception("Event hook failed for %s", event_type)

    def _report_progress(self, state: SweepState, current: int, total: int) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(state, current, total)
        except Exception:
            logger.warning("Could not persist progress %d/%d", current, total, exc_info=True)

    def _schedule_admit(self, sweep_id: str, delay_sec: float) -> None:
        self._defer(delay_sec, partial(self._admit, sweep_id))

    def _admit(self, sweep_id: str | None, finished_handle_id: str | None = None) -> dict[str, Any]:
        finished: JobHandle | None = None
        with self._lock:
            state = self._state
            if state is None or not state.is_running:
                return {"ok": True, "action": "idle"}
            if sweep_id is not None and state.sweep_id != sweep_id:
                return {"ok": True, "action": "stale_sweep"}
            if finished_handle_id is not None:
                finished = state.active_jobs.pop(finished_handle_id, None)
                if finished is None:
                    return {"ok": True, "action": "stale_handle", "handle_id": finished_handle_id}
                state.stats.completed += 1

            candidate: Candidate | None = None
            if state.exhausted:
                if state.in_flight > 0 or state.completion_signalled:
                    decision = "draining"
                else:
                    state.completion_signalled = True
                    decision = "complete"
            elif state.in_flight >= state.concurrency_limit:
                decision = "at_capacity"
            else:
                candidate = state.candidates[state.cursor]
                # Claim the index before anything can suspend.
                state.cursor += 1
                if state.dedup.contains(candidate.dedup_key):
                    state.stats.skipped_duplicate += 1
                    decision = "skip_duplicate"
                elif not is_actionable_url(candidate.target_url):
                    state.stats.skipped_invalid += 1
                    decision = "skip_invalid"
                else:
                    state.pending_opens += 1
                    decision = "open"
            current_sweep = state.sweep_id
            cursor, total = state.cursor, state.total

        if finished is not None:
            self._lifecycle.close_context(finished)
            finished.resolve(JobOutcome(status="context_closed"))
            self._emit("job_closed", {"handle_id": finished.handle_id, "sweep_id": current_sweep})

        if decision == "draining":
            return {"ok": True, "action": "draining", "cursor": cursor, "total": total}
        if decision == "at_capacity":
            return {"ok": True, "action": "at_capacity", "cursor": cursor, "total": total}
        if decision == "complete":
            logger.info("Sweep %s finished %d candidates.", current_sweep, total)
            self._emit("sweep_completed", {"sweep_id": current_sweep, "total": total, "stats": state.stats.to_dict()})
            if self._on_sweep_complete is not None:
                self._on_sweep_complete(state)
            return {"ok": True, "action": "sweep_complete", "sweep_id": current_sweep}

        assert candidate is not None
        self._report_progress(state, cursor, total)

        if decision == "skip_duplicate":
            logger.info("Skipping already matched target %s", candidate.target_url)
            self._schedule_admit(current_sweep, 0.0)
            return {"ok": True, "action": "skipped_duplicate", "index": cursor - 1}

        if decision == "skip_invalid":
            logger.warning("Skipping %s: invalid target url %r", candidate.label, candidate.target_url)
            self._emit("candidate_skipped", {"sweep_id": current_sweep, "index": cursor - 1, "reason": "invalid_url"})
            self._schedule_admit(current_sweep, self._invalid_skip_delay_sec)
            return {"ok": True, "action": "skipped_invalid", "index": cursor - 1}

        return self._open(state, candidate, index=cursor - 1)

    def _open(self, state: SweepState, candidate: Candidate, *, index: int) -> dict[str, Any]:
        try:
            handle = self._lifecycle.open_job(candidate)
        except JobOpenError as exc:
            with self._lock:
                state.pending_opens -= 1
                state.stats.open_failures += 1
            logger.warning("%s Continuing with the next candidate.", exc)
            self._emit("job_open_failed", {"sweep_id": state.sweep_id, "index": index, "error": str(exc)})
            self._schedule_admit(state.sweep_id, self._open_failure_delay_sec)
            return {"ok": True, "action": "open_failed", "index": index, "error": str(exc)}

        with self._lock:
            state.pending_opens -= 1
            orphaned = not state.is_running or self._state is not state
            if not orphaned:
                state.active_jobs[handle.handle_id] = handle
                state.stats.opened += 1

        if orphaned:
            # Stopped or replaced while the context was opening.
            self._lifecycle.close_context(handle)
            handle.future.cancel()
            return {"ok": True, "action": "discarded", "index": index}

        logger.info("Opened job %s for index #%d: %s", handle.handle_id, index, handle.opened_url)
        self._emit("job_opened", {"sweep_id": state.sweep_id, "index": index, "handle_id": handle.handle_id})
        return {"ok": True, "action": "opened", "index": index, "handle_id": handle.handle_id}

    def complete_job(self, handle_id: str, outcome: JobOutcome | None = None) -> dict[str, Any]:
        """Retire an active job, close its context, and refill the freed slot."""
        with self._lock:
            state = self._state
            handle = state.active_jobs.pop(handle_id, None) if state is not None else None
            if state is None or handle is None:
                return {"ok": False, "error": "job not found", "handle_id": handle_id}
            resolved = handle.outcome() or outcome or JobOutcome(status="done")
            state.stats.completed += 1
            if resolved.status == "matched":
                state.stats.matched += 1
            elif resolved.status == "timeout":
                state.stats.timed_out += 1
            sweep_id = state.sweep_id

        self._lifecycle.close_context(handle)
        handle.resolve(resolved)
        self._emit(
            "job_completed",
            {"sweep_id": sweep_id, "handle_id": handle_id, "status": resolved.status},
        )
        admit = self._admit(sweep_id)
        return {"ok": True, "handle_id": handle_id, "outcome": resolved.to_dict(), "admit": admit}

    def drain_completed(self) -> int:
        """Complete every active job whose future has already resolved."""
        done = [
            handle.handle_id
            for handle in self.active_handles()
            if handle.future.done() and not handle.future.cancelled()
        ]
        completed = 0
        for handle_id in done:
            if self.complete_job(handle_id).get("ok"):
                completed += 1
        return completed

    def expired_handles(self, timeout_sec: float, *, now_mono: float | None = None) -> list[JobHandle]:
        if timeout_sec <= 0:
            return []
        now = now_mono if now_mono is not None else monotonic()
        return [handle for handle in self.active_handles() if handle.age_sec(now) >= timeout_sec]
