"""Open and tear down one execution context per inspection job."""

from __future__ import annotations

from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from datetime import UTC, datetime
from time import monotonic
from typing import Any, Literal
from uuid import uuid4

from .candidates import Candidate, with_query_params
from .execution_context import ExecutionContextOpener
from .log_config import get_logger

JobOutcomeStatus = Literal["done", "matched", "timeout", "context_closed"]

DEFAULT_MARKER_PARAM = "looper"
DEFAULT_JOB_PARAM = "subwatch_job"

logger = get_logger("jobs")


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


class JobOpenError(RuntimeError):
    """Raised when an execution context could not be opened for a candidate."""


@dataclass(slots=True, frozen=True)
class JobOutcome:
    status: JobOutcomeStatus
    payload: dict[str, Any] | None = None
    reported_at: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "payload": self.payload, "reported_at": self.reported_at}


@dataclass(slots=True, eq=False)
class JobHandle:
    """Runtime state for one opened job; `future` resolves with its JobOutcome."""

    handle_id: str
    candidate: Candidate
    context_id: str
    opened_url: str
    opened_at: str = field(default_factory=_utc_now_iso)
    opened_mono: float = field(default_factory=monotonic)
    future: Future = field(default_factory=Future)

    def resolve(self, outcome: JobOutcome) -> bool:
        """Set the outcome once; later calls return False."""
        try:
            self.future.set_result(outcome)
        except InvalidStateError:
            return False
        return True

    def outcome(self) -> JobOutcome | None:
        if not self.future.done() or self.future.cancelled():
            return None
        return self.future.result()

    def age_sec(self, now_mono: float | None = None) -> float:
        return max(0.0, (now_mono if now_mono is not None else monotonic()) - self.opened_mono)

    def to_dict(self) -> dict[str, Any]:
        outcome = self.outcome()
        return {
            "handle_id": self.handle_id,
            "context_id": self.context_id,
            "opened_url": self.opened_url,
            "opened_at": self.opened_at,
            "candidate": self.candidate.to_dict(),
            "done": self.future.done(),
            "outcome": outcome.to_dict() if outcome is not None else None,
        }


class JobLifecycleManager:
    def __init__(
        self,
        opener: ExecutionContextOpener,
        *,
        marker_param: str = DEFAULT_MARKER_PARAM,
        job_param: str = DEFAULT_JOB_PARAM,
    ) -> None:
        self._opener = opener
        self._marker_param = marker_param.strip() or DEFAULT_MARKER_PARAM
        self._job_param = job_param.strip() or DEFAULT_JOB_PARAM

    @property
    def opener(self) -> ExecutionContextOpener:
        return self._opener

    def build_job_url(self, candidate: Candidate, handle_id: str) -> str:
        if not candidate.target_url:
            raise JobOpenError(f"candidate {candidate.label} has no target url")
        return with_query_params(
            candidate.target_url,
            {self._marker_param: "true", self._job_param: handle_id},
        )

    def open_job(self, candidate: Candidate) -> JobHandle:
        handle_id = f"job_{uuid4().hex[:12]}"
        url = self.build_job_url(candidate, handle_id)
        try:
            context_id = self._opener.open(url)
        except Exception as exc:
            raise JobOpenError(f"failed to open context for {candidate.label}: {exc}") from exc
        logger.debug("Opened %s for %s at %s", context_id, candidate.label, url)
        return JobHandle(handle_id=handle_id, candidate=candidate, context_id=context_id, opened_url=url)

    def close_context(self, handle: JobHandle) -> None:
        """Close the handle's context; already-closed contexts and close errors are tolerated."""
        try:
            self._opener.close(handle.context_id)
        except Exception:
            logger.debug("Ignoring close error for %s", handle.context_id, exc_info=True)

    def context_closed(self, handle: JobHandle) -> bool:
        try:
            return bool(self._opener.is_closed(handle.context_id))
        except Exception:
            logger.debug("Closed-state check failed for %s", handle.context_id, exc_info=True)
            return False
