from __future__ import annotations

from time import monotonic

import pytest

from src.subwatch.core.candidates import build_candidates
from src.subwatch.core.dedup_cache import DedupCache
from src.subwatch.core.job_lifecycle import JobLifecycleManager, JobOutcome
from src.subwatch.core.job_scheduler import JobScheduler, SweepState


def _entries(count: int, *, prefix: str = "s") -> list[dict]:
    return [{"id": f"{prefix}{idx}", "url": f"https://school.example/grades/{prefix}{idx}"} for idx in range(count)]


def _scheduler(fake_opener, manual_defer, **kwargs):
    progress: list[tuple[int, int]] = []
    completed: list[SweepState] = []
    scheduler = JobScheduler(
        JobLifecycleManager(fake_opener),
        defer=manual_defer,
        on_progress=lambda _state, current, total: progress.append((current, total)),
        on_sweep_complete=completed.append,
        **kwargs,
    )
    return scheduler, progress, completed


def _install(scheduler: JobScheduler, entries: list[dict], *, limit: int, dedup: DedupCache | None = None) -> SweepState:
    state = SweepState.create(candidates=build_candidates(entries), concurrency_limit=limit, dedup=dedup)
    scheduler.install(state)
    return state


def test_sweep_state_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        SweepState.create(candidates=[], concurrency_limit=0)


def test_admit_without_installed_sweep_is_noop(fake_opener, manual_defer):
    scheduler, progress, _ = _scheduler(fake_opener, manual_defer)
    assert scheduler.admit_next() == {"ok": True, "action": "idle"}
    assert fake_opener.opened_urls == []
    assert progress == []


def test_active_jobs_never_exceed_concurrency_limit(fake_opener, manual_defer):
    scheduler, _, completed = _scheduler(fake_opener, manual_defer)
    state = _install(scheduler, _entries(10), limit=3)

    results = scheduler.prime()
    assert [item["action"] for item in results] == ["opened", "opened", "opened"]
    assert scheduler.admit_next()["action"] == "at_capacity"

    while state.active_jobs:
        assert len(state.active_jobs) <= 3
        handle_id = next(iter(state.active_jobs))
        out = scheduler.complete_job(handle_id)
        assert out["ok"] is True
        assert len(state.active_jobs) <= 3

    assert fake_opener.max_live <= 3
    assert len(fake_opener.opened_urls) == 10
    assert state.stats.completed == 10
    assert completed == [state]


def test_candidates_are_opened_in_list_order(fake_opener, manual_defer):
    scheduler, progress, _ = _scheduler(fake_opener, manual_defer)
    entries = _entries(5)
    state = _install(scheduler, entries, limit=2)

    scheduler.prime()
    while state.active_jobs:
        # Finish the most recent job first; admission order must still follow the list.
        handle_id = list(state.active_jobs)[-1]
        scheduler.complete_job(handle_id)

    opened_targets = [url.split("?", 1)[0] for url in fake_opener.opened_urls]
    assert opened_targets == [entry["url"] for entry in entries]
    assert [current for current, _ in progress] == [1, 2, 3, 4, 5]
    assert all(total == 5 for _, total in progress)


def test_duplicates_are_skipped_without_consuming_a_slot(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer)
    entries = _entries(3)
    dedup = DedupCache([entries[1]["url"]])
    state = _install(scheduler, entries, limit=2, dedup=dedup)

    results = scheduler.prime()
    assert [item["action"] for item in results] == ["opened", "skipped_duplicate"]
    assert manual_defer.delays == [0.0]
    assert len(state.active_jobs) == 1

    manual_defer.run_pending()
    opened_targets = [url.split("?", 1)[0] for url in fake_opener.opened_urls]
    assert opened_targets == [entries[0]["url"], entries[2]["url"]]
    assert state.stats.skipped_duplicate == 1
    assert len(state.active_jobs) == 2


def test_invalid_url_is_skipped_after_short_delay(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer, invalid_skip_delay_sec=0.05)
    entries = [{"id": "bad", "url": "not-a-url"}, *_entries(1)]
    state = _install(scheduler, entries, limit=1)

    first = scheduler.prime()
    assert first[0]["action"] == "skipped_invalid"
    assert manual_defer.delays == [0.05]

    manual_defer.run_pending()
    assert len(state.active_jobs) == 1
    assert state.stats.skipped_invalid == 1


def test_open_failure_is_skipped_not_retried(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer, open_failure_delay_sec=0.1)
    entries = _entries(3)
    fake_opener.fail_markers.add("/grades/s0")
    state = _install(scheduler, entries, limit=1)

    first = scheduler.prime()
    assert first[0]["action"] == "open_failed"
    assert state.pending_opens == 0
    assert manual_defer.delays == [0.1]

    manual_defer.run_pending()
    assert state.stats.open_failures == 1
    assert state.cursor == 2
    assert [url.split("?", 1)[0] for url in fake_opener.opened_urls] == [entries[1]["url"]]


def test_stale_completion_has_no_side_effects(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer)
    state = _install(scheduler, _entries(4), limit=2)
    scheduler.prime()

    out = scheduler.complete_job("job_unknown")
    assert out == {"ok": False, "error": "job not found", "handle_id": "job_unknown"}
    assert len(state.active_jobs) == 2
    assert state.cursor == 2
    assert fake_opener.closed_ids == []


def test_complete_job_closes_context_and_resolves_future(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer)
    state = _install(scheduler, _entries(1), limit=1)
    scheduler.prime()
    handle = next(iter(state.active_jobs.values()))

    out = scheduler.complete_job(handle.handle_id, JobOutcome(status="matched"))
    assert out["outcome"]["status"] == "matched"
    assert handle.context_id in fake_opener.closed_ids
    assert handle.outcome().status == "matched"
    assert state.stats.matched == 1
    assert out["admit"]["action"] == "sweep_complete"


def test_completion_signalled_once(fake_opener, manual_defer):
    scheduler, _, completed = _scheduler(fake_opener, manual_defer)
    state = _install(scheduler, _entries(1), limit=2)
    scheduler.prime()
    handle_id = next(iter(state.active_jobs))
    scheduler.complete_job(handle_id)

    assert scheduler.admit_next()["action"] == "draining"
    assert completed == [state]


def test_external_close_recycles_slot(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer)
    state = _install(scheduler, _entries(3), limit=1)
    scheduler.prime()
    first = next(iter(state.active_jobs.values()))

    out = scheduler.admit_next(first.handle_id)
    assert out["action"] == "opened"
    assert first.outcome().status == "context_closed"
    assert first.handle_id not in state.active_jobs
    assert scheduler.admit_next(first.handle_id)["action"] == "stale_handle"


def test_context_opened_after_detach_is_discarded(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer)
    state = _install(scheduler, _entries(2), limit=1)
    fake_opener.on_open = lambda _url: scheduler.detach()

    results = scheduler.prime()
    assert results[0]["action"] == "discarded"
    assert state.active_jobs == {}
    assert state.pending_opens == 0
    assert fake_opener.live == {}


def test_deferred_admission_from_replaced_sweep_is_ignored(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer)
    entries = _entries(2)
    _install(scheduler, entries, limit=1, dedup=DedupCache([entries[0]["url"]]))
    scheduler.prime()
    assert len(manual_defer.pending) == 1

    replacement = _install(scheduler, _entries(1, prefix="n"), limit=1)
    manual_defer.run_pending()
    assert replacement.cursor == 0
    assert fake_opener.opened_urls == []


def test_expired_handles_respects_timeout(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer)
    state = _install(scheduler, _entries(2), limit=2)
    scheduler.prime()

    now = monotonic()
    assert scheduler.expired_handles(0) == []
    assert scheduler.expired_handles(60, now_mono=now) == []
    expired = scheduler.expired_handles(60, now_mono=now + 61)
    assert {handle.handle_id for handle in expired} == set(state.active_jobs)


def test_drain_completed_picks_up_resolved_futures(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer)
    state = _install(scheduler, _entries(3), limit=2)
    scheduler.prime()
    handle = next(iter(state.active_jobs.values()))
    handle.resolve(JobOutcome(status="done"))

    assert scheduler.drain_completed() == 1
    assert handle.handle_id not in state.active_jobs
    assert len(state.active_jobs) == 2


def test_cursor_is_monotonic_and_bounded(fake_opener, manual_defer):
    scheduler, _, _ = _scheduler(fake_opener, manual_defer)
    entries = _entries(6)
    entries[2]["url"] = "mailto:nobody"
    fake_opener.fail_markers.add("/grades/s4")
    state = _install(scheduler, entries, limit=2, dedup=DedupCache([entries[1]["url"]]))

    seen = [state.cursor]
    scheduler.prime()
    seen.append(state.cursor)
    for _ in range(20):
        manual_defer.run_pending()
        seen.append(state.cursor)
        if state.active_jobs:
            scheduler.complete_job(list(state.active_jobs)[-1])
            seen.append(state.cursor)
        scheduler.admit_next()
        seen.append(state.cursor)

    assert seen == sorted(seen)
    assert max(seen) == len(entries)
    assert state.in_flight == 0
