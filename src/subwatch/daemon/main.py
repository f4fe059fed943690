"""Daemon entrypoint: run the sweep runtime, optionally behind the local API."""

from __future__ import annotations

import argparse
import signal
from threading import Event
from time import monotonic
from typing import Any

from src.subwatch.core.config_loader import get_logging_config
from src.subwatch.core.log_config import configure_logging, get_logger
from src.subwatch.runtime.service import get_runtime_service

logger = get_logger("daemon")


def _install_signal_handlers(stop_event: Event) -> None:
    def _handler(_sig, _frame) -> None:  # type: ignore[no-untyped-def]
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _setup_logging(level: str | None) -> None:
    try:
        cfg = get_logging_config()
    except Exception:
        cfg = {}
    configured_level = cfg.get("level") if isinstance(cfg.get("level"), str) else "INFO"
    log_dir = cfg.get("log_dir") if isinstance(cfg.get("log_dir"), str) and cfg.get("log_dir").strip() else None
    configure_logging(level or configured_level, log_dir=log_dir)


def sweep_summary(status: dict[str, Any]) -> str:
    """One-line progress summary for the headless loop."""
    sweep = status.get("sweep") or {}
    if not status.get("running") or not sweep:
        return f"sweep idle (monitor={status.get('monitor_state')}, matched={status.get('matched_count', 0)})"
    stats = sweep.get("stats") or {}
    return (
        f"sweep {sweep.get('sweep_id')} at {sweep.get('cursor')}/{sweep.get('total')}, "
        f"active={len(status.get('active_jobs') or [])}, matched={stats.get('matched', 0)}, "
        f"skipped={stats.get('skipped_duplicate', 0) + stats.get('skipped_invalid', 0)}, "
        f"completed_sweeps={status.get('completed_sweeps', 0)}"
    )


def run_daemon(
    *,
    with_app: bool = True,
    host: str = "127.0.0.1",
    port: int = 8000,
    tick_sec: float = 0.5,
    status_sec: float = 60.0,
    stop_event: Event | None = None,
) -> int:
    runtime = get_runtime_service()
    started = runtime.start(start_sweep_if_enabled=True, source="daemon")
    logger.info("Runtime started (sweep_started=%s)", started.get("sweep_started"))

    if with_app:
        try:
            import uvicorn
        except Exception as exc:  # pragma: no cover - dependency error guard
            runtime.stop(source="daemon")
            raise RuntimeError("uvicorn is required for daemon app mode") from exc

        try:
            uvicorn.run("app.main:app", host=host, port=port, reload=False)
        finally:
            runtime.stop(source="daemon")
        return 0

    signal_event = stop_event or Event()
    _install_signal_handlers(signal_event)
    next_report = monotonic() + status_sec if status_sec > 0 else None
    try:
        while not signal_event.is_set():
            signal_event.wait(timeout=max(0.05, tick_sec))
            if next_report is not None and monotonic() >= next_report:
                logger.info(sweep_summary(runtime.sweep_status()))
                next_report = monotonic() + status_sec
    finally:
        runtime.stop(source="daemon")
        logger.info("Runtime stopped")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run the subwatch sweep daemon: open candidate pages in bounded batches and record submissions."
    )
    parser.add_argument("--host", default="127.0.0.1", help="Bind host for the sweep control API.")
    parser.add_argument("--port", type=int, default=8000, help="Bind port for the sweep control API.")
    parser.add_argument(
        "--no-app",
        action="store_true",
        help="Run sweeps without the control API; jobs then finish on tab close or timeout.",
    )
    parser.add_argument(
        "--tick-sec",
        type=float,
        default=0.5,
        help="Signal poll interval when running without the API.",
    )
    parser.add_argument(
        "--status-sec",
        type=float,
        default=60.0,
        help="Log a sweep progress summary this often without the API (0 disables).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Console log level (defaults to logging.level in config).",
    )
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)
    return run_daemon(
        with_app=not args.no_app,
        host=args.host,
        port=args.port,
        tick_sec=max(0.05, float(args.tick_sec)),
        status_sec=max(0.0, float(args.status_sec)),
    )


if __name__ == "__main__":
    raise SystemExit(main())
