"""Core sweep scheduling utilities for subwatch."""

from .candidates import Candidate, build_candidates, is_actionable_url, normalize_target_url
from .config_loader import (
    clear_config_cache,
    get_browser_config,
    get_logging_config,
    get_sweep_config,
    load_config,
    resolve_config_path,
)
from .dedup_cache import DedupCache, matched_entry_key
from .execution_context import BrowserSettings, ExecutionContextOpener, PlaywrightContextOpener
from .filter_engine import FilterExpression, filter_candidates, parse_filter_expression
from .job_lifecycle import JobHandle, JobLifecycleManager, JobOpenError, JobOutcome
from .job_scheduler import JobScheduler, SweepState, SweepStats, timer_defer
from .log_config import configure_logging, get_logger
from .state_store import StateStore
from .sweep_controller import SweepController, SweepSettings, get_sweep_controller, load_sweep_settings

__all__ = [
    "BrowserSettings",
    "Candidate",
    "DedupCache",
    "ExecutionContextOpener",
    "FilterExpression",
    "JobHandle",
    "JobLifecycleManager",
    "JobOpenError",
    "JobOutcome",
    "JobScheduler",
    "PlaywrightContextOpener",
    "StateStore",
    "SweepController",
    "SweepSettings",
    "SweepState",
    "SweepStats",
    "build_candidates",
    "clear_config_cache",
    "configure_logging",
    "filter_candidates",
    "get_browser_config",
    "get_logger",
    "get_logging_config",
    "get_sweep_config",
    "get_sweep_controller",
    "is_actionable_url",
    "load_config",
    "load_sweep_settings",
    "matched_entry_key",
    "normalize_target_url",
    "parse_filter_expression",
    "resolve_config_path",
    "timer_defer",
]
