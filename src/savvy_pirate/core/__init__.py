"""Scheduling and execution-coordination core."""

from .collaborators import ScrapeCompletionChannel, ScraperBridge
from .config_loader import clear_config_cache, get_timezone, load_config, resolve_config_path
from .coordinator import ExecutionCoordinator, SchedulerSettings, load_scheduler_settings
from .crash_recovery import CrashRecovery
from .errors import (
    AuthenticationRequiredError,
    ConfigurationError,
    LinkedInSessionError,
    SavvyPirateError,
    ScheduleValidationError,
)
from .execution_ledger import ExecutionLedger
from .pending_queue import PendingQueue
from .reference_clock import ReferenceClock
from .run_state import RunConfig, RunProgress, RunState, RunStateRepository
from .schedule_store import ScheduleStore, describe_schedule, validate_schedule, week_of_month_parity
from .state_store import StateStore

__all__ = [
    "AuthenticationRequiredError",
    "ConfigurationError",
    "LinkedInSessionError",
    "CrashRecovery",
    "ExecutionCoordinator",
    "ExecutionLedger",
    "PendingQueue",
    "ReferenceClock",
    "RunConfig",
    "RunProgress",
    "RunState",
    "RunStateRepository",
    "SavvyPirateError",
    "ScheduleStore",
    "ScheduleValidationError",
    "SchedulerSettings",
    "ScrapeCompletionChannel",
    "ScraperBridge",
    "StateStore",
    "clear_config_cache",
    "describe_schedule",
    "get_timezone",
    "load_config",
    "load_scheduler_settings",
    "resolve_config_path",
    "validate_schedule",
    "week_of_month_parity",
]
