"""Run lifecycle layer for drivesorter.

- RunManager: dry runs, queued real runs, status, artifacts, cancellation
- RunStore: persisted status documents and NDJSON run logs
- ConfigStore: per-owner configuration profiles
"""

from .config_store import ConfigProfile, ConfigStore
from .errors import (
    RunError,
    ConfigNotFoundError,
    InvalidStatusError,
    ForbiddenError,
    RunNotFoundError,
    TargetBusyError,
)
from .events import RunEventChannel
from .identity import OwnerIdentity, owner_hash, email_hash, new_run_id
from .manager import RunManager, RunRequest, RunWorker, Providers, default_providers
from .store import RunRecord, RunStore, TERMINAL_STATES


__all__ = [
    'RunManager',
    'RunRequest',
    'RunWorker',
    'Providers',
    'default_providers',
    'RunRecord',
    'RunStore',
    'TERMINAL_STATES',
    'ConfigProfile',
    'ConfigStore',
    'RunEventChannel',
    'OwnerIdentity',
    'owner_hash',
    'email_hash',
    'new_run_id',
    'RunError',
    'ConfigNotFoundError',
    'InvalidStatusError',
    'ForbiddenError',
    'RunNotFoundError',
    'TargetBusyError',
]
