"""Run-level errors. Each carries a stable ``code`` for API responses."""

from typing import Optional

from models.base import BadClassificationError


class RunError(Exception):
    """Base exception for run lifecycle operations."""
    code = "run-error"

    def __init__(self, message: str = "", run_id: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.run_id = run_id

    @property
    def detail(self) -> str:
        return str(self)


class ConfigNotFoundError(RunError):
    """No profile or legacy config resolves for the request."""
    code = "config-not-found"


class InvalidStatusError(RunError):
    """A persisted status document is not valid JSON."""
    code = "invalid-status-json"


class ForbiddenError(RunError):
    """Caller's ownership fingerprint doesn't match the run's."""
    code = "forbidden"


class RunNotFoundError(RunError):
    """Unknown run id or missing status document."""
    code = "not-found"


class TargetBusyError(RunError):
    """Another run in this process is already working on the target root."""
    code = "target-busy"


__all__ = [
    'RunError',
    'ConfigNotFoundError',
    'InvalidStatusError',
    'ForbiddenError',
    'RunNotFoundError',
    'TargetBusyError',
    'BadClassificationError',
]
