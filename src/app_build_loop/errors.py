"""Exception taxonomy for the build loop.

Every error carries a ``rule`` identifier that is reported to the operator
verbatim.  Planning-time and persistence-time errors propagate to the caller of
:meth:`BuildOrchestrator.run`; the orchestrator attaches the per-feature
report it had built so far as ``exc.report``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import InvocationReport


class BuildLoopError(Exception):
    """Base class for all build loop errors."""

    rule: str = "BuildLoopError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.report: InvocationReport | None = None

    def describe(self) -> str:
        return f"{self.rule}: {self}"


class CorruptStateError(BuildLoopError, ValueError):
    """The persisted memory record cannot be parsed or validated."""

    rule = "CorruptState"


class AmbiguousSpecError(BuildLoopError, ValueError):
    """The project specification cannot be turned into a usable feature list."""

    rule = "AmbiguousSpec"

    def __init__(self, message: str, *, feature: str | None = None) -> None:
        super().__init__(message)
        self.feature = feature


class CyclicDependencyError(BuildLoopError, ValueError):
    """The feature dependency graph has no topological order."""

    rule = "CyclicDependency"

    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Feature dependency graph contains a cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class StateWriteError(BuildLoopError, RuntimeError):
    """The memory record could not be written."""

    rule = "StateWriteError"


class CheckpointError(BuildLoopError, RuntimeError):
    """A checkpoint could not be recorded. Never fatal."""

    rule = "CheckpointFailure"


class ConcurrentInvocationError(BuildLoopError, RuntimeError):
    """Another invocation already holds the project lock."""

    rule = "ConcurrentInvocation"

    def __init__(self, lock_path: Any) -> None:
        super().__init__(f"Another invocation holds the project lock: {lock_path}")
        self.lock_path = lock_path
