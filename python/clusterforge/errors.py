"""
clusterforge/errors.py

Error kinds raised by the bootstrap pipeline. Tool invocation failures use
CommandError from clusterforge.utils.async_command_runner.
"""

from __future__ import annotations

from typing import Any, Optional


class BootstrapConfigError(ValueError):
    """The cluster configuration is missing or malformed. Raised before any external call."""


class BootstrapTimeoutError(TimeoutError):
    """A polled resource did not become ready before its deadline.

    Attributes:
        resource: Name of the resource that was still unready (VM name, API host...).
    """

    def __init__(self, message: str, resource: str) -> None:
        super().__init__(message)
        self.resource = resource


class InconsistentStateError(RuntimeError):
    """A later stage found the output of an earlier stage violating an invariant."""


class StageError(RuntimeError):
    """Wraps the failure of one pipeline stage.

    Attributes:
        stage: The BootstrapStage that failed.
        cause: The original exception (also chained as __cause__).
    """

    def __init__(self, stage: Any, cause: Optional[BaseException] = None) -> None:
        label = getattr(stage, "value", stage)
        super().__init__(f"bootstrap stage '{label}' failed: {cause}")
        self.stage = stage
        self.cause = cause
