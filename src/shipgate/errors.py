from __future__ import annotations


class ShipgateError(RuntimeError):
    """Base class for errors raised by shipgate."""


class ProcessError(ShipgateError):
    """Raised when a streamed subprocess does not end normally."""

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        exit_code: int | None = None,
        signal: str | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.signal = signal
        self.stderr = stderr


class ProcessSpawnError(ProcessError):
    """Raised when the process could not be started at all."""


class ProcessAbortedError(ProcessError):
    """Raised when the caller's cancellation signal stopped the process."""


class ProcessTimeoutError(ProcessError):
    def __init__(
        self,
        message: str,
        *,
        timeout_ms: int,
        had_output: bool,
        command: str | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, command=command, stderr=stderr)
        self.timeout_ms = timeout_ms
        self.had_output = had_output


class ProcessExitError(ProcessError):
    """Raised when the process exits with a non-zero code or is killed by a signal."""


class ExecutorError(ShipgateError):
    """Raised when a model executor cannot produce a usable reply."""

    def __init__(self, message: str, *, executor: str | None = None) -> None:
        super().__init__(message)
        self.executor = executor


class PipelineConfigError(ShipgateError):
    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        joined = "; ".join(self.errors) if self.errors else "invalid pipeline configuration"
        super().__init__(f"Invalid pipeline configuration: {joined}")


class IntegrationError(ShipgateError):
    """Raised by external code-review integrations."""
