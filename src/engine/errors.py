from __future__ import annotations


class RunnerEngineError(RuntimeError):
    """Base for every lifecycle failure.

    Carries the runner identity, the step that failed, and the underlying
    cause so that callers can report all three without parsing messages.
    """

    default_step = "operation"

    def __init__(
        self,
        cause: str | BaseException = "",
        *,
        runner_id: str | None = None,
        step: str | None = None,
    ) -> None:
        self.runner_id = runner_id
        self.step = step or self.default_step
        self.cause = str(cause) if cause != "" else type(self).__name__
        super().__init__(self._render())

    def _render(self) -> str:
        who = f"runner {self.runner_id}" if self.runner_id else "engine"
        return f"{who}: {self.step} failed: {self.cause}"

    def __str__(self) -> str:
        return self._render()

    def bind(self, *, runner_id: str | None = None, step: str | None = None) -> "RunnerEngineError":
        """Attach identity/step after the fact (backends raise without knowing the runner)."""
        if runner_id and not self.runner_id:
            self.runner_id = runner_id
        if step and self.step == self.default_step:
            self.step = step
        self.args = (self._render(),)
        return self

    def details(self) -> dict[str, str | None]:
        return {"runner_id": self.runner_id, "step": self.step, "cause": self.cause}


class UnsupportedPlatform(RunnerEngineError):
    default_step = "detect_platform"


class DownloadError(RunnerEngineError):
    default_step = "download"


class ConfigurationError(RunnerEngineError):
    default_step = "configure"


class StartError(RunnerEngineError):
    default_step = "start"


class AlreadyRunning(RunnerEngineError):
    default_step = "start"


class ImagePullError(RunnerEngineError):
    default_step = "pull_image"


class ContainerRuntimeUnavailable(RunnerEngineError):
    default_step = "container_runtime"


class CredentialNotFound(RunnerEngineError):
    default_step = "resolve_credential"


class CredentialExpired(RunnerEngineError):
    default_step = "resolve_credential"


class AuthError(RunnerEngineError):
    default_step = "authenticate"


class RegistrationLost(RunnerEngineError):
    default_step = "sync"


class ReconciliationIncomplete(RunnerEngineError):
    default_step = "startup_reconcile"


class HostingServiceError(RunnerEngineError):
    """Transient hosting-service I/O failure (network, 5xx, rate limit).

    `status_code` is the HTTP status when the service answered, None for
    network-level failures.
    """

    default_step = "hosting_service"

    def __init__(
        self,
        cause: str | BaseException = "",
        *,
        runner_id: str | None = None,
        step: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(cause, runner_id=runner_id, step=step)


class RunnerNotFound(RunnerEngineError):
    default_step = "lookup"


class InvalidTransition(RunnerEngineError):
    default_step = "transition"


class ModeImmutable(RunnerEngineError):
    default_step = "update"


class EngineNotReady(RunnerEngineError):
    default_step = "readiness"


class StopError(RunnerEngineError):
    default_step = "stop"


class RemoveError(RunnerEngineError):
    default_step = "remove"


class FleetLeaseHeld(RunnerEngineError):
    """Another process owns the fleet database's lifecycle operations."""

    default_step = "lease"
