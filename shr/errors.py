from __future__ import annotations


class ShrError(Exception):
    """Base class for reconciler errors.

    ``project`` and ``step`` are filled in where known so the CLI can say
    which project and which step failed.
    """

    def __init__(self, message: str, *, project: str | None = None, step: str | None = None):
        super().__init__(message)
        self.message = message
        self.project = project
        self.step = step

    def __str__(self) -> str:
        prefix = ""
        if self.project:
            prefix = f"[{self.project}] "
        if self.step:
            prefix += f"{self.step}: "
        return f"{prefix}{self.message}"


class ValidationError(ShrError):
    """Bad or missing descriptor/config fields. Fatal for that project only."""


class MissingPort(ValidationError):
    pass


class NotFound(ValidationError):
    pass


class InvalidTransition(ValidationError):
    pass


class HostOperationError(ShrError):
    """Identity, unit or site write failure. Aborts that project's apply."""


class IssuanceError(ShrError):
    """Certificate request failed. Recoverable; retried on the next apply."""


class ProbeFailure(ShrError):
    """Health probe exhausted its retries."""


class ReloadError(ShrError):
    """nginx config test or reload failed."""


class LockTimeout(ShrError):
    pass
