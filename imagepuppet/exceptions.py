"""Custom exceptions for image-puppet."""

from __future__ import annotations

from typing import Optional


class PuppetError(RuntimeError):
    """Base class for every build failure.

    Errors carry the position at which they were raised. ``annotate`` only
    fills fields that are still unset, so the innermost context wins.
    """

    component = "engine"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        action_index: Optional[int] = None,
        component: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.action_index = action_index
        if component is not None:
            self.component = component

    def annotate(
        self,
        stage: Optional[str] = None,
        action_index: Optional[int] = None,
        component: Optional[str] = None,
    ) -> "PuppetError":
        if self.stage is None and stage is not None:
            self.stage = stage
        if self.action_index is None and action_index is not None:
            self.action_index = action_index
        if component is not None and "component" not in self.__dict__:
            self.component = component
        return self

    def context(self) -> str:
        parts = []
        if self.stage is not None:
            parts.append(f"stage={self.stage}")
        if self.action_index is not None:
            parts.append(f"action={self.action_index}")
        parts.append(f"component={self.component}")
        return ", ".join(parts)

    def __str__(self) -> str:
        return self.message


class ConfigurationError(PuppetError):
    """Invalid build description, detected before any VM is launched."""

    component = "config"


class ProviderUnavailable(PuppetError):
    """The selected hypervisor backend is missing or unusable on this host."""

    component = "provider"


class BootTimeout(PuppetError):
    component = "provider"


class ChannelError(PuppetError):
    """The control channel to the VM broke. Never retried."""

    component = "provider"


class TransientChannelError(ChannelError):
    """A remote channel failure that may succeed on a later attempt."""

    component = "remote"


class DetectionTimeout(PuppetError):
    component = "detector"

    def __init__(self, message: str, *, pattern: str = "", elapsed: float = 0.0, samples: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.pattern = pattern
        self.elapsed = elapsed
        self.samples = samples


class StageTimeout(PuppetError):
    component = "interpreter"


class RemoteCommandFailure(PuppetError):
    """A guest command exited non-zero."""

    component = "remote"

    def __init__(
        self,
        message: str,
        *,
        exit_status: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class RemoteChannelExhausted(RemoteCommandFailure):
    """Retries against a transient channel failure ran out."""

    def __init__(self, message: str, *, attempts: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.attempts = attempts


class BuildCancelled(PuppetError):
    """The build was cancelled by its owner. Not counted as a failure."""

    component = "controller"
