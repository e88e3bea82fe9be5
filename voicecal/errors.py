from __future__ import annotations


class VoiceCalError(Exception):
    """Base class for every error raised by voicecal itself."""


class InputError(VoiceCalError):
    """A request is missing a scope, an id or a concrete timestamp.

    Never retried: repeating the call cannot make the input valid.
    """


class RemoteTransientError(VoiceCalError):
    """A remote store or provider call failed."""


class NotFoundError(VoiceCalError):
    """The remote store has no record of the requested event."""

    def __init__(self, event_id: str, message: str = "") -> None:
        self.event_id = event_id
        super().__init__(message or f"Event not found: {event_id}")


class AlreadySatisfied(VoiceCalError):
    """A delete or cancel target is already gone or already cancelled."""

    def __init__(self, event_id: str, reason: str) -> None:
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"{event_id}: {reason}")


class BestEffortCleanupError(VoiceCalError):
    """Transition-day duplicate cleanup failed after a series split."""


class StatusWaitTimeout(VoiceCalError, TimeoutError):
    """No status change was observed for a job within the wait timeout."""

    def __init__(self, job_id: str, timeout: float) -> None:
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Status check timeout for {job_id} after {timeout:g}s")


def user_message(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__
