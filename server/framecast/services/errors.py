from __future__ import annotations

from typing import Optional


class GenerationError(RuntimeError):
    """Base class for every failure raised by the generation pipeline."""


class ConfigurationError(GenerationError):
    """Raised when provider credentials are missing or unusable."""


class InvalidPayload(GenerationError):
    """Raised when a generation payload is rejected before any request is sent."""


class PayloadTooLarge(InvalidPayload):
    """Raised when captured media exceeds the provider's size ceiling."""

    def __init__(self, *, size: int, limit: int, unit: str = "bytes") -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Payload too large ({size} > {limit} {unit})")


class NoPromptProvided(InvalidPayload):
    """Raised when neither a typed prompt nor a transcript carries any text."""

    def __init__(self) -> None:
        super().__init__("No prompt provided: type a prompt or speak one")


class SubmissionRejected(GenerationError):
    """Raised when the provider refuses a submission."""

    def __init__(self, *, status_code: int, provider_message: str) -> None:
        self.status_code = status_code
        self.provider_message = provider_message
        super().__init__(f"Provider rejected submission ({status_code}): {provider_message}")


class GenerationFailed(GenerationError):
    """Raised when the provider reports a terminal failure for a job."""

    def __init__(self, *, provider_status: str, detail: Optional[str]) -> None:
        self.provider_status = provider_status
        self.detail = detail
        super().__init__(f"Generation failed ({provider_status}): {detail or 'unknown error'}")


class PollTimeout(GenerationError):
    """Raised when the poll attempt budget runs out before a terminal state."""

    def __init__(self, *, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Job did not finish within {attempts} poll attempts")


class PollCancelled(GenerationError):
    """Raised when polling stops because the caller signalled cancellation."""


class GenerationTimedOut(GenerationError):
    """Raised when the orchestrator's wall-clock safety net fires."""

    def __init__(self, *, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Generation timed out after {timeout_seconds:g}s")


class GenerationInProgress(GenerationError):
    """Raised when a second attempt is started while one is still active."""


class ProviderRequestFailed(GenerationError):
    """Raised when a provider request fails at the transport or HTTP level."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)
