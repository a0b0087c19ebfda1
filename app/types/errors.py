"""Error taxonomy shared by services, workers and the tool surface.

Every error carries a plain-language ``message`` that is safe to show to a
chat user.
"""

from __future__ import annotations

from typing import Optional


class AssistantError(Exception):
    """Base class for all expected failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(AssistantError):
    """Startup cannot continue (e.g. no LLM provider configured)."""


class ValidationError(AssistantError):
    """Malformed tool arguments or repeat rule; nothing was changed."""


class UnsupportedFrequencyError(ValidationError):
    """A repeat frequency that cannot be computed automatically (CRON)."""


class NotFoundError(AssistantError):
    """A referenced topic, reminder or summary does not exist."""


class DuplicateError(AssistantError):
    """A unique-constrained insert lost the race to an identical row."""


class DeliveryError(AssistantError):
    """The chat transport refused or failed to deliver a message."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ProviderError(AssistantError):
    """An upstream LLM provider failed.

    ``status`` is the upstream HTTP status when there was one; ``retryable``
    marks timeouts, connection errors, rate limits and 5xx responses.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(f"{provider} failed: {message}")
        self.provider = provider
        self.status = status
        self.retryable = retryable
        self.upstream_message = message


class UnsupportedOperationError(ProviderError):
    """The provider has no such capability (e.g. speech-to-text)."""

    def __init__(self, provider: str, operation: str):
        super().__init__(provider, f"{operation} is not supported")
        self.operation = operation


def is_retryable_status(status: Optional[int]) -> bool:
    return status is None or status == 408 or status == 429 or status >= 500
