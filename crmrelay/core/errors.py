from __future__ import annotations


class RelayError(Exception):
    """Base error for crmrelay."""


class ConfigurationError(RelayError):
    """Missing or invalid runtime configuration."""


class EventTaxonomyError(ConfigurationError):
    """The static event alias table is inconsistent."""


class NoTenantFoundError(RelayError):
    """Every tenant resolution strategy was exhausted."""


class FilterConfigError(RelayError):
    """A rule filter configuration could not be parsed."""


class QueueUnavailableError(RelayError):
    """The Tier 1 work queue is unreachable or rejected the job."""


class ChatDeliveryError(RelayError):
    """A chat endpoint rejected or failed a send."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IllegalTierTransitionError(RelayError):
    """A delivery attempted a tier transition outside the transition table."""


class IllegalQueueTransitionError(RelayError):
    """A queue item status change is not allowed."""


class ImmutableRecordError(RelayError):
    """An append-only record was modified after insert."""


class MalformedPayloadError(RelayError):
    """A stored event payload is null, corrupt or missing required fields."""
