from __future__ import annotations

from typing import Optional


class LeadHarvesterError(Exception):
    """Base class for every error raised by the harvester."""


class ConfigurationError(LeadHarvesterError):
    pass


class RecordNotFoundError(LeadHarvesterError):
    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} with ID [{record_id}] not found")
        self.kind = kind
        self.record_id = record_id


class ProtocolParseError(LeadHarvesterError):
    pass


class InvalidProxyUriError(ProtocolParseError):
    def __init__(self, uri: str, scheme: str, reason: str = "") -> None:
        label = scheme.upper() if scheme else "proxy"
        message = f"Invalid {label} URI: {uri}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.uri = uri
        self.scheme = scheme
        self.reason = reason


class SearchResponseError(ProtocolParseError):
    pass


class TransientNetworkError(LeadHarvesterError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(TransientNetworkError):
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ProcessLifecycleError(LeadHarvesterError):
    pass


class TunnelStartError(ProcessLifecycleError):
    def __init__(self, proxy_id: str, cause: object) -> None:
        super().__init__(f"Failed to start tunnel for proxy {proxy_id}: {cause}")
        self.proxy_id = proxy_id
        self.cause = cause


class InvalidStateTransition(LeadHarvesterError):
    def __init__(self, run_id: str, state: object, action: str) -> None:
        state_label = getattr(state, "value", state)
        super().__init__(f"Cannot {action} pipeline {run_id} in state: {state_label}")
        self.run_id = run_id
        self.state = state
        self.action = action


__all__ = [
    "ConfigurationError",
    "InvalidProxyUriError",
    "InvalidStateTransition",
    "LeadHarvesterError",
    "ProcessLifecycleError",
    "ProtocolParseError",
    "RateLimitError",
    "RecordNotFoundError",
    "SearchResponseError",
    "TransientNetworkError",
    "TunnelStartError",
]
