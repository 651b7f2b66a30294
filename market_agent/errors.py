from __future__ import annotations


class MarketAgentError(Exception):
    """Base class for errors raised by market_agent."""


class ConfigError(MarketAgentError):
    """Missing or invalid configuration; no cycle can run without it."""


class TransportError(MarketAgentError):
    """Connection-level failure (timeout, DNS, reset) talking to a remote endpoint."""

    def __init__(self, message: str, *, method: str | None = None, url: str | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.url = url


class CodeGenerationError(MarketAgentError):
    pass


class PublishError(MarketAgentError):
    pass


class StateInvariantError(MarketAgentError):
    pass
