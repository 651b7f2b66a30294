from __future__ import annotations

import logging
import os
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)

logger = logging.getLogger(__name__)

RETRIES_ENV = "MARKET_AGENT_OPENAI_MAX_RETRIES"
MAX_ATTEMPTS_CAP = 3
_RETRYABLE_STATUS = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    jitter: float = 0.2

    @classmethod
    def from_env(cls, requested: int, raw: str | None = None) -> RetryPolicy:
        """Attempts come from `requested` unless the environment overrides them; capped at 3."""
        value = (raw if raw is not None else os.getenv(RETRIES_ENV, "")).strip()
        attempts = int(requested)
        if value:
            try:
                attempts = int(value)
            except ValueError as e:
                raise ValueError(f"{RETRIES_ENV} must be an int, got {value!r}") from e
        if not 1 <= attempts <= MAX_ATTEMPTS_CAP:
            raise ValueError(f"retry attempts must be between 1 and {MAX_ATTEMPTS_CAP}, got {attempts}")
        return cls(attempts=attempts)

    def delay(self, attempt: int) -> float:
        return self.base_delay * (2**attempt) + random.random() * self.jitter


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    attempts: int = 1


def _status_of(err: Exception) -> int | None:
    raw = getattr(err, "status_code", None)
    if raw is None:
        raw = getattr(getattr(err, "response", None), "status_code", None)
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def is_transient(err: Exception) -> bool:
    if isinstance(err, (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError, TimeoutError)):
        return True
    # APIStatusError and foreign HTTP errors both expose a status code.
    return _status_of(err) in _RETRYABLE_STATUS


def _token_counts(resp: Any) -> tuple[int, int]:
    usage = getattr(resp, "usage", None)
    if usage is None:
        return 0, 0
    return int(getattr(usage, "input_tokens", 0) or 0), int(getattr(usage, "output_tokens", 0) or 0)


class OpenAITextClient:
    """Plain-text completions over the Responses API with bounded retries on transient errors.

    Token usage is tallied across every call made through one client so the agent can
    report what code generation has cost so far.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None,
        timeout: float | None = 600.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self._sleep = sleep
        self.total_input_tokens = 0
        self.total_output_tokens = 0

    def complete(
        self,
        *,
        model: str,
        instructions: str,
        prompt: str,
        max_output_tokens: int = 16000,
        temperature: float | None = None,
        max_attempts: int = 3,
    ) -> Completion:
        policy = RetryPolicy.from_env(max_attempts)
        params: dict[str, Any] = {
            "model": model,
            "instructions": instructions,
            "input": prompt,
            "max_output_tokens": max_output_tokens,
        }
        # Reasoning models reject `temperature`, so it is only sent when asked for.
        if temperature is not None:
            params["temperature"] = temperature

        for attempt in range(policy.attempts):
            try:
                resp = self._client.responses.create(**params)
            except Exception as e:
                if not is_transient(e) or attempt == policy.attempts - 1:
                    raise
                logger.warning(
                    "transient OpenAI error on %s (attempt %d/%d): %s",
                    model,
                    attempt + 1,
                    policy.attempts,
                    e,
                )
                self._sleep(policy.delay(attempt))
                continue

            input_tokens, output_tokens = _token_counts(resp)
            self.total_input_tokens += input_tokens
            self.total_output_tokens += output_tokens
            return Completion(
                text=getattr(resp, "output_text", None) or "",
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                attempts=attempt + 1,
            )
        raise AssertionError("unreachable")
