"""
Provider failover for a single reasoning call.

    candidates (router order)
        │
        ├─ breaker open?            → skip
        ├─ answer                   → return (text, spec)
        ├─ transient failure        → count it, try the next candidate
        └─ permanent failure        → ExternalServiceError("llm") at once

Transient means rate limiting, provider 5xx, connection loss or a timeout
(settings.llm_timeout_seconds per attempt). Each candidate gets at most one
attempt per call, so the same request is never resent to a provider that
already saw it. Moving on to another provider after a transient failure is
the one repeat a pipeline step can see; callers that must reach a single
model build the chain over a ModelRouter holding that one spec.

A provider with three consecutive transient failures is skipped for a
minute. Breaker state lives in this process only.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from langchain_core.messages import BaseMessage

from app.core.errors import ExternalServiceError
from app.llm.router import ModelRequirements, ModelRouter, ModelSpec, Provider

logger = logging.getLogger(__name__)

# Exception class names, matched by suffix
_TRANSIENT_ERROR_NAMES = (
    "RateLimitError",
    "InternalServerError",
    "APIConnectionError",
    "APITimeoutError",
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)


def _is_transient(exc: Exception) -> bool:
    return type(exc).__name__.endswith(_TRANSIENT_ERROR_NAMES)


# ---------------------------------------------------------------------------
# Per-provider breaker
# ---------------------------------------------------------------------------

@dataclass
class _Breaker:
    threshold:    int   = 3
    cooldown:     int   = 60
    failures:     int   = 0
    reopen_at:    float = 0.0

    def is_open(self) -> bool:
        if self.failures < self.threshold:
            return False
        if time.monotonic() >= self.reopen_at:
            self.failures = 0
            return False
        return True

    def trip(self) -> None:
        self.failures += 1
        self.reopen_at = time.monotonic() + self.cooldown

    def close(self) -> None:
        self.failures  = 0
        self.reopen_at = 0.0


_BREAKERS: dict[Provider, _Breaker] = {provider: _Breaker() for provider in Provider}


def reset_circuits() -> None:
    """Close every provider breaker."""
    for breaker in _BREAKERS.values():
        breaker.close()


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

class FallbackChain:
    """
    Tries each eligible model once, in router order, until one answers.

        content, spec = await FallbackChain(ModelRequirements(require_vision=True)).ainvoke(messages)
    """

    def __init__(
        self,
        requirements:        ModelRequirements | None = None,
        router:              ModelRouter | None = None,
        per_attempt_timeout: float = 60.0,
    ) -> None:
        self._requirements = requirements or ModelRequirements()
        self._router       = router or ModelRouter()
        self._timeout      = per_attempt_timeout

    def _candidates(self) -> list[ModelSpec]:
        try:
            return self._router.candidates(self._requirements)
        except RuntimeError as exc:
            raise ExternalServiceError("llm", str(exc)) from exc

    async def _attempt(self, spec: ModelSpec, messages: list[BaseMessage]) -> str:
        llm = self._router.build_llm(spec, json_mode=self._requirements.require_json_mode)
        message = await asyncio.wait_for(llm.ainvoke(messages), timeout=self._timeout)
        return _content_text(message.content)

    async def ainvoke(self, messages: list[BaseMessage]) -> tuple[str, ModelSpec]:
        """
        Return (response text, model that produced it).

        Raises:
            ExternalServiceError: a permanent provider error, or no candidate answered.
        """
        failures: list[str] = []

        for spec in self._candidates():
            breaker = _BREAKERS[spec.provider]
            if breaker.is_open():
                logger.debug("LLM candidate skipped | provider=%s reason=breaker_open", spec.provider.value)
                continue

            label = f"{spec.provider.value}/{spec.model_id}"
            try:
                text = await self._attempt(spec, messages)
            except asyncio.TimeoutError:
                reason = f"{label}: no answer within {self._timeout}s"
            except Exception as exc:
                if not _is_transient(exc):
                    logger.error("LLM call failed permanently | model=%s error=%s", label, exc)
                    raise ExternalServiceError("llm", f"{type(exc).__name__}: {exc}") from exc
                reason = f"{label}: {type(exc).__name__}: {exc}"
            else:
                breaker.close()
                return text, spec

            breaker.trip()
            failures.append(reason)
            logger.warning(
                "LLM candidate failed | %s consecutive_failures=%d", reason, breaker.failures,
            )

        if not failures:
            raise ExternalServiceError("llm", "no provider available")
        raise ExternalServiceError("llm", "all providers failed: " + "; ".join(failures))


def _content_text(content: object) -> str:
    """Join LangChain message content, which may be a list of blocks."""
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return content if isinstance(content, str) else str(content)
