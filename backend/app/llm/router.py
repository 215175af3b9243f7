"""
Model selection for classification and extraction calls.

    ModelRequirements ──► filter (vision, JSON mode, context size)
                      ──► order  (quality, cost or latency)
                      ──► [ModelSpec, ...]  best first

Only providers with credentials in settings are registered; the local
Ollama model is never offered in production. No I/O happens here:
build_llm returns an unconnected LangChain chat model.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from langchain_core.language_models.chat_models import BaseChatModel

from app.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Routing vocabulary
# ---------------------------------------------------------------------------

class RoutingStrategy(str, Enum):
    """Ordering applied to the eligible models."""
    LOWEST_COST     = "lowest_cost"
    LOWEST_LATENCY  = "lowest_latency"
    HIGHEST_QUALITY = "highest_quality"


class Provider(str, Enum):
    OPENAI       = "openai"
    AZURE_OPENAI = "azure_openai"
    OLLAMA       = "ollama"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass
class ModelSpec:
    """One deployable model. Costs are USD per 1k input tokens; quality is a 0-10 rank."""
    model_id:           str
    provider:           Provider
    context_window:     int
    cost_input_per_1k:  float
    p50_latency_ms:     int
    quality_score:      float
    supports_vision:    bool = False
    supports_json_mode: bool = False


# ---------------------------------------------------------------------------
# Models offered when their provider is configured
# ---------------------------------------------------------------------------

_REGISTERED_MODELS: list[ModelSpec] = [
    ModelSpec(
        model_id           = settings.llm_model,
        provider           = Provider.OPENAI,
        context_window     = 128_000,
        cost_input_per_1k  = 0.00015,
        p50_latency_ms     = 400,
        quality_score      = 8.5,
        supports_vision    = True,
        supports_json_mode = True,
    ),
    # Azure deployment of the same family
    ModelSpec(
        model_id           = settings.azure_openai_deployment,
        provider           = Provider.AZURE_OPENAI,
        context_window     = 128_000,
        cost_input_per_1k  = 0.005,
        p50_latency_ms     = 1_100,
        quality_score      = 9.0,
        supports_vision    = True,
        supports_json_mode = True,
    ),
    # Local, text only
    ModelSpec(
        model_id           = "llama3.1:8b",
        provider           = Provider.OLLAMA,
        context_window     = 128_000,
        cost_input_per_1k  = 0.0,
        p50_latency_ms     = 2_000,
        quality_score      = 6.5,
        supports_vision    = False,
        supports_json_mode = True,
    ),
]


def _provider_configured(spec: ModelSpec) -> bool:
    if spec.provider == Provider.OPENAI:
        return bool(settings.openai_api_key)
    if spec.provider == Provider.AZURE_OPENAI:
        return bool(settings.azure_openai_api_key and settings.azure_openai_endpoint)
    return settings.app_env != "production"


# ---------------------------------------------------------------------------
# Per-call requirements
# ---------------------------------------------------------------------------

@dataclass
class ModelRequirements:
    """What one call needs from a model."""
    strategy:          RoutingStrategy = RoutingStrategy.HIGHEST_QUALITY
    max_input_tokens:  int             = 16_000
    require_json_mode: bool            = True
    require_vision:    bool            = False


# ---------------------------------------------------------------------------
# ModelRouter
# ---------------------------------------------------------------------------

_ORDERINGS = {
    RoutingStrategy.HIGHEST_QUALITY: lambda s: -s.quality_score,
    RoutingStrategy.LOWEST_COST:     lambda s: s.cost_input_per_1k,
    RoutingStrategy.LOWEST_LATENCY:  lambda s: s.p50_latency_ms,
}


def _satisfies(spec: ModelSpec, req: ModelRequirements) -> bool:
    if spec.context_window < req.max_input_tokens:
        return False
    if req.require_json_mode and not spec.supports_json_mode:
        return False
    return spec.supports_vision or not req.require_vision


class ModelRouter:
    """Ranks the configured models for one call; build_llm turns a spec into a chat model."""

    def __init__(self, models: list[ModelSpec] | None = None) -> None:
        if models is None:
            models = [spec for spec in _REGISTERED_MODELS if _provider_configured(spec)]
        self._models = models

    def candidates(self, requirements: ModelRequirements) -> list[ModelSpec]:
        """
        Eligible models, best first.

        Raises:
            RuntimeError: no configured model meets the requirements.
        """
        eligible = [spec for spec in self._models if _satisfies(spec, requirements)]
        if not eligible:
            raise RuntimeError(
                "No configured model accepts this call "
                f"(vision={requirements.require_vision}, json={requirements.require_json_mode}, "
                f"input_tokens={requirements.max_input_tokens})"
            )
        return sorted(eligible, key=_ORDERINGS[requirements.strategy])

    def select(self, requirements: ModelRequirements) -> ModelSpec:
        best = self.candidates(requirements)[0]
        logger.info(
            "Model selected | model=%s provider=%s strategy=%s vision=%s",
            best.model_id, best.provider.value, requirements.strategy.value, requirements.require_vision,
        )
        return best

    def build_llm(self, spec: ModelSpec, json_mode: bool = True) -> BaseChatModel:
        builders = {
            Provider.OPENAI:       self._openai,
            Provider.AZURE_OPENAI: self._azure_openai,
            Provider.OLLAMA:       self._ollama,
        }
        return builders[spec.provider](spec, json_mode)

    # -----------------------------------------------------------------------
    # LangChain chat models per provider
    # -----------------------------------------------------------------------

    @staticmethod
    def _json_kwargs(json_mode: bool) -> dict:
        return {"response_format": {"type": "json_object"}} if json_mode else {}

    @classmethod
    def _openai(cls, spec: ModelSpec, json_mode: bool) -> BaseChatModel:
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=spec.model_id,
            api_key=settings.openai_api_key,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            model_kwargs=cls._json_kwargs(json_mode),
        )

    @classmethod
    def _azure_openai(cls, spec: ModelSpec, json_mode: bool) -> BaseChatModel:
        from langchain_openai import AzureChatOpenAI
        return AzureChatOpenAI(
            azure_deployment=spec.model_id,
            azure_endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key,   # type: ignore[arg-type]
            api_version=settings.azure_openai_api_version,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            model_kwargs=cls._json_kwargs(json_mode),
        )

    @staticmethod
    def _ollama(spec: ModelSpec, json_mode: bool) -> BaseChatModel:
        from langchain_community.chat_models import ChatOllama
        return ChatOllama(
            model=spec.model_id,
            base_url=settings.ollama_base_url,
            temperature=settings.llm_temperature,
            format="json" if json_mode else None,
        )
