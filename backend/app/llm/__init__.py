"""
LLM package — model routing, provider fallback and the gateway used by the
classifier adapter.
"""

from app.llm.gateway import Attachment, GatewayResponse, LLMGateway
from app.llm.router import ModelRequirements, ModelRouter, RoutingStrategy

__all__ = [
    "Attachment",
    "GatewayResponse",
    "LLMGateway",
    "ModelRequirements",
    "ModelRouter",
    "RoutingStrategy",
]
