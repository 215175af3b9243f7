"""
LLM Gateway — Unified Entry Point for all Reasoning Calls

The gateway is the single call site for the classifier adapter. It composes:

  ┌─────────────────────────────────────────────────────┐
  │  LLMGateway.invoke()                                │
  │       │                                             │
  │       ▼                                             │
  │  build_messages()            ← text + attachments   │
  │       │                                             │
  │       ▼                                             │
  │  FallbackChain.ainvoke()     ← routing + failover   │
  │       │                                             │
  │       ▼                                             │
  │  GatewayResponse             ← content + telemetry  │
  └─────────────────────────────────────────────────────┘

Attachments (raw file bytes) are sent inline as base64 data URLs:
images as image_url blocks, PDFs as file blocks. Any attachment switches
routing to vision-capable models.

Usage::

    gateway  = LLMGateway()
    response = await gateway.invoke(
        system_prompt=SYSTEM,
        user_prompt=prompt,
        attachment=Attachment(data=file_bytes, mime_type="image/png"),
    )
"""

from __future__ import annotations

import base64
import logging
import time
import uuid
from dataclasses import dataclass

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from app.core.config import settings
from app.llm.fallback import FallbackChain
from app.llm.router import ModelRequirements, ModelRouter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Attachment:
    """A file sent inline with the prompt."""
    data:      bytes
    mime_type: str
    filename:  str = "document"

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class GatewayResponse:
    """The result of a single gateway call."""
    content:       str
    model_used:    str
    provider:      str
    input_tokens:  int
    output_tokens: int
    latency_ms:    float
    request_id:    str


def _estimate_tokens(messages: list[BaseMessage]) -> int:
    """
    Rough token count: 4 chars ≈ 1 token.
    Only text blocks are counted; attachments are ignored.
    """
    total = 0
    for m in messages:
        if isinstance(m.content, str):
            total += len(m.content)
        else:
            total += sum(len(b.get("text", "")) for b in m.content if isinstance(b, dict))
    return max(1, total // 4)


# ---------------------------------------------------------------------------
# LLMGateway
# ---------------------------------------------------------------------------

class LLMGateway:
    """
    Provider-agnostic LLM interface with routing and fallback.

    Instantiate once per application or per request; safe for concurrent use.
    """

    def __init__(self, router: ModelRouter | None = None) -> None:
        self._router = router or ModelRouter()

    async def invoke(
        self,
        system_prompt: str,
        user_prompt:   str,
        attachment:    Attachment | None = None,
        requirements:  ModelRequirements | None = None,
    ) -> GatewayResponse:
        """
        Run one reasoning call.

        Raises:
            ExternalServiceError: if no provider produced an answer.
        """
        messages = self.build_messages(system_prompt, user_prompt, attachment)
        reqs = requirements or ModelRequirements(require_vision=attachment is not None)
        chain = FallbackChain(
            requirements=reqs,
            router=self._router,
            per_attempt_timeout=settings.llm_timeout_seconds,
        )

        t0 = time.perf_counter()
        content, spec = await chain.ainvoke(messages)
        latency = (time.perf_counter() - t0) * 1000

        response = GatewayResponse(
            content       = content,
            model_used    = spec.model_id,
            provider      = spec.provider.value,
            input_tokens  = _estimate_tokens(messages),
            output_tokens = max(1, len(content) // 4),
            latency_ms    = latency,
            request_id    = str(uuid.uuid4()),
        )
        logger.info(
            "LLMGateway | model=%s provider=%s attachment=%s tokens_in=%d tokens_out=%d latency_ms=%.1f",
            response.model_used, response.provider,
            attachment.mime_type if attachment else "-",
            response.input_tokens, response.output_tokens, response.latency_ms,
        )
        return response

    @staticmethod
    def build_messages(
        system_prompt: str,
        user_prompt:   str,
        attachment:    Attachment | None = None,
    ) -> list[BaseMessage]:
        """Build [SystemMessage, HumanMessage], inlining the attachment if any."""
        if attachment is None:
            human = HumanMessage(content=user_prompt)
        elif attachment.mime_type.startswith("image/"):
            human = HumanMessage(content=[
                {"type": "image_url", "image_url": {"url": attachment.data_url()}},
                {"type": "text", "text": user_prompt},
            ])
        else:
            human = HumanMessage(content=[
                {
                    "type": "file",
                    "file": {"filename": attachment.filename, "file_data": attachment.data_url()},
                },
                {"type": "text", "text": user_prompt},
            ])
        return [SystemMessage(content=system_prompt), human]
