"""
Text Extraction Orchestrator
════════════════════════════

Runs the quality-gated cascade over the two OCR strategies.

Strategy selection flow:
  1.  Run the standard strategy (Mistral OCR)
  2.  Quality gate:
        - reject if fewer than MIN_TEXT_CHARS characters
        - otherwise accept iff at least MIN_VALUE_LINE_RATIO of the lines
          carry a value (digits, e-mail, amount or date)
  3a. Accepted                      → standard result
  3b. Rejected, vision can't read it → standard result anyway (a PDF has
                                       no alternative; logged as degraded)
  3c. Rejected, single image        → vision result

This module is the only place that knows about the cascade. The pipeline
only sees TextExtractionResult.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from app.core.config import settings
from app.processing.ocr import (
    BaseTextExtractor,
    ExtractionStrategyResult,
    MistralOCRExtractor,
    PixtralVisionExtractor,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Quality gate
# ---------------------------------------------------------------------------

MIN_TEXT_CHARS       = 100
MIN_VALUE_LINE_RATIO = 0.20

VALUE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\d{2,}"),                       # runs of digits
    re.compile(r"@"),                            # e-mail addresses
    re.compile(r"\$\s*\d+"),                     # amounts
    re.compile(r"\d{1,2}/\d{1,2}/\d{2,4}"),      # dd/mm/yyyy
    re.compile(r"\d{4}-\d{2}-\d{2}"),            # ISO dates
)


def value_line_ratio(text: str) -> float:
    """Fraction of lines matching at least one value pattern."""
    lines = text.split("\n")
    if not lines:
        return 0.0
    with_values = sum(
        1 for line in lines
        if any(p.search(line) for p in VALUE_PATTERNS)
    )
    return with_values / len(lines)


def passes_quality_gate(text: str) -> bool:
    """True when the text looks like it kept the document's values."""
    if len(text) < MIN_TEXT_CHARS:
        return False
    return value_line_ratio(text) >= MIN_VALUE_LINE_RATIO


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class TextExtractionResult:
    """
    Extraction output returned to the pipeline.

    text       : full text (pages joined by PAGE_SEPARATOR)
    confidence : strategy confidence (0–1)
    method     : "standard" | "vision"
    model      : provider model id
    degraded   : True when the gate rejected the text but no alternative existed
    """
    text:       str
    confidence: float
    method:     str
    model:      str = ""
    degraded:   bool = False

    @classmethod
    def from_strategy(cls, result: ExtractionStrategyResult, degraded: bool = False) -> "TextExtractionResult":
        return cls(
            text=result.full_text,
            confidence=result.confidence,
            method=result.strategy_name,
            model=result.model,
            degraded=degraded,
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TextExtractor:
    """
    Stateless orchestrator: select and execute the right extraction strategy.

    Usage:
        extractor = build_text_extractor()
        result = await extractor.extract(public_url, "image/png")
    """

    def __init__(
        self,
        standard: BaseTextExtractor,
        vision:   BaseTextExtractor | None = None,
    ) -> None:
        self._standard = standard
        self._vision   = vision

    def supports(self, mime_type: str) -> bool:
        """True if the layout-aware fallback can read this MIME type."""
        return self._vision is not None and self._vision.supports(mime_type)

    async def extract_standard(self, file_url: str, mime_type: str) -> TextExtractionResult:
        return TextExtractionResult.from_strategy(await self._standard.extract(file_url, mime_type))

    async def extract_vision(self, file_url: str, mime_type: str) -> TextExtractionResult:
        if self._vision is None:
            raise RuntimeError("No vision strategy configured")
        return TextExtractionResult.from_strategy(await self._vision.extract(file_url, mime_type))

    async def extract(self, file_url: str, mime_type: str) -> TextExtractionResult:
        """
        Execute the cascade and return a single TextExtractionResult.

        ┌────────────────────────────────────────────────────────────┐
        │  1. standard ──► gate passes? ── YES → standard ✓          │
        │                       │                                    │
        │                       NO                                   │
        │                       │                                    │
        │  2. vision supports mime? ── NO  → standard (degraded)     │
        │                       │                                    │
        │                       YES → vision ✓                       │
        └────────────────────────────────────────────────────────────┘
        """
        # ── Step 1: standard OCR ─────────────────────────────────────────
        standard = await self._standard.extract(file_url, mime_type)
        text = standard.full_text

        if passes_quality_gate(text):
            logger.info(
                "Extraction | method=standard chars=%d value_ratio=%.2f gate=pass",
                len(text), value_line_ratio(text),
            )
            return TextExtractionResult.from_strategy(standard)

        # ── Step 2: gate rejected the text ───────────────────────────────
        if not self.supports(mime_type):
            logger.warning(
                "Extraction | method=standard chars=%d value_ratio=%.2f gate=fail "
                "mime=%s no_vision_fallback=true",
                len(text), value_line_ratio(text), mime_type,
            )
            return TextExtractionResult.from_strategy(standard, degraded=True)

        logger.info(
            "Extraction | gate=fail chars=%d value_ratio=%.2f fallback=vision",
            len(text), value_line_ratio(text),
        )
        vision = await self._vision.extract(file_url, mime_type)   # type: ignore[union-attr]
        return TextExtractionResult.from_strategy(vision)


def build_text_extractor() -> TextExtractor:
    """TextExtractor wired to the Mistral endpoints from settings."""
    common = {
        "api_key":  settings.mistral_api_key,
        "base_url": settings.mistral_api_url,
        "timeout":  settings.ocr_timeout_seconds,
    }
    return TextExtractor(
        standard=MistralOCRExtractor(model=settings.mistral_ocr_model, **common),
        vision=PixtralVisionExtractor(model=settings.mistral_vision_model, **common),
    )
