"""
OCR Strategy Pattern  —  Text Extraction from PDFs and Images
═════════════════════════════════════════════════════════════

Design: Strategy
────────────────
Two strategies share one interface; the quality-gated cascade lives in
processing/extractor.py.

  Strategy 1: Mistral OCR ("standard")
    - Structured document OCR endpoint (POST /v1/ocr)
    - Accepts PDFs (document_url) and single images (image_url)
    - Returns markdown per page; pages are joined with PAGE_SEPARATOR
    - Fast, but flattens label/value layouts on forms and receipts

  Strategy 2: Pixtral vision ("vision")
    - Multimodal chat completion with a layout-preserving prompt
    - Single images only: the chat endpoint does not paginate PDFs
    - Slower; reads "Label: value" pairs next to or below each label

Both strategies fetch the document themselves from a public URL, so callers
pass a file reference, never raw bytes.

Failure model:
  Unlike a best-effort cascade, a failed call is NOT swallowed: any
  transport or HTTP error, and any empty result, raises ExternalServiceError.
  No retries happen here.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from app.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

PAGE_SEPARATOR = "\n\n--- PÁGINA ---\n\n"

STANDARD_CONFIDENCE = 0.95
VISION_CONFIDENCE   = 0.90

PDF_MIME = "application/pdf"

VISION_PROMPT = """Analiza este documento cuidadosamente y extrae TODO el texto visible.

**INSTRUCCIONES IMPORTANTES:**
1. Respeta el LAYOUT original (columnas, tablas, secciones)
2. Para cada ETIQUETA (campo), busca su VALOR correspondiente
3. Si ves un campo como "Tu nombre:", busca el valor a su derecha o debajo
4. Extrae TODAS las cantidades monetarias, fechas y números
5. Mantén la estructura del documento (usa markdown si es necesario)

**FORMATO DE SALIDA:**
Para cada par etiqueta-valor, escribe:
[ETIQUETA]: [VALOR]

Extrae TODO el contenido visible del documento."""


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text extracted from a single page.

    page_number : 1-based page index
    text        : raw extracted text (markdown for the standard strategy)
    """
    page_number: int
    text:        str


@dataclass
class ExtractionStrategyResult:
    """
    Full result from a single strategy run.

    pages         : list of PageText (one per page; vision returns one)
    strategy_name : which strategy produced this result
    confidence    : fixed per-strategy confidence (0.0–1.0)
    model         : provider model id used
    elapsed_ms    : wall-clock time for the strategy (ms)
    """
    pages:         list[PageText]
    strategy_name: str
    confidence:    float
    model:         str
    elapsed_ms:    float = 0.0
    metadata:      dict = field(default_factory=dict)

    @property
    def full_text(self) -> str:
        """Concatenate non-empty pages with the page separator."""
        return PAGE_SEPARATOR.join(p.text for p in self.pages if p.text.strip())

    @property
    def total_chars(self) -> int:
        return sum(len(p.text) for p in self.pages)


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Abstract base for text extraction strategies.

    All implementations:
      - Accept a public file URL plus its MIME type
      - Return ExtractionStrategyResult with non-empty text
      - Raise ExternalServiceError on any failure
      - Are safe for concurrent use (no shared mutable state)
    """

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging and the stored extraction method."""

    @abstractmethod
    def supports(self, mime_type: str) -> bool:
        """True if this strategy can read files of the given MIME type."""

    @abstractmethod
    async def extract(self, file_url: str, mime_type: str) -> ExtractionStrategyResult:
        """Extract text from the document behind file_url."""


class _MistralHTTPExtractor(BaseTextExtractor):
    """Shared HTTP plumbing for the two Mistral endpoints."""

    def __init__(
        self,
        api_key:   str,
        model:     str,
        base_url:  str = "https://api.mistral.ai/v1",
        timeout:   float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key   = api_key
        self._model     = model
        self._base_url  = base_url.rstrip("/")
        self._timeout   = timeout
        self._transport = transport   # injected in tests (httpx.MockTransport)

    async def _post(self, path: str, payload: dict) -> dict:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type":  "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self._base_url}{path}", json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "%s | HTTP %d from %s: %s",
                self.strategy_name, exc.response.status_code, path, exc.response.text[:500],
            )
            raise ExternalServiceError(
                self.strategy_name, f"HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("%s | request to %s failed: %s", self.strategy_name, path, exc)
            raise ExternalServiceError(self.strategy_name, str(exc)) from exc


# ---------------------------------------------------------------------------
# Strategy 1: Mistral OCR
# ---------------------------------------------------------------------------

class MistralOCRExtractor(_MistralHTTPExtractor):
    """
    Standard mode: Mistral's document OCR endpoint.

    Response structure: {"pages": [{"index": 0, "markdown": "..."}, ...]}
    """

    @property
    def strategy_name(self) -> str:
        return "standard"

    def supports(self, mime_type: str) -> bool:
        return mime_type == PDF_MIME or mime_type.startswith("image/")

    async def extract(self, file_url: str, mime_type: str) -> ExtractionStrategyResult:
        t0 = time.monotonic()

        if mime_type == PDF_MIME:
            document = {"type": "document_url", "document_url": file_url}
        else:
            document = {"type": "image_url", "image_url": file_url}

        body = await self._post("/ocr", {
            "model":                self._model,
            "document":             document,
            "include_image_base64": False,
        })

        pages = [
            PageText(page_number=i, text=(page.get("markdown") or page.get("text") or "").strip())
            for i, page in enumerate(body.get("pages") or [], start=1)
        ]
        result = ExtractionStrategyResult(
            pages=pages,
            strategy_name=self.strategy_name,
            confidence=STANDARD_CONFIDENCE,
            model=self._model,
            elapsed_ms=(time.monotonic() - t0) * 1000,
            metadata={"pages_processed": len(pages)},
        )

        if not result.full_text.strip():
            raise ExternalServiceError(self.strategy_name, "OCR returned no text")

        logger.info(
            "MistralOCR | mime=%s pages=%d total_chars=%d elapsed_ms=%.0f",
            mime_type, len(pages), result.total_chars, result.elapsed_ms,
        )
        return result


# ---------------------------------------------------------------------------
# Strategy 2: Pixtral vision
# ---------------------------------------------------------------------------

class PixtralVisionExtractor(_MistralHTTPExtractor):
    """
    Layout-aware mode: multimodal chat completion over a single image.

    The chat endpoint may answer with a plain string or a list of content
    chunks; both are flattened to one text block.
    """

    @property
    def strategy_name(self) -> str:
        return "vision"

    def supports(self, mime_type: str) -> bool:
        return mime_type.startswith("image/")

    async def extract(self, file_url: str, mime_type: str) -> ExtractionStrategyResult:
        if not self.supports(mime_type):
            raise ExternalServiceError(self.strategy_name, f"unsupported mime type {mime_type}")

        t0 = time.monotonic()
        body = await self._post("/chat/completions", {
            "model": self._model,
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "text", "text": VISION_PROMPT},
                    {"type": "image_url", "image_url": file_url},
                ],
            }],
        })

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExternalServiceError(self.strategy_name, "malformed chat response") from exc

        if isinstance(content, list):
            content = "".join(chunk.get("text", "") for chunk in content if isinstance(chunk, dict))
        text = (content or "").strip()

        if not text:
            raise ExternalServiceError(self.strategy_name, "vision model returned no text")

        result = ExtractionStrategyResult(
            pages=[PageText(page_number=1, text=text)],
            strategy_name=self.strategy_name,
            confidence=VISION_CONFIDENCE,
            model=self._model,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "PixtralVision | mime=%s total_chars=%d elapsed_ms=%.0f",
            mime_type, result.total_chars, result.elapsed_ms,
        )
        return result
