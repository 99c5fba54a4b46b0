"""Vision-model OCR provider.

Sends each rasterized page to an OpenAI-compatible chat endpoint with a
vision-capable model (``gpt-4o-mini``, ``qwen-vl-ocr`` via DashScope
compatible mode, ...) and asks for a verbatim transcription.
"""

from __future__ import annotations

import base64
import time

import openai

from kb_ingest.config.settings import Settings
from kb_ingest.interfaces.ocr_provider import IOCRProvider
from kb_ingest.utils.errors import OCRExtractionError
from kb_ingest.utils.logging import get_logger

_TRANSCRIBE_PROMPT = """\
Transcribe all text on this document page exactly as printed.
Keep the original language (Chinese text stays Chinese) and the reading order.
Put each printed line on its own output line. Reproduce table rows as lines
with cells separated by spaces.
Do not translate, summarize, explain or add any text that is not on the page.
If the page has no text, return nothing."""


def _detect_media_type(image_data: bytes) -> str:
    if image_data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if image_data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    return "image/png"


class VisionOCRProvider(IOCRProvider):
    """OCR provider backed by a vision-capable chat model."""

    def __init__(self, settings: Settings, client: openai.AsyncOpenAI | None = None) -> None:
        self._api_key = settings.openai_api_key
        self._model = settings.ocr_vision_model
        if client is None:
            client_kwargs: dict = {
                "api_key": self._api_key or "missing",
                "timeout": settings.ocr_timeout_seconds,
            }
            if settings.openai_base_url:
                client_kwargs["base_url"] = settings.openai_base_url
            client = openai.AsyncOpenAI(**client_kwargs)
        self._client = client
        self._logger = get_logger(__name__)

    async def extract_page_text(self, image_data: bytes, page_number: int) -> str:
        start = time.perf_counter()
        b64 = base64.b64encode(image_data).decode("utf-8")
        media_type = _detect_media_type(image_data)
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": _TRANSCRIBE_PROMPT},
                            {
                                "type": "image_url",
                                "image_url": {"url": f"data:{media_type};base64,{b64}"},
                            },
                        ],
                    }
                ],
                temperature=0,
            )
        except openai.APIError as exc:
            raise OCRExtractionError(
                message=f"Vision OCR failed on page {page_number}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        if not response.choices:
            raise OCRExtractionError(
                message=f"Vision OCR returned no choices for page {page_number}",
                provider_name=self.get_provider_name(),
            )
        text = response.choices[0].message.content or ""

        self._logger.info(
            "vision_ocr_page",
            page=page_number,
            model=self._model,
            chars=len(text),
            elapsed_s=round(time.perf_counter() - start, 2),
            tokens=response.usage.total_tokens if response.usage else None,
        )
        return text

    def get_provider_name(self) -> str:
        return "vision_ocr"

    def is_available(self) -> bool:
        return bool(self._api_key and self._model)
