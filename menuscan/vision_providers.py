# menuscan/vision_providers.py
"""
Vision extraction providers used by the extraction cascade.

Every provider exposes the same small surface:

    provider.provider_id                         -> "openrouter:openai/gpt-4o"
    provider.extract_text(image, timeout=45.0)   -> raw menu text

and reports failure only through ProviderTimeout / ProviderCallError, so the
cascade can treat hosted models and local Tesseract the same way.

Clients (OpenAI / Anthropic SDK handles) are built once by the caller and
passed in; nothing here keeps module-level client state.
"""

from __future__ import annotations

import io
import logging
import time
from typing import Any, Optional, Protocol

import anthropic
import openai
import pytesseract
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ProviderCallError, ProviderTimeout
from .scan_types import RawImage

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------
EXTRACTION_PROMPT = """\
You are reading a photograph of a restaurant menu.

Transcribe ALL text you can see on the menu, top to bottom, left column before \
right column. Keep section headings, dish names, descriptions, prices and any \
dietary markers or legends (e.g. "(V)", "(GF)", "vegan") exactly as printed. \
Keep each dish on its own line with its price. Include the restaurant name and \
address if they are visible.

Do not summarize, translate, correct or add anything. Output plain text only, \
no markdown and no commentary.\
"""


class VisionProvider(Protocol):
    provider_id: str

    def extract_text(self, image: RawImage, *, timeout: float) -> str: ...


def _status_body(exc: Any) -> Any:
    body = getattr(exc, "body", None)
    if body is None:
        response = getattr(exc, "response", None)
        body = getattr(response, "text", None)
    return body


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completion (OpenAI, OpenRouter, ...)
# ---------------------------------------------------------------------------
class ChatCompletionVisionProvider:
    """Any endpoint speaking the chat-completions protocol via the openai SDK."""

    def __init__(
        self,
        client: openai.OpenAI,
        model: str,
        *,
        provider_id: Optional[str] = None,
        max_tokens: int = 4000,
        temperature: float = 0.0,
    ):
        self.client = client
        self.model = model
        self.provider_id = provider_id or f"openai:{model}"
        self.max_tokens = max_tokens
        self.temperature = temperature

    def extract_text(self, image: RawImage, *, timeout: float) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": EXTRACTION_PROMPT},
                        {"type": "image_url", "image_url": {"url": image.data_uri()}},
                    ],
                }],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                timeout=timeout,
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeout(f"{self.provider_id} timed out after {timeout:.1f}s") from e
        except openai.APIStatusError as e:
            raise ProviderCallError(
                f"{self.provider_id} returned HTTP {e.status_code}",
                status=e.status_code,
                body=_status_body(e),
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderCallError(f"{self.provider_id} connection failed: {e}") from e

        # OpenRouter reports some upstream failures as a 200 without choices.
        choices = getattr(response, "choices", None)
        if not choices:
            raise ProviderCallError(
                f"{self.provider_id} returned no choices",
                body=getattr(response, "error", None),
            )
        return choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------
class ClaudeVisionProvider:
    def __init__(
        self,
        client: anthropic.Anthropic,
        model: str,
        *,
        provider_id: Optional[str] = None,
        max_tokens: int = 4000,
        temperature: float = 0.0,
    ):
        self.client = client
        self.model = model
        self.provider_id = provider_id or f"anthropic:{model}"
        self.max_tokens = max_tokens
        self.temperature = temperature

    def extract_text(self, image: RawImage, *, timeout: float) -> str:
        try:
            message = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": image.media_type,
                                "data": image.b64(),
                            },
                        },
                        {"type": "text", "text": EXTRACTION_PROMPT},
                    ],
                }],
                timeout=timeout,
            )
        except anthropic.APITimeoutError as e:
            raise ProviderTimeout(f"{self.provider_id} timed out after {timeout:.1f}s") from e
        except anthropic.APIStatusError as e:
            raise ProviderCallError(
                f"{self.provider_id} returned HTTP {e.status_code}",
                status=e.status_code,
                body=_status_body(e),
            ) from e
        except anthropic.APIConnectionError as e:
            raise ProviderCallError(f"{self.provider_id} connection failed: {e}") from e

        return "".join(
            block.text for block in (message.content or []) if hasattr(block, "text")
        )


# ---------------------------------------------------------------------------
# Local Tesseract
# ---------------------------------------------------------------------------
# Primary config (preserve spaces helps dot-leaders & wide gaps)
OCR_CONFIG_MAIN = "--oem 3 --psm 6 -c preserve_interword_spaces=1"


def _prepare_for_tesseract(img: Image.Image) -> Image.Image:
    """EXIF-orient, grayscale, stretch contrast, upscale small photos."""
    img = ImageOps.exif_transpose(img)
    img = ImageOps.grayscale(img)
    img = ImageOps.autocontrast(img)
    w, h = img.size
    if min(w, h) < 900:
        img = img.resize((int(w * 1.5), int(h * 1.5)))
    return img


class TesseractVisionProvider:
    def __init__(
        self,
        *,
        lang: str = "eng",
        config: str = OCR_CONFIG_MAIN,
        tesseract_cmd: Optional[str] = None,
        provider_id: Optional[str] = None,
    ):
        self.lang = lang
        self.config = config
        self.provider_id = provider_id or f"tesseract:{lang}"
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def extract_text(self, image: RawImage, *, timeout: float) -> str:
        started = time.monotonic()
        try:
            with Image.open(io.BytesIO(image.data)) as img:
                prepared = _prepare_for_tesseract(img)
        except (UnidentifiedImageError, OSError) as e:
            raise ProviderCallError(f"{self.provider_id} could not read image: {e}") from e

        # pytesseract treats a non-positive timeout as "no limit"
        left = max(0.1, timeout - (time.monotonic() - started))
        try:
            return pytesseract.image_to_string(
                prepared, lang=self.lang, config=self.config, timeout=left
            )
        except pytesseract.TesseractNotFoundError as e:
            raise ProviderCallError(f"{self.provider_id}: tesseract is not installed") from e
        except pytesseract.TesseractError as e:
            raise ProviderCallError(
                f"{self.provider_id} failed: {e.message}", status=e.status
            ) from e
        except RuntimeError as e:
            if "timeout" in str(e).lower():
                raise ProviderTimeout(f"{self.provider_id} timed out after {timeout:.1f}s") from e
            raise ProviderCallError(f"{self.provider_id} failed: {e}") from e


def tesseract_available() -> bool:
    try:
        pytesseract.get_tesseract_version()
        return True
    except (pytesseract.TesseractNotFoundError, OSError) as e:
        log.info("Tesseract not available: %s", e)
        return False
