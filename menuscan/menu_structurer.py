# menuscan/menu_structurer.py
"""
Menu structuring: sends extracted menu text to a language model for
structured extraction into the StructuredMenu schema.

Usage:
    from menuscan.menu_structurer import TextStructurer, ClaudeStructuringProvider

    structurer = TextStructurer(ClaudeStructuringProvider(anthropic_client, model))
    menu = structurer.structure(extracted_text)

Exactly one model call per scan, deterministic prompt, temperature 0 and
JSON-only output. The reply is parsed strictly (menuscan.contracts); any
problem is a StructuringFailed and is not retried here.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Optional, Protocol

import anthropic
import openai

from .contracts import parse_structured_menu, summarize_menu
from .deadline import Deadline
from .errors import ProviderCallError, ProviderTimeout, StructuringFailed
from .scan_types import ExtractedText, StructuredMenu

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------
TARGET_SCHEMA = """\
{
  "restaurant": {"name": string | null, "location": string | null},
  "categories": [
    {
      "name": string,
      "dishes": [
        {
          "name": string,
          "description": string | null,
          "price": number | null,
          "dietary_tags": [string]
        }
      ]
    }
  ]
}"""

SYSTEM_PROMPT = """\
You are a restaurant menu data extraction expert. You receive raw text read \
from a photographed restaurant menu. The text may contain OCR artifacts, \
merged words and formatting noise.

Rules:
1. Return every dish a customer can order, grouped under the menu's own \
section headings, in the order they appear. Use "Other" when a dish has no heading.
2. "name" is required for every dish. Keep names as printed, fixing only obvious \
OCR typos.
3. "description" is the printed description or null.
4. "price" is the dish's base price as a number, or null when no price is printed.
5. "dietary_tags" lists only dietary markers that are explicitly printed for \
the dish (e.g. "vegan", "(V)", "(GF)"). Never infer tags from ingredients. \
Use an empty list when none are printed.
6. "restaurant" holds the restaurant name and location if printed, else nulls.
7. Output ONLY one JSON object matching the schema. No markdown, no explanation.\
"""

USER_PROMPT_TEMPLATE = """\
Target JSON schema:
{schema}

Extract the menu from this text:

---
{menu_text}
---"""


# ---------------------------------------------------------------------------
# Structuring providers
# ---------------------------------------------------------------------------
class StructuringProvider(Protocol):
    provider_id: str

    def complete_json(self, system: str, prompt: str, *, temperature: float, timeout: float) -> str: ...


class ClaudeStructuringProvider:
    def __init__(
        self,
        client: anthropic.Anthropic,
        model: str = "claude-sonnet-4-5-20250929",
        *,
        max_tokens: int = 16000,
    ):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.provider_id = f"anthropic:{model}"

    def complete_json(self, system: str, prompt: str, *, temperature: float, timeout: float) -> str:
        try:
            message = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
            )
        except anthropic.APITimeoutError as e:
            raise ProviderTimeout(f"{self.provider_id} timed out") from e
        except anthropic.APIStatusError as e:
            raise ProviderCallError(
                f"{self.provider_id} returned HTTP {e.status_code}", status=e.status_code, body=e.body
            ) from e
        except anthropic.APIConnectionError as e:
            raise ProviderCallError(f"{self.provider_id} connection failed: {e}") from e

        return "".join(block.text for block in (message.content or []) if hasattr(block, "text"))


class ChatCompletionStructuringProvider:
    def __init__(self, client: openai.OpenAI, model: str, *, provider_id: Optional[str] = None):
        self.client = client
        self.model = model
        self.provider_id = provider_id or f"openai:{model}"

    def complete_json(self, system: str, prompt: str, *, temperature: float, timeout: float) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                timeout=timeout,
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeout(f"{self.provider_id} timed out") from e
        except openai.APIStatusError as e:
            raise ProviderCallError(
                f"{self.provider_id} returned HTTP {e.status_code}", status=e.status_code, body=e.body
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderCallError(f"{self.provider_id} connection failed: {e}") from e

        choices = getattr(response, "choices", None)
        if not choices:
            raise ProviderCallError(f"{self.provider_id} returned no choices")
        return choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------
_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


def load_json_object(resp_text: str) -> Any:
    """json.loads the reply, tolerating only a surrounding markdown fence."""
    json_str = (resp_text or "").strip()
    if not json_str:
        raise StructuringFailed("structuring model returned an empty response")
    if json_str.startswith("```"):
        json_str = _FENCE_OPEN_RE.sub("", json_str)
        json_str = _FENCE_CLOSE_RE.sub("", json_str)
    try:
        return json.loads(json_str)
    except json.JSONDecodeError as e:
        raise StructuringFailed(f"structuring model returned invalid JSON: {e}") from e


# ---------------------------------------------------------------------------
# TextStructurer
# ---------------------------------------------------------------------------
class TextStructurer:
    def __init__(
        self,
        provider: StructuringProvider,
        *,
        temperature: float = 0.0,
        timeout: float = 60.0,
        max_chars: int = 30_000,
    ):
        self.provider = provider
        self.temperature = temperature
        self.timeout = timeout
        self.max_chars = max_chars

    def build_prompt(self, menu_text: str) -> str:
        # ~4 chars per token; leave room for the schema + response
        text = menu_text.strip()
        if len(text) > self.max_chars:
            text = text[: self.max_chars] + "\n[... truncated ...]"
        return USER_PROMPT_TEMPLATE.format(schema=TARGET_SCHEMA, menu_text=text)

    def structure(self, extracted: ExtractedText, deadline: Optional[Deadline] = None) -> StructuredMenu:
        deadline = deadline or Deadline()
        deadline.check("structuring")

        pid = self.provider.provider_id
        started = time.monotonic()
        try:
            resp_text = self.provider.complete_json(
                SYSTEM_PROMPT,
                self.build_prompt(extracted.text),
                temperature=self.temperature,
                timeout=deadline.bound(self.timeout),
            )
        except ProviderTimeout as e:
            raise StructuringFailed(f"structuring provider timed out: {e}", provider_id=pid) from e
        except ProviderCallError as e:
            raise StructuringFailed(
                f"structuring provider failed: {e}", provider_id=pid, status=e.status
            ) from e
        except Exception as e:  # SDK validation errors, unexpected response shapes
            log.warning("Structuring provider %s raised %s", pid, type(e).__name__)
            raise StructuringFailed(
                f"structuring provider failed: {type(e).__name__}: {e}", provider_id=pid
            ) from e

        try:
            menu = parse_structured_menu(load_json_object(resp_text), source_text=extracted.text)
        except StructuringFailed as e:
            e.provider_id = e.provider_id or pid
            log.warning("Structuring via %s failed: %s %s", pid, e.detail, e.errors[:5])
            raise

        log.info(
            "Structured menu via %s in %.0fms: %s",
            pid, (time.monotonic() - started) * 1000, summarize_menu(menu),
        )
        return menu
