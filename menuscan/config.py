# menuscan/config.py
"""
Runtime settings, read from the environment (and an optional .env file).

    settings = Settings.from_env()
    settings.vision_cascade      -> [ProviderSpec("openrouter", "openai/gpt-4o"), ...]

Nothing here is a module-level singleton: callers build a Settings once and
hand it to build_pipeline() / create_app().
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional, Union

from dotenv import dotenv_values

from .db import DEFAULT_DB_PATH
from .vision_providers import OCR_CONFIG_MAIN

log = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]

PROVIDER_KINDS = ("openai", "openrouter", "anthropic", "tesseract")

DEFAULT_VISION_CASCADE = "openrouter:openai/gpt-4o,openrouter:anthropic/claude-3.5-sonnet,tesseract:eng"
DEFAULT_STRUCTURING_PROVIDER = "anthropic:claude-sonnet-4-5-20250929"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass(frozen=True)
class ProviderSpec:
    kind: str
    model: str

    @property
    def provider_id(self) -> str:
        return f"{self.kind}:{self.model}"

    @classmethod
    def parse(cls, raw: str) -> "ProviderSpec":
        """'openrouter:openai/gpt-4o' -> ProviderSpec('openrouter', 'openai/gpt-4o')."""
        kind, sep, model = (raw or "").strip().partition(":")
        kind = kind.strip().lower()
        model = model.strip()
        if not sep or not model:
            raise ValueError(f"provider spec {raw!r} must look like 'kind:model'")
        if kind not in PROVIDER_KINDS:
            raise ValueError(f"unknown provider kind {kind!r} (expected one of {', '.join(PROVIDER_KINDS)})")
        return cls(kind, model)

    @classmethod
    def parse_list(cls, raw: str) -> List["ProviderSpec"]:
        return [cls.parse(part) for part in (raw or "").split(",") if part.strip()]


def _float(env: Mapping[str, str], key: str, default: Optional[float]) -> Optional[float]:
    val = (env.get(key) or "").strip()
    if not val:
        return default
    try:
        return float(val)
    except ValueError as e:
        raise ValueError(f"{key} must be a number, got {val!r}") from e


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    val = (env.get(key) or "").strip()
    if not val:
        return default
    try:
        return int(val)
    except ValueError as e:
        raise ValueError(f"{key} must be an integer, got {val!r}") from e


@dataclass(frozen=True)
class Settings:
    db_path: Path = DEFAULT_DB_PATH
    vision_cascade: List[ProviderSpec] = field(
        default_factory=lambda: ProviderSpec.parse_list(DEFAULT_VISION_CASCADE)
    )
    vision_attempt_timeout: float = 45.0
    pipeline_timeout: Optional[float] = None
    structuring_provider: ProviderSpec = field(
        default_factory=lambda: ProviderSpec.parse(DEFAULT_STRUCTURING_PROVIDER)
    )
    structuring_temperature: float = 0.0
    structuring_timeout: float = 60.0
    dish_batch_size: int = 10
    dish_batch_retries: int = 0
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = OPENROUTER_BASE_URL
    anthropic_api_key: Optional[str] = None
    tesseract_cmd: Optional[str] = None
    tesseract_config: str = OCR_CONFIG_MAIN
    max_upload_mb: int = 20

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Union[str, Path]] = None,
    ) -> "Settings":
        """
        Build settings from `env` (default: os.environ). Values from the .env
        file fill in only what the environment does not already set; the
        project .env is read only when `env` is not given explicitly.
        """
        merged = {}
        path = Path(dotenv_path) if dotenv_path else (ROOT / ".env" if env is None else None)
        if path is not None and path.exists():
            merged.update({k: v for k, v in dotenv_values(path).items() if v is not None})
        merged.update(os.environ if env is None else env)

        return cls(
            db_path=Path(merged.get("MENUSCAN_DB_PATH") or DEFAULT_DB_PATH),
            vision_cascade=ProviderSpec.parse_list(merged.get("VISION_CASCADE") or DEFAULT_VISION_CASCADE),
            vision_attempt_timeout=_float(merged, "VISION_ATTEMPT_TIMEOUT", 45.0),
            pipeline_timeout=_float(merged, "PIPELINE_TIMEOUT", None),
            structuring_provider=ProviderSpec.parse(
                merged.get("STRUCTURING_PROVIDER") or DEFAULT_STRUCTURING_PROVIDER
            ),
            structuring_temperature=_float(merged, "STRUCTURING_TEMPERATURE", 0.0),
            structuring_timeout=_float(merged, "STRUCTURING_TIMEOUT", 60.0),
            dish_batch_size=_int(merged, "DISH_BATCH_SIZE", 10),
            dish_batch_retries=_int(merged, "DISH_BATCH_RETRIES", 0),
            openai_api_key=merged.get("OPENAI_API_KEY") or None,
            openai_base_url=merged.get("OPENAI_BASE_URL") or None,
            openrouter_api_key=merged.get("OPENROUTER_API_KEY") or None,
            openrouter_base_url=merged.get("OPENROUTER_BASE_URL") or OPENROUTER_BASE_URL,
            anthropic_api_key=merged.get("ANTHROPIC_API_KEY") or None,
            tesseract_cmd=merged.get("TESSERACT_CMD") or None,
            tesseract_config=merged.get("TESSERACT_CONFIG") or OCR_CONFIG_MAIN,
            max_upload_mb=_int(merged, "MAX_UPLOAD_MB", 20),
        )

    def api_key_for(self, kind: str) -> Optional[str]:
        return {
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
            "anthropic": self.anthropic_api_key,
        }.get(kind)
