# menuscan/scan_pipeline.py
"""
Scan pipeline: photo in, persisted canonical menu out.

    image bytes -> image_digest
                -> extraction cascade      (raw text)
                -> structurer              (StructuredMenu)
                -> content_digest
                -> dedup + persistence     (ScanResult)

Usage:
    settings = Settings.from_env()
    pipeline = build_pipeline(settings)
    result = pipeline.run(RawImage(data, "image/jpeg"), user_id="u-123")
    result.to_dict()   # {"scanId", "method", "canonicalId", "dishCount", "newDishes"}

Extraction and structuring failures are fatal before anything is written.
The deadline is honored up to the start of persistence; once writes begin
they run to completion.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import anthropic
import openai

from .cascade import ModelCascadeExecutor
from .config import ProviderSpec, Settings
from .db import Database
from .deadline import Deadline
from .errors import ScanError
from .hashing import content_digest, image_digest
from .menu_structurer import (
    ChatCompletionStructuringProvider,
    ClaudeStructuringProvider,
    StructuringProvider,
    TextStructurer,
)
from .persistence import PersistenceCoordinator
from .scan_types import RawImage
from .vision_providers import (
    ChatCompletionVisionProvider,
    ClaudeVisionProvider,
    TesseractVisionProvider,
    VisionProvider,
)

log = logging.getLogger(__name__)


@dataclass
class ScanResult:
    scan_id: str
    method: str
    canonical_id: str
    dish_count: int
    new_dishes: bool
    existing_scan: Optional[Dict[str, Any]] = None
    provider_id: Optional[str] = None
    failed_batches: List[int] = field(default_factory=list)
    timings_ms: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "scanId": self.scan_id,
            "method": self.method,
            "canonicalId": self.canonical_id,
            "dishCount": self.dish_count,
            "newDishes": self.new_dishes,
        }
        if self.existing_scan is not None:
            out["existingScan"] = {
                "id": self.existing_scan.get("id"),
                "scannedAt": self.existing_scan.get("scanned_at"),
            }
        return out


class PipelineOrchestrator:
    def __init__(
        self,
        cascade: ModelCascadeExecutor,
        structurer: TextStructurer,
        persistence: PersistenceCoordinator,
        *,
        default_timeout: Optional[float] = None,
    ):
        self.cascade = cascade
        self.structurer = structurer
        self.persistence = persistence
        self.default_timeout = default_timeout

    def run(
        self,
        image: RawImage,
        user_id: str,
        *,
        email: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> ScanResult:
        if not user_id:
            raise ValueError("user_id is required")
        deadline = deadline or Deadline(self.default_timeout)
        timings: Dict[str, float] = {}

        def _mark(stage: str, t0: float) -> None:
            timings[stage] = round((time.monotonic() - t0) * 1000, 1)

        try:
            t0 = time.monotonic()
            image_hash = image_digest(image.data)

            extracted = self.cascade.extract(image, deadline)
            _mark("extraction", t0)
            log.info("Extracted text for user %s: %s", user_id, extracted.meta())

            t0 = time.monotonic()
            deadline.check("structuring")
            menu = self.structurer.structure(extracted, deadline)
            content_hash = content_digest(menu)
            _mark("structuring", t0)

            t0 = time.monotonic()
            deadline.check("persistence")
            outcome = self.persistence.save(
                user_id, menu, extracted, image_hash, content_hash, email=email
            )
            _mark("persistence", t0)
        except ScanError as e:
            log.error("Scan for user %s failed (%s): %s; timings=%s", user_id, e.kind, e, timings)
            raise

        log.info(
            "Scan %s for user %s: %s, %d dish(es) via %s; timings=%s",
            outcome.scan_id, user_id, outcome.method, outcome.dish_count,
            extracted.provider_id, timings,
        )
        return ScanResult(
            scan_id=outcome.scan_id,
            method=outcome.method,
            canonical_id=outcome.canonical_menu_id,
            dish_count=outcome.dish_count,
            new_dishes=outcome.new_dishes,
            existing_scan=outcome.existing_scan,
            provider_id=extracted.provider_id,
            failed_batches=outcome.failed_batches,
            timings_ms=timings,
        )


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
class _Clients:
    """SDK clients built lazily, at most once per provider kind."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._cache: Dict[str, Any] = {}

    def get(self, kind: str) -> Any:
        if kind not in self._cache:
            s = self.settings
            if kind == "openai":
                self._cache[kind] = openai.OpenAI(api_key=s.openai_api_key, base_url=s.openai_base_url)
            elif kind == "openrouter":
                self._cache[kind] = openai.OpenAI(api_key=s.openrouter_api_key, base_url=s.openrouter_base_url)
            elif kind == "anthropic":
                self._cache[kind] = anthropic.Anthropic(api_key=s.anthropic_api_key)
            else:
                raise ValueError(f"no SDK client for provider kind {kind!r}")
        return self._cache[kind]


def build_vision_providers(settings: Settings, clients: Optional[_Clients] = None) -> List[VisionProvider]:
    clients = clients or _Clients(settings)
    providers: List[VisionProvider] = []
    for spec in settings.vision_cascade:
        if spec.kind == "tesseract":
            providers.append(TesseractVisionProvider(
                lang=spec.model,
                config=settings.tesseract_config,
                tesseract_cmd=settings.tesseract_cmd,
            ))
            continue
        if not settings.api_key_for(spec.kind):
            log.warning("Skipping vision provider %s: no API key configured", spec.provider_id)
            continue
        if spec.kind == "anthropic":
            providers.append(ClaudeVisionProvider(clients.get(spec.kind), spec.model))
        else:
            providers.append(ChatCompletionVisionProvider(
                clients.get(spec.kind), spec.model, provider_id=spec.provider_id
            ))

    if not providers:
        raise ValueError("no usable vision providers configured (check VISION_CASCADE and API keys)")
    return providers


def build_structuring_provider(settings: Settings, clients: Optional[_Clients] = None) -> StructuringProvider:
    clients = clients or _Clients(settings)
    spec: ProviderSpec = settings.structuring_provider
    if spec.kind == "tesseract":
        raise ValueError("tesseract cannot be used as a structuring provider")
    if not settings.api_key_for(spec.kind):
        raise ValueError(f"structuring provider {spec.provider_id} has no API key configured")
    if spec.kind == "anthropic":
        return ClaudeStructuringProvider(clients.get(spec.kind), spec.model)
    return ChatCompletionStructuringProvider(clients.get(spec.kind), spec.model, provider_id=spec.provider_id)


def build_pipeline(settings: Settings, db: Optional[Database] = None) -> PipelineOrchestrator:
    db = db or Database(settings.db_path)
    db.ensure_schema()

    clients = _Clients(settings)
    cascade = ModelCascadeExecutor(
        build_vision_providers(settings, clients),
        attempt_timeout=settings.vision_attempt_timeout,
    )
    structurer = TextStructurer(
        build_structuring_provider(settings, clients),
        temperature=settings.structuring_temperature,
        timeout=settings.structuring_timeout,
    )
    persistence = PersistenceCoordinator(
        db,
        batch_size=settings.dish_batch_size,
        batch_retries=settings.dish_batch_retries,
    )
    log.info(
        "Scan pipeline ready: cascade=%s structuring=%s db=%s",
        cascade.provider_ids, structurer.provider.provider_id, db.path,
    )
    return PipelineOrchestrator(cascade, structurer, persistence, default_timeout=settings.pipeline_timeout)
