# menuscan/cascade.py
"""
Extraction cascade: ordered fallback over vision providers.

Providers are tried strictly one at a time in the configured order. Each
attempt gets its own bounded deadline (45s by default, clamped to what is
left of the overall scan deadline). The first provider returning at least
MIN_TEXT_CHARS of trimmed text wins and nothing after it is called.
No retries of the same provider, no backoff: the order itself encodes the
operator's quality / cost / reliability preference.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import List, Optional, Sequence

from .deadline import Deadline
from .errors import (
    INSUFFICIENT_OUTPUT,
    PROVIDER_ERROR,
    TIMEOUT,
    ExtractionExhausted,
    ProviderCallError,
    ProviderFailure,
    ProviderTimeout,
    ScanCancelled,
)
from .scan_types import ExtractedText, RawImage
from .vision_providers import VisionProvider

log = logging.getLogger(__name__)

PROVIDER_TIMEOUT_SECONDS = 45.0
MIN_TEXT_CHARS = 20


class ModelCascadeExecutor:
    def __init__(
        self,
        providers: Sequence[VisionProvider],
        *,
        attempt_timeout: float = PROVIDER_TIMEOUT_SECONDS,
        min_chars: int = MIN_TEXT_CHARS,
        poll_interval: float = 0.25,
    ):
        if not providers:
            raise ValueError("extraction cascade needs at least one provider")
        self.providers: List[VisionProvider] = list(providers)
        self.attempt_timeout = attempt_timeout
        self.min_chars = min_chars
        self.poll_interval = poll_interval

    @property
    def provider_ids(self) -> List[str]:
        return [p.provider_id for p in self.providers]

    def extract(self, image: RawImage, deadline: Optional[Deadline] = None) -> ExtractedText:
        deadline = deadline or Deadline()
        failures: List[ProviderFailure] = []

        for provider in self.providers:
            deadline.check("extraction")
            budget = deadline.bound(self.attempt_timeout)
            started = time.monotonic()

            def _fail(kind: str, message: str, status: Optional[int] = None) -> None:
                elapsed = (time.monotonic() - started) * 1000
                failures.append(ProviderFailure(provider.provider_id, kind, message, status, elapsed))
                log.warning(
                    "Extraction provider %s failed (%s) after %.0fms: %s",
                    provider.provider_id, kind, elapsed, message,
                )

            try:
                text = self._attempt(provider, image, budget, deadline)
            except ScanCancelled:
                raise
            except ProviderTimeout as e:
                _fail(TIMEOUT, str(e) or f"no answer within {budget:.1f}s")
                continue
            except ProviderCallError as e:
                _fail(PROVIDER_ERROR, str(e), e.status)
                continue
            except Exception as e:  # anything else a provider raises counts as ProviderError
                _fail(PROVIDER_ERROR, f"{type(e).__name__}: {e}")
                continue

            trimmed = (text or "").strip()
            if len(trimmed) < self.min_chars:
                _fail(
                    INSUFFICIENT_OUTPUT,
                    f"{len(trimmed)} characters after trimming (need {self.min_chars})",
                )
                continue

            elapsed_ms = (time.monotonic() - started) * 1000
            log.info(
                "Extraction succeeded with %s in %.0fms (%d chars, %d earlier failure(s))",
                provider.provider_id, elapsed_ms, len(trimmed), len(failures),
            )
            return ExtractedText(text=trimmed, provider_id=provider.provider_id, elapsed_ms=elapsed_ms)

        # Every provider was tried; an expired deadline is already recorded as the
        # last attempt's Timeout. Only an explicit cancel overrides the failure list.
        if deadline.cancelled:
            raise ScanCancelled("extraction", "cancelled")
        log.error("Extraction cascade exhausted after %d provider(s)", len(failures))
        raise ExtractionExhausted(failures)

    def _attempt(
        self,
        provider: VisionProvider,
        image: RawImage,
        budget: float,
        deadline: Deadline,
    ) -> str:
        """Run one provider call on a worker thread, bounded by `budget` seconds."""
        if budget <= 0:
            raise ProviderTimeout("no time left for this attempt")

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vision-attempt")
        try:
            future = executor.submit(provider.extract_text, image, timeout=budget)
            ends_at = time.monotonic() + budget
            while True:
                left = ends_at - time.monotonic()
                if left <= 0:
                    future.cancel()
                    raise ProviderTimeout(f"no answer within {budget:.1f}s")
                try:
                    return future.result(timeout=min(self.poll_interval, left))
                except FutureTimeout as e:
                    if future.done():
                        # the provider call itself raised TimeoutError
                        raise ProviderTimeout(str(e) or "provider call timed out") from e
                    if deadline.cancelled:
                        future.cancel()
                        raise ScanCancelled("extraction", "cancelled")
        finally:
            # A hung provider call keeps its thread; we just stop waiting for it.
            executor.shutdown(wait=False)
