# menuscan/errors.py
"""
Error kinds raised by the scan pipeline.

Fatal errors derive from ScanError and carry structured detail through
to_dict() so the portal can hand callers something better than a traceback.
Provider-level errors (ProviderTimeout / ProviderCallError) never leave the
cascade: they are recorded as ProviderFailure entries and only surface
inside ExtractionExhausted once every provider has been tried.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


# Sub-failure kinds recorded by the extraction cascade
TIMEOUT = "Timeout"
PROVIDER_ERROR = "ProviderError"
INSUFFICIENT_OUTPUT = "InsufficientOutput"


# ---------------------------------------------------------------------------
# Provider-level errors (absorbed by the cascade)
# ---------------------------------------------------------------------------
class ProviderTimeout(Exception):
    """A provider did not answer within its attempt deadline."""


class ProviderCallError(Exception):
    """Transport error or provider-reported failure."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


@dataclass(frozen=True)
class ProviderFailure:
    provider_id: str
    kind: str
    message: str
    status: Optional[int] = None
    elapsed_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider_id,
            "kind": self.kind,
            "message": self.message,
            "status": self.status,
            "elapsed_ms": round(self.elapsed_ms, 1),
        }


# ---------------------------------------------------------------------------
# Fatal pipeline errors
# ---------------------------------------------------------------------------
class ScanError(Exception):
    kind = "scan_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": str(self)}


class ExtractionExhausted(ScanError):
    kind = "extraction_exhausted"

    def __init__(self, failures: Iterable[ProviderFailure]):
        self.failures: List[ProviderFailure] = list(failures)
        tried = ", ".join(f"{f.provider_id} ({f.kind})" for f in self.failures) or "none"
        super().__init__(f"all extraction providers failed: {tried}")

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["providers"] = [f.to_dict() for f in self.failures]
        return out


class StructuringFailed(ScanError):
    kind = "structuring_failed"

    def __init__(
        self,
        detail: str,
        *,
        errors: Optional[List[str]] = None,
        provider_id: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(detail)
        self.detail = detail
        self.errors = list(errors or [])
        self.provider_id = provider_id
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update({
            "detail": self.detail,
            "errors": self.errors,
            "provider": self.provider_id,
            "status": self.status,
        })
        return out


class PersistenceError(ScanError):
    kind = "persistence_error"

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["step"] = self.step
        return out


class ScanCancelled(ScanError):
    kind = "scan_cancelled"

    def __init__(self, stage: str, reason: str):
        super().__init__(f"scan stopped before {stage} ({reason})")
        self.stage = stage
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update({"stage": self.stage, "reason": self.reason})
        return out
