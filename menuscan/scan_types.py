# menuscan/scan_types.py
"""
MenuScan types: shared value objects for the scan pipeline.

RawImage → ExtractedText → StructuredMenu flow through the stages as frozen
dataclasses; the persisted side (canonical menus, scans, dishes) travels as
plain row dicts out of menuscan.menus.

StructuredMenu shape (what the structurer produces and the hasher digests):
{
  "restaurant": {"name": "...", "location": "..."},
  "categories": [
    {
      "name": "Starters",
      "dishes": [
        {"name": "...", "description": "...", "price": "8.50", "dietary_tags": ["vegan"]},
        ...
      ],
    },
    ...
  ],
}
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterator, Optional, Tuple


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def price_text(price: Optional[Decimal]) -> Optional[str]:
    """Canonical decimal text for a price: 12.50 -> '12.5', 10.00 -> '10'."""
    if price is None:
        return None
    return format(price.normalize(), "f")


# ────────────────────────────────────────────────
# 📷 Input image
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class RawImage:
    data: bytes
    media_type: str = "image/jpeg"

    def __post_init__(self) -> None:
        if not self.data:
            raise ValueError("image payload is empty")

    def b64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def data_uri(self) -> str:
        return f"data:{self.media_type};base64,{self.b64()}"


# ────────────────────────────────────────────────
# 🔤 Extraction output
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class ExtractedText:
    text: str
    provider_id: str
    elapsed_ms: float
    extracted_at: str = field(default_factory=now_iso)

    @property
    def char_length(self) -> int:
        return len(self.text)

    def meta(self) -> Dict[str, Any]:
        return {
            "provider": self.provider_id,
            "elapsed_ms": round(self.elapsed_ms, 1),
            "extracted_at": self.extracted_at,
            "char_length": self.char_length,
        }


# ────────────────────────────────────────────────
# 🍽 Structured menu
# ────────────────────────────────────────────────

@dataclass(frozen=True)
class Dish:
    name: str
    description: Optional[str] = None
    price: Optional[Decimal] = None
    dietary_tags: FrozenSet[str] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "price": price_text(self.price),
            "dietary_tags": sorted(self.dietary_tags),
        }


@dataclass(frozen=True)
class Category:
    name: str
    dishes: Tuple[Dish, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "dishes": [d.to_dict() for d in self.dishes]}


@dataclass(frozen=True)
class Restaurant:
    name: Optional[str] = None
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "location": self.location}


@dataclass(frozen=True)
class StructuredMenu:
    categories: Tuple[Category, ...]
    restaurant: Restaurant = field(default_factory=Restaurant)

    @property
    def dish_count(self) -> int:
        return sum(len(c.dishes) for c in self.categories)

    def iter_dishes(self) -> Iterator[Tuple[str, Dish]]:
        """(category name, dish) pairs in transcription order."""
        for cat in self.categories:
            for dish in cat.dishes:
                yield cat.name, dish

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restaurant": self.restaurant.to_dict(),
            "categories": [c.to_dict() for c in self.categories],
        }


__all__ = [
    "RawImage",
    "ExtractedText",
    "Dish",
    "Category",
    "Restaurant",
    "StructuredMenu",
    "now_iso",
    "price_text",
]
