# menuscan/hashing.py
"""
Content addressing for scans.

- image_digest(): SHA-256 of the raw photo bytes. Exact-bytes identity only,
  no perceptual hashing; used for per-user duplicate scan detection.
- content_digest(): SHA-256 of a normalized StructuredMenu; the identity key
  of canonical menus shared across users.

Normalization trims names and category names, trims + collapses whitespace
in descriptions, renders prices as canonical decimal text and sorts dietary
tags (a set). Category and dish order are left exactly as transcribed, so
the same dishes in a different order produce a different digest.
"""

from __future__ import annotations

import hashlib
import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .scan_types import StructuredMenu, price_text

_WS_RE = re.compile(r"\s+")

MenuLike = Union[StructuredMenu, Mapping[str, Any]]


def image_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------
def _trim(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _collapse(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = _WS_RE.sub(" ", str(value)).strip()
    return text or None


def _price(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return price_text(value)
    try:
        return price_text(Decimal(str(value).strip()))
    except InvalidOperation:
        # Not numeric; hash the trimmed text as-is so it still contributes.
        return str(value).strip() or None


def _tags(value: Optional[Iterable[Any]]) -> List[str]:
    return sorted({str(t).strip().lower() for t in (value or ()) if str(t).strip()})


def normalize_menu(menu: MenuLike) -> Dict[str, Any]:
    """Canonical, JSON-ready form of the dish content of a menu."""
    data = menu.to_dict() if isinstance(menu, StructuredMenu) else menu

    categories = []
    for cat in data.get("categories") or []:
        dishes = []
        for dish in cat.get("dishes") or []:
            dishes.append({
                "name": _trim(dish.get("name")),
                "description": _collapse(dish.get("description")),
                "price": _price(dish.get("price")),
                "dietary_tags": _tags(dish.get("dietary_tags")),
            })
        categories.append({"name": _trim(cat.get("name")), "dishes": dishes})
    return {"categories": categories}


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_digest(menu: MenuLike) -> str:
    payload = canonical_json(normalize_menu(menu))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
