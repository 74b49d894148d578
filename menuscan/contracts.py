# menuscan/contracts.py
from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from .dietary_vocab import filter_explicit_tags
from .errors import StructuringFailed
from .scan_types import Category, Dish, Restaurant, StructuredMenu

"""
Contracts & validators for **structured menu output** (structuring model JSON).

Strict, fail-closed parse of the structuring model's JSON into a
StructuredMenu:
- every dish needs a non-empty string name
- descriptions are strings or null
- dishes / dietary_tags must be lists
- a missing price is null, never an error

All violations are collected and raised together in one StructuringFailed so
the caller sees the full list instead of the first problem only.
"""

log = logging.getLogger(__name__)

_CURRENCY_RE = re.compile(r"[$€£¥₹]|(?i:usd|eur|gbp)")
_DECIMAL_COMMA_RE = re.compile(r"-?\d+,\d{1,2}")               # 12,50
_DOT_THOUSANDS_RE = re.compile(r"-?\d{1,3}(?:\.\d{3})+,\d{1,2}")  # 1.234,50
_COMMA_THOUSANDS_RE = re.compile(r"-?\d{1,3}(?:,\d{3})+(?:\.\d+)?")  # 1,234.50


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------

def normalize_price(raw: Any) -> Tuple[Optional[Decimal], Optional[str]]:
    """
    Normalize a price value into a Decimal.

    Accepted forms:
      - 12.5 / 12         -> Decimal("12.5") / Decimal("12")
      - "12.50"           -> Decimal("12.50")
      - "$12.50", "€ 9"   -> currency stripped
      - "12,50"           -> decimal comma
      - "1.234,50" / "1,234.50" -> thousands separators dropped
      - "12 50"           -> (None, None)  internal space, not a price
      - None / ""         -> (None, None)  (no price on the menu)
      - "Market Price"    -> (None, None)  logged, not an error

    Returns:
      (price | None, error_message | None)
    """
    if raw is None or isinstance(raw, bool):
        return None, None

    if isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    elif isinstance(raw, str):
        txt = _CURRENCY_RE.sub("", raw.strip()).strip()
        if not txt:
            return None, None
        if _DECIMAL_COMMA_RE.fullmatch(txt):
            txt = txt.replace(",", ".")
        elif _DOT_THOUSANDS_RE.fullmatch(txt):
            txt = txt.replace(".", "").replace(",", ".")
        elif _COMMA_THOUSANDS_RE.fullmatch(txt):
            txt = txt.replace(",", "")
        # internal spaces or leftover separators never form a price
        if re.search(r"[\s,_]", txt):
            log.info("Ignoring non-numeric price %r", raw)
            return None, None
        try:
            value = Decimal(txt)
        except InvalidOperation:
            log.info("Ignoring non-numeric price %r", raw)
            return None, None
    else:
        return None, f"price must be a number or string, got {type(raw).__name__}"

    if not value.is_finite():
        return None, f"price '{raw}' is not a finite number"
    if value < 0:
        return None, "price must not be negative"
    return value, None


def normalize_text(value: Any) -> Optional[str]:
    """Trim an optional text field; empty becomes None."""
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


# ---------------------------------------------------------------------------
# Dish / category validation
# ---------------------------------------------------------------------------

def _parse_dish(row: Any, where: str, source_text: str, errors: List[str]) -> Optional[Dish]:
    if not isinstance(row, dict):
        errors.append(f"{where} must be an object")
        return None

    err_count = len(errors)

    name = row.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append(f"{where}.name is required and must be a non-empty string")

    description = row.get("description")
    if description is not None and not isinstance(description, str):
        errors.append(f"{where}.description must be a string or null")

    price, price_err = normalize_price(row.get("price"))
    if price_err:
        errors.append(f"{where}.price: {price_err}")

    raw_tags = row.get("dietary_tags")
    if raw_tags is None:
        raw_tags = []
    if not isinstance(raw_tags, list) or not all(isinstance(t, str) for t in raw_tags):
        errors.append(f"{where}.dietary_tags must be a list of strings")
        raw_tags = []

    if len(errors) > err_count:
        return None

    tags = filter_explicit_tags(raw_tags, source_text)
    dropped = len(raw_tags) - len(tags)
    if dropped > 0:
        log.debug("%s: dropped %d dietary tag(s) not printed on the menu", where, dropped)

    return Dish(
        name=name.strip(),
        description=normalize_text(description),
        price=price,
        dietary_tags=tags,
    )


def _parse_category(row: Any, where: str, source_text: str, errors: List[str]) -> Optional[Category]:
    if not isinstance(row, dict):
        errors.append(f"{where} must be an object")
        return None

    name = row.get("name")
    if name is not None and not isinstance(name, str):
        errors.append(f"{where}.name must be a string or null")
        return None

    dishes_raw = row.get("dishes")
    if dishes_raw is None:
        dishes_raw = []
    if not isinstance(dishes_raw, list):
        errors.append(f"{where}.dishes must be a list")
        return None

    dishes = []
    for j, d in enumerate(dishes_raw):
        dish = _parse_dish(d, f"{where}.dishes[{j}]", source_text, errors)
        if dish is not None:
            dishes.append(dish)

    return Category(name=normalize_text(name) or "Other", dishes=tuple(dishes))


# ---------------------------------------------------------------------------
# Payload-level validation
# ---------------------------------------------------------------------------

def parse_structured_menu(data: Any, source_text: str = "") -> StructuredMenu:
    """
    Validate the structuring model's JSON object and build a StructuredMenu.

    Expected shape:
      {
        "restaurant": {"name": "...", "location": "..."},   // optional
        "categories": [
          {"name": "...", "dishes": [{"name": "...", "description": "...",
                                      "price": 9.5, "dietary_tags": ["vegan"]}]}
        ]
      }

    Raises StructuringFailed listing every violation found.
    """
    if not isinstance(data, dict):
        raise StructuringFailed("structured menu must be a JSON object")
    if "categories" not in data:
        raise StructuringFailed("structured menu is missing the 'categories' key")

    cats_raw = data["categories"]
    if not isinstance(cats_raw, list):
        raise StructuringFailed("'categories' must be a list")

    errors: List[str] = []

    restaurant_raw = data.get("restaurant")
    restaurant = Restaurant()
    if isinstance(restaurant_raw, dict):
        restaurant = Restaurant(
            name=normalize_text(restaurant_raw.get("name")),
            location=normalize_text(restaurant_raw.get("location")),
        )
    elif restaurant_raw is not None:
        errors.append("restaurant must be an object or null")

    categories = []
    for i, c in enumerate(cats_raw):
        cat = _parse_category(c, f"categories[{i}]", source_text, errors)
        if cat is not None:
            categories.append(cat)

    if errors:
        raise StructuringFailed(
            f"structured menu failed validation ({len(errors)} problem(s))",
            errors=errors,
        )

    return StructuredMenu(categories=tuple(categories), restaurant=restaurant)


def summarize_menu(menu: StructuredMenu) -> Dict[str, int]:
    return {
        "categories": len(menu.categories),
        "dishes": menu.dish_count,
        "priced": sum(1 for _, d in menu.iter_dishes() if d.price is not None),
    }
