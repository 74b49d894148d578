# menuscan/dietary_vocab.py
"""
Dietary Tag Vocabulary

Single source of truth for dietary tag normalization and for deciding
whether a tag is actually printed on the menu. The structurer only keeps
tags whose markers appear in the extracted text; it never infers them from
dish names or ingredients.
"""

from __future__ import annotations

import re
from typing import Dict, FrozenSet, Iterable, List, Optional, Pattern


# Canonical tag -> markers that count as the tag being printed on the menu.
# Bracketed short codes are the usual legend form ("(V)", "(GF)").
DIETARY_MARKERS: Dict[str, List[str]] = {
    "vegetarian": ["vegetarian", "veggie", "(v)"],
    "vegan": ["vegan", "(vg)", "(ve)"],
    "gluten-free": ["gluten free", "gluten-free", "(gf)", "gf"],
    "dairy-free": ["dairy free", "dairy-free", "(df)"],
    "nut-free": ["nut free", "nut-free", "(nf)"],
    "contains-nuts": ["contains nuts", "(n)"],
    "halal": ["halal"],
    "kosher": ["kosher"],
    "spicy": ["spicy", "hot & spicy", "\U0001f336"],
    "organic": ["organic"],
    "pescatarian": ["pescatarian"],
}

# Lowercase alias -> canonical tag (what models tend to hand back)
TAG_ALIASES: Dict[str, str] = {
    "v": "vegetarian",
    "veg": "vegetarian",
    "veggie": "vegetarian",
    "vg": "vegan",
    "ve": "vegan",
    "plant-based": "vegan",
    "gf": "gluten-free",
    "gluten free": "gluten-free",
    "glutenfree": "gluten-free",
    "df": "dairy-free",
    "dairy free": "dairy-free",
    "nf": "nut-free",
    "nut free": "nut-free",
    "hot": "spicy",
}


def _marker_re(marker: str) -> Pattern[str]:
    body = re.escape(marker)
    # Word-ish markers need boundaries so "gf" does not match inside "gfx".
    if marker[:1].isalnum():
        body = r"\b" + body
    if marker[-1:].isalnum():
        body = body + r"\b"
    return re.compile(body, re.IGNORECASE)


_MARKER_RES: Dict[str, List[Pattern[str]]] = {
    tag: [_marker_re(m) for m in markers] for tag, markers in DIETARY_MARKERS.items()
}


def normalize_tag(raw: str) -> Optional[str]:
    tag = re.sub(r"\s+", " ", (raw or "").strip().lower()).strip("()[] ")
    if not tag:
        return None
    tag = TAG_ALIASES.get(tag, tag)
    return tag.replace(" ", "-") if tag not in DIETARY_MARKERS and " " in tag else tag


def tag_present_in_text(tag: str, text: str) -> bool:
    """True when the canonical tag (or one of its markers) is printed in text."""
    patterns = _MARKER_RES.get(tag)
    if patterns is None:
        patterns = [_marker_re(tag), _marker_re(tag.replace("-", " "))]
    return any(p.search(text or "") for p in patterns)


def filter_explicit_tags(tags: Iterable[str], source_text: str) -> FrozenSet[str]:
    kept = set()
    for raw in tags:
        tag = normalize_tag(raw)
        if tag and tag_present_in_text(tag, source_text):
            kept.add(tag)
    return frozenset(kept)
