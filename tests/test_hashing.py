"""
Content addressing: image and menu digests.

Covers:
  image_digest():
  - SHA-256 hex of the raw bytes
  - one changed byte changes the digest

  normalize_menu() / content_digest():
  - identical content -> identical digest
  - whitespace-only differences in names / descriptions do not matter
  - 12.50 and 12.5 hash the same
  - dietary tag order and case do not matter
  - dict key insertion order does not matter
  - StructuredMenu and equivalent plain dict hash the same
  - restaurant name / location are not part of the digest
  - a changed price or name changes the digest
  - reordered dishes / categories produce a different digest
"""

from __future__ import annotations

import hashlib
import sys
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from menuscan.hashing import content_digest, image_digest, normalize_menu
from menuscan.scan_types import Category, Dish, Restaurant, StructuredMenu


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _menu_dict(**overrides):
    data = {
        "restaurant": {"name": "Luigi's", "location": "Main St"},
        "categories": [
            {
                "name": "Starters",
                "dishes": [
                    {"name": "Bruschetta", "description": "Tomato, basil", "price": "8.50",
                     "dietary_tags": ["vegan"]},
                    {"name": "Soup", "description": None, "price": None, "dietary_tags": []},
                ],
            },
            {
                "name": "Mains",
                "dishes": [
                    {"name": "Lasagne", "description": "Beef ragu", "price": "14",
                     "dietary_tags": []},
                ],
            },
        ],
    }
    data.update(overrides)
    return data


def _structured() -> StructuredMenu:
    return StructuredMenu(
        categories=(
            Category("Starters", (
                Dish("Bruschetta", "Tomato, basil", Decimal("8.5"), frozenset({"vegan"})),
                Dish("Soup"),
            )),
            Category("Mains", (Dish("Lasagne", "Beef ragu", Decimal("14.00")),)),
        ),
        restaurant=Restaurant("Luigi's", "Main St"),
    )


# ===========================================================================
# image_digest
# ===========================================================================
class TestImageDigest:
    def test_matches_sha256(self):
        data = b"\xff\xd8\xff\xe0fake-jpeg"
        assert image_digest(data) == hashlib.sha256(data).hexdigest()

    def test_single_byte_change(self):
        assert image_digest(b"menu-photo-1") != image_digest(b"menu-photo-2")


# ===========================================================================
# content_digest
# ===========================================================================
class TestContentDigest:
    def test_identical_content_same_digest(self):
        assert content_digest(_menu_dict()) == content_digest(_menu_dict())

    def test_whitespace_in_names_and_descriptions_ignored(self):
        messy = _menu_dict()
        messy["categories"][0]["name"] = "  Starters "
        messy["categories"][0]["dishes"][0]["name"] = "Bruschetta  "
        messy["categories"][0]["dishes"][0]["description"] = "  Tomato,\n   basil "
        assert content_digest(messy) == content_digest(_menu_dict())

    def test_equivalent_prices_hash_same(self):
        a = _menu_dict()
        b = _menu_dict()
        a["categories"][0]["dishes"][0]["price"] = "12.50"
        b["categories"][0]["dishes"][0]["price"] = 12.5
        assert content_digest(a) == content_digest(b)

    def test_tag_order_and_case_ignored(self):
        a = _menu_dict()
        b = _menu_dict()
        a["categories"][0]["dishes"][0]["dietary_tags"] = ["vegan", "gluten-free"]
        b["categories"][0]["dishes"][0]["dietary_tags"] = ["Gluten-Free", "vegan"]
        assert content_digest(a) == content_digest(b)

    def test_key_insertion_order_ignored(self):
        a = _menu_dict()
        dish = a["categories"][1]["dishes"][0]
        a["categories"][1]["dishes"][0] = dict(reversed(list(dish.items())))
        assert content_digest(a) == content_digest(_menu_dict())

    def test_structured_menu_matches_dict(self):
        assert content_digest(_structured()) == content_digest(_menu_dict())

    def test_restaurant_not_part_of_digest(self):
        other = _menu_dict(restaurant={"name": "Somewhere Else", "location": None})
        assert content_digest(other) == content_digest(_menu_dict())

    def test_changed_price_changes_digest(self):
        changed = _menu_dict()
        changed["categories"][1]["dishes"][0]["price"] = "15"
        assert content_digest(changed) != content_digest(_menu_dict())

    def test_changed_name_changes_digest(self):
        changed = _menu_dict()
        changed["categories"][0]["dishes"][1]["name"] = "Soup of the Day"
        assert content_digest(changed) != content_digest(_menu_dict())

    def test_reordered_dishes_change_digest(self):
        reordered = _menu_dict()
        reordered["categories"][0]["dishes"].reverse()
        assert content_digest(reordered) != content_digest(_menu_dict())

    def test_reordered_categories_change_digest(self):
        reordered = _menu_dict()
        reordered["categories"].reverse()
        assert content_digest(reordered) != content_digest(_menu_dict())


class TestNormalizeMenu:
    def test_shape(self):
        norm = normalize_menu(_structured())
        assert list(norm) == ["categories"]
        first = norm["categories"][0]["dishes"][0]
        assert first == {
            "name": "Bruschetta",
            "description": "Tomato, basil",
            "price": "8.5",
            "dietary_tags": ["vegan"],
        }

    def test_empty_description_becomes_none(self):
        data = _menu_dict()
        data["categories"][0]["dishes"][0]["description"] = "   "
        assert normalize_menu(data)["categories"][0]["dishes"][0]["description"] is None

    def test_whole_price_trailing_zeros(self):
        norm = normalize_menu(_structured())
        assert norm["categories"][1]["dishes"][0]["price"] == "14"
