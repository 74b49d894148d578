"""
Text structuring: one model call, strict JSON parse, explicit-only tags.

Covers:
  TextStructurer.structure():
  - valid JSON -> StructuredMenu with categories / dishes in order
  - exactly one provider call, temperature 0, raw text embedded in the prompt
  - ```json fenced reply accepted
  - invalid JSON -> StructuringFailed
  - non-object / missing categories / non-list categories -> StructuringFailed
  - provider timeout / HTTP error -> StructuringFailed with provider + status
  - any other provider exception -> StructuringFailed naming the exception type
  - expired deadline -> ScanCancelled, provider not called
  - long text truncated to max_chars in the prompt

  parse_structured_menu():
  - all violations collected into one StructuringFailed
  - missing price -> None; "$12.50" / "12,50" / "1.234,50" -> Decimal
  - internal spaces ("12 50") -> None, never a merged number
  - "Market Price" -> None (not an error)
  - negative price -> violation
  - null category name -> "Other"
  - restaurant name / location carried through

  Dietary tags:
  - tag kept only when printed in the extracted text
  - inferred tag (not in text) dropped
  - "GF" alias normalized to gluten-free when "(GF)" printed
  - "gf" marker does not match inside other words
"""

from __future__ import annotations

import json
import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from menuscan.contracts import normalize_price, parse_structured_menu
from menuscan.deadline import Deadline
from menuscan.dietary_vocab import filter_explicit_tags, normalize_tag, tag_present_in_text
from menuscan.errors import ProviderCallError, ProviderTimeout, ScanCancelled, StructuringFailed
from menuscan.menu_structurer import TextStructurer, load_json_object
from menuscan.scan_types import ExtractedText

SOURCE_TEXT = """\
LUIGI'S TRATTORIA - 12 Main St
STARTERS
Bruschetta (V) - tomato, basil, garlic   8.50
Garlic Bread (GF)   5
MAINS
Lasagne - beef ragu, bechamel   14.00
Mushroom Risotto vegan   13.50
"""

GOOD_REPLY = {
    "restaurant": {"name": "Luigi's Trattoria", "location": "12 Main St"},
    "categories": [
        {
            "name": "Starters",
            "dishes": [
                {"name": "Bruschetta", "description": "tomato, basil, garlic", "price": 8.5,
                 "dietary_tags": ["V"]},
                {"name": "Garlic Bread", "description": None, "price": "5",
                 "dietary_tags": ["GF"]},
            ],
        },
        {
            "name": "Mains",
            "dishes": [
                {"name": "Lasagne", "description": "beef ragu, bechamel", "price": 14.0,
                 "dietary_tags": ["gluten-free"]},
                {"name": "Mushroom Risotto", "description": None, "price": 13.5,
                 "dietary_tags": ["vegan"]},
            ],
        },
    ],
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
class FakeStructuringProvider:
    provider_id = "fake:structurer"

    def __init__(self, reply="", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def complete_json(self, system, prompt, *, temperature, timeout):
        self.calls.append({"system": system, "prompt": prompt,
                           "temperature": temperature, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.reply


def _extracted(text: str = SOURCE_TEXT) -> ExtractedText:
    return ExtractedText(text=text, provider_id="fake:vision", elapsed_ms=10.0)


def _structure(reply, text: str = SOURCE_TEXT):
    provider = FakeStructuringProvider(reply if isinstance(reply, str) else json.dumps(reply))
    return TextStructurer(provider).structure(_extracted(text)), provider


# ===========================================================================
# TextStructurer
# ===========================================================================
class TestStructure:
    def test_valid_reply(self):
        menu, _ = _structure(GOOD_REPLY)
        assert [c.name for c in menu.categories] == ["Starters", "Mains"]
        assert [d.name for _, d in menu.iter_dishes()] == [
            "Bruschetta", "Garlic Bread", "Lasagne", "Mushroom Risotto",
        ]
        assert menu.dish_count == 4
        assert menu.restaurant.name == "Luigi's Trattoria"
        assert menu.restaurant.location == "12 Main St"

    def test_single_call_deterministic_settings(self):
        _, provider = _structure(GOOD_REPLY)
        assert len(provider.calls) == 1
        call = provider.calls[0]
        assert call["temperature"] == 0.0
        assert "Bruschetta (V)" in call["prompt"]
        assert '"categories"' in call["prompt"]

    def test_fenced_reply(self):
        menu, _ = _structure("```json\n" + json.dumps(GOOD_REPLY) + "\n```")
        assert menu.dish_count == 4

    def test_invalid_json(self):
        with pytest.raises(StructuringFailed) as ei:
            _structure("Here is your menu: {categories: [")
        assert ei.value.provider_id == "fake:structurer"

    def test_empty_reply(self):
        with pytest.raises(StructuringFailed):
            _structure("   ")

    @pytest.mark.parametrize("reply", [[], {"restaurant": {}}, {"categories": {"a": 1}}])
    def test_bad_top_level_shape(self, reply):
        with pytest.raises(StructuringFailed):
            _structure(reply)

    def test_provider_timeout(self):
        provider = FakeStructuringProvider(error=ProviderTimeout("took too long"))
        with pytest.raises(StructuringFailed) as ei:
            TextStructurer(provider).structure(_extracted())
        assert ei.value.provider_id == "fake:structurer"

    def test_provider_http_error_carries_status(self):
        provider = FakeStructuringProvider(error=ProviderCallError("HTTP 529", status=529))
        with pytest.raises(StructuringFailed) as ei:
            TextStructurer(provider).structure(_extracted())
        assert ei.value.status == 529
        assert ei.value.to_dict()["status"] == 529

    def test_unexpected_provider_error(self):
        provider = FakeStructuringProvider(error=RuntimeError("unexpected SDK response shape"))
        with pytest.raises(StructuringFailed) as ei:
            TextStructurer(provider).structure(_extracted())
        assert ei.value.provider_id == "fake:structurer"
        assert "RuntimeError" in ei.value.detail
        assert isinstance(ei.value.__cause__, RuntimeError)

    def test_expired_deadline(self):
        provider = FakeStructuringProvider(json.dumps(GOOD_REPLY))
        with pytest.raises(ScanCancelled):
            TextStructurer(provider).structure(_extracted(), Deadline(0))
        assert provider.calls == []

    def test_timeout_clamped_by_deadline(self):
        provider = FakeStructuringProvider(json.dumps(GOOD_REPLY))
        TextStructurer(provider, timeout=60.0).structure(_extracted(), Deadline(3.0))
        assert provider.calls[0]["timeout"] <= 3.0

    def test_prompt_truncated(self):
        structurer = TextStructurer(FakeStructuringProvider(), max_chars=50)
        prompt = structurer.build_prompt("x" * 500)
        assert "x" * 51 not in prompt
        assert "[... truncated ...]" in prompt

    def test_load_json_object_plain_fence(self):
        assert load_json_object('```\n{"categories": []}\n```') == {"categories": []}


# ===========================================================================
# parse_structured_menu
# ===========================================================================
class TestParseStructuredMenu:
    def test_collects_all_violations(self):
        data = {
            "categories": [
                {"name": "Starters", "dishes": [
                    {"name": "", "price": 5},
                    {"name": "Soup", "description": 42},
                    {"name": "Salad", "price": -3},
                ]},
                {"name": "Mains", "dishes": "not a list"},
            ]
        }
        with pytest.raises(StructuringFailed) as ei:
            parse_structured_menu(data, SOURCE_TEXT)
        errors = ei.value.errors
        assert len(errors) == 4
        assert any("dishes[0].name" in e for e in errors)
        assert any("description" in e for e in errors)
        assert any("negative" in e for e in errors)
        assert any("categories[1].dishes" in e for e in errors)

    def test_missing_price_is_none(self):
        menu = parse_structured_menu({"categories": [{"name": "A", "dishes": [{"name": "Tea"}]}]})
        dish = menu.categories[0].dishes[0]
        assert dish.price is None
        assert dish.description is None
        assert dish.dietary_tags == frozenset()

    def test_null_category_name_becomes_other(self):
        menu = parse_structured_menu({"categories": [{"name": None, "dishes": [{"name": "Tea"}]}]})
        assert menu.categories[0].name == "Other"

    def test_missing_restaurant(self):
        menu = parse_structured_menu({"categories": []})
        assert menu.restaurant.name is None
        assert menu.dish_count == 0


class TestNormalizePrice:
    @pytest.mark.parametrize("raw, expected", [
        (12.5, Decimal("12.5")),
        (12, Decimal("12")),
        ("12.50", Decimal("12.50")),
        ("$12.50", Decimal("12.50")),
        ("€ 9", Decimal("9")),
        ("12,50", Decimal("12.50")),
        ("1,250.00", Decimal("1250.00")),
        ("1.234,50", Decimal("1234.50")),
        ("12.50 USD", Decimal("12.50")),
    ])
    def test_accepted_forms(self, raw, expected):
        value, err = normalize_price(raw)
        assert err is None
        assert value == expected

    @pytest.mark.parametrize("raw", [None, "", "  ", "Market Price", "12 50", "$ 12 50", "1,2,3"])
    def test_no_price(self, raw):
        assert normalize_price(raw) == (None, None)

    def test_negative_is_error(self):
        value, err = normalize_price("-4.00")
        assert value is None
        assert "negative" in err

    def test_wrong_type_is_error(self):
        _, err = normalize_price({"amount": 5})
        assert err


# ===========================================================================
# Dietary tags
# ===========================================================================
class TestDietaryTags:
    def test_printed_tags_kept_inferred_dropped(self):
        menu, _ = _structure(GOOD_REPLY)
        dishes = {d.name: d for _, d in menu.iter_dishes()}
        assert dishes["Bruschetta"].dietary_tags == frozenset({"vegetarian"})
        assert dishes["Garlic Bread"].dietary_tags == frozenset({"gluten-free"})
        assert dishes["Mushroom Risotto"].dietary_tags == frozenset({"vegan"})

    def test_tag_absent_from_text_dropped(self):
        text = "MAINS\nLasagne - beef ragu   14.00\nGrilled salmon   18.00\n"
        reply = {"categories": [{"name": "Mains", "dishes": [
            {"name": "Grilled salmon", "price": 18, "dietary_tags": ["gluten-free", "pescatarian"]},
        ]}]}
        menu, _ = _structure(reply, text)
        assert menu.categories[0].dishes[0].dietary_tags == frozenset()

    def test_alias_normalization(self):
        assert normalize_tag("GF") == "gluten-free"
        assert normalize_tag("(V)") == "vegetarian"
        assert normalize_tag("Dairy Free") == "dairy-free"
        assert normalize_tag("   ") is None

    def test_short_marker_needs_word_boundary(self):
        assert not tag_present_in_text("gluten-free", "GFX burger deluxe")
        assert tag_present_in_text("gluten-free", "Burger (gf) 12")

    def test_unknown_tag_needs_literal_match(self):
        assert filter_explicit_tags(["keto"], "Keto bowl 11") == frozenset({"keto"})
        assert filter_explicit_tags(["keto"], "Rice bowl 11") == frozenset()
