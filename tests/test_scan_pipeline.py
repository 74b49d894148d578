"""
End-to-end scan pipeline with fake providers and a real SQLite file.

Covers:
  Scenarios:
  - new menu -> new_canonical_menu, result JSON shape exact
  - user A scans image X twice -> duplicate_image_hash, same scan id,
    existingScan present, zero new rows
  - user B scans a different photo of the same menu -> canonical_menu_reuse,
    newDishes false, no dish rows added
  - provider 1 HTTP 500, provider 2 succeeds -> scan uses provider 2's text
  - extraction metadata (provider, char length) logged per scan

  Fatal paths (nothing persisted):
  - every provider fails -> ExtractionExhausted, no rows anywhere
  - structuring returns invalid JSON -> StructuringFailed, no rows
  - deadline cancelled after structuring -> ScanCancelled before persistence

  build_pipeline():
  - cascade entries without API keys skipped, tesseract kept
  - no usable providers -> ValueError
  - structuring provider without key -> ValueError
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from menuscan.cascade import ModelCascadeExecutor
from menuscan.config import ProviderSpec, Settings
from menuscan.db import Database
from menuscan.deadline import Deadline
from menuscan.errors import (
    ExtractionExhausted,
    ProviderCallError,
    ScanCancelled,
    StructuringFailed,
)
from menuscan.menu_structurer import TextStructurer
from menuscan.persistence import PersistenceCoordinator
from menuscan.scan_pipeline import PipelineOrchestrator, build_pipeline
from menuscan.scan_types import RawImage

MENU_TEXT = """\
STARTERS
Bruschetta (V)   8.50
Soup of the day   6.00
MAINS
Lasagne   14.00
"""

MENU_JSON = {
    "restaurant": {"name": "Luigi's", "location": None},
    "categories": [
        {"name": "Starters", "dishes": [
            {"name": "Bruschetta", "price": 8.5, "dietary_tags": ["V"]},
            {"name": "Soup of the day", "price": 6},
        ]},
        {"name": "Mains", "dishes": [{"name": "Lasagne", "price": 14}]},
    ],
}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeVision:
    def __init__(self, provider_id="fake:vision", text=MENU_TEXT, error=None):
        self.provider_id = provider_id
        self.text = text
        self.error = error
        self.calls = 0

    def extract_text(self, image, *, timeout):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.text


class FakeStructurer:
    provider_id = "fake:structurer"

    def __init__(self, reply=None, on_call=None):
        self.reply = json.dumps(MENU_JSON) if reply is None else reply
        self.on_call = on_call
        self.calls = 0

    def complete_json(self, system, prompt, *, temperature, timeout):
        self.calls += 1
        if self.on_call:
            self.on_call()
        return self.reply


def _pipeline(db, vision=None, structurer=None) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        ModelCascadeExecutor(vision or [FakeVision()]),
        TextStructurer(structurer or FakeStructurer()),
        PersistenceCoordinator(db),
    )


def _counts(db):
    with db.connect() as conn:
        return {
            t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0]
            for t in ("user_profile", "canonical_menus", "menu_scan", "menu_dishes")
        }


PHOTO_X = RawImage(b"\xff\xd8\xffphoto-x", "image/jpeg")
PHOTO_Y = RawImage(b"\xff\xd8\xffphoto-y-other-angle", "image/jpeg")


@pytest.fixture
def db(tmp_path):
    d = Database(tmp_path / "scan.db")
    d.ensure_schema()
    return d


# ===========================================================================
# Scenarios
# ===========================================================================
class TestScenarios:
    def test_new_menu(self, db):
        result = _pipeline(db).run(PHOTO_X, "user-a")
        body = result.to_dict()
        assert set(body) == {"scanId", "method", "canonicalId", "dishCount", "newDishes"}
        assert body["method"] == "new_canonical_menu"
        assert body["dishCount"] == 3
        assert body["newDishes"] is True
        assert result.provider_id == "fake:vision"
        assert set(result.timings_ms) == {"extraction", "structuring", "persistence"}

    def test_same_user_same_image_twice(self, db):
        pipeline = _pipeline(db)
        first = pipeline.run(PHOTO_X, "user-a")
        before = _counts(db)
        second = pipeline.run(PHOTO_X, "user-a")

        body = second.to_dict()
        assert body["method"] == "duplicate_image_hash"
        assert body["scanId"] == first.scan_id
        assert body["existingScan"]["id"] == first.scan_id
        assert body["newDishes"] is False
        assert _counts(db) == before

    def test_other_user_same_menu(self, db):
        pipeline = _pipeline(db)
        first = pipeline.run(PHOTO_X, "user-a")
        second = pipeline.run(PHOTO_Y, "user-b")

        body = second.to_dict()
        assert body["method"] == "canonical_menu_reuse"
        assert body["canonicalId"] == first.canonical_id
        assert body["newDishes"] is False
        assert "existingScan" not in body
        counts = _counts(db)
        assert counts["canonical_menus"] == 1
        assert counts["menu_dishes"] == 3
        assert counts["menu_scan"] == 2

    def test_fallback_provider_text_used(self, db):
        p1 = FakeVision("a:1", error=ProviderCallError("HTTP 500", status=500))
        p2 = FakeVision("b:2")
        result = _pipeline(db, vision=[p1, p2]).run(PHOTO_X, "user-a")
        assert result.provider_id == "b:2"
        with db.connect() as conn:
            row = conn.execute("SELECT ocr_method, menu_raw_text FROM menu_scan").fetchone()
        assert row["ocr_method"] == "b:2"
        assert "Bruschetta" in row["menu_raw_text"]

    def test_extraction_metadata_logged(self, db, caplog):
        with caplog.at_level("INFO", logger="menuscan.scan_pipeline"):
            _pipeline(db).run(PHOTO_X, "user-a")
        assert "'provider': 'fake:vision'" in caplog.text
        assert "'char_length':" in caplog.text


# ===========================================================================
# Fatal paths
# ===========================================================================
class TestFatalPaths:
    def test_exhausted_persists_nothing(self, db):
        vision = [
            FakeVision("a:1", error=ProviderCallError("HTTP 500", status=500)),
            FakeVision("b:2", text="??"),
        ]
        structurer = FakeStructurer()
        with pytest.raises(ExtractionExhausted) as ei:
            _pipeline(db, vision=vision, structurer=structurer).run(PHOTO_X, "user-a")
        assert len(ei.value.failures) == 2
        assert structurer.calls == 0
        assert all(v == 0 for v in _counts(db).values())

    def test_invalid_structuring_persists_nothing(self, db):
        with pytest.raises(StructuringFailed):
            _pipeline(db, structurer=FakeStructurer(reply="not json")).run(PHOTO_X, "user-a")
        assert all(v == 0 for v in _counts(db).values())

    def test_cancel_before_persistence(self, db):
        deadline = Deadline()
        structurer = FakeStructurer(on_call=deadline.cancel)
        with pytest.raises(ScanCancelled) as ei:
            _pipeline(db, structurer=structurer).run(PHOTO_X, "user-a", deadline=deadline)
        assert ei.value.stage == "persistence"
        assert all(v == 0 for v in _counts(db).values())

    def test_user_id_required(self, db):
        with pytest.raises(ValueError):
            _pipeline(db).run(PHOTO_X, "")


# ===========================================================================
# build_pipeline
# ===========================================================================
class TestBuildPipeline:
    def test_skips_providers_without_keys(self, tmp_path):
        settings = Settings(
            db_path=tmp_path / "b.db",
            vision_cascade=ProviderSpec.parse_list("openrouter:openai/gpt-4o,openai:gpt-4o,tesseract:eng"),
            openai_api_key="sk-test",
            anthropic_api_key="sk-ant-test",
        )
        pipeline = build_pipeline(settings)
        assert pipeline.cascade.provider_ids == ["openai:gpt-4o", "tesseract:eng"]
        assert pipeline.structurer.provider.provider_id == "anthropic:claude-sonnet-4-5-20250929"

    def test_no_usable_providers(self, tmp_path):
        settings = Settings(
            db_path=tmp_path / "b.db",
            vision_cascade=ProviderSpec.parse_list("openrouter:openai/gpt-4o"),
            anthropic_api_key="sk-ant-test",
        )
        with pytest.raises(ValueError):
            build_pipeline(settings)

    def test_structuring_needs_key(self, tmp_path):
        settings = Settings(
            db_path=tmp_path / "b.db",
            vision_cascade=ProviderSpec.parse_list("tesseract:eng"),
        )
        with pytest.raises(ValueError):
            build_pipeline(settings)
