# menuscan/persistence.py
"""
Durable writes for one scan, in a fixed order:

    user ensure -> canonical menu -> scan record -> first_scan_id backfill -> dish batches

There is no transaction spanning all of these. Each step commits on its own;
uniqueness constraints (user id, canonical content_hash, user + image hash)
settle races between concurrent scans. A failed required step raises
PersistenceError and leaves whatever already committed in place.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from . import menus
from .db import Database
from .dedup import CanonicalMatch, DedupStore, Novel, UserDuplicate
from .errors import PersistenceError
from .scan_types import ExtractedText, StructuredMenu, price_text

log = logging.getLogger(__name__)

DISH_BATCH_SIZE = 10

METHOD_DUPLICATE = "duplicate_image_hash"
METHOD_REUSE = "canonical_menu_reuse"
METHOD_NEW = "new_canonical_menu"


@dataclass
class PersistenceOutcome:
    scan_id: str
    canonical_menu_id: str
    method: str
    dish_count: int
    new_dishes: bool
    existing_scan: Optional[Dict[str, Any]] = None
    failed_batches: List[int] = field(default_factory=list)


def dish_rows(menu: StructuredMenu) -> List[Dict[str, Any]]:
    """Flatten a StructuredMenu into menu_dishes rows (1-based position)."""
    rows = []
    for pos, (category, dish) in enumerate(menu.iter_dishes(), start=1):
        rows.append({
            "dish_name": dish.name,
            "description": dish.description,
            "price": price_text(dish.price),
            "category": category,
            "tags": sorted(dish.dietary_tags),
            "position": pos,
        })
    return rows


class PersistenceCoordinator:
    def __init__(
        self,
        db: Database,
        dedup: Optional[DedupStore] = None,
        *,
        batch_size: int = DISH_BATCH_SIZE,
        batch_retries: int = 0,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.db = db
        self.dedup = dedup or DedupStore(db)
        self.batch_size = batch_size
        self.batch_retries = max(0, batch_retries)

    # ------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------
    def ensure_user(self, user_id: str, email: Optional[str] = None) -> bool:
        """Create the profile if absent. Returns True when this call created it."""
        try:
            if menus.get_user(self.db, user_id):
                return False
            menus.insert_user(self.db, user_id, email)
            log.info("Created user profile %s", user_id)
            return True
        except sqlite3.IntegrityError:
            # someone else created it between our read and insert
            return False
        except sqlite3.Error as e:
            raise PersistenceError("ensure_user", str(e)) from e

    def _create_canonical(self, content_hash: str, dish_count: int) -> Optional[str]:
        """New canonical id, or None when another scan created this hash first."""
        canonical_id = uuid.uuid4().hex
        try:
            menus.insert_canonical_menu(self.db, canonical_id, content_hash, dish_count)
        except sqlite3.IntegrityError:
            log.info("Canonical menu for %s created concurrently; reusing it", content_hash[:12])
            return None
        except sqlite3.Error as e:
            raise PersistenceError("insert_canonical_menu", str(e)) from e
        return canonical_id

    def _insert_scan(
        self,
        user_id: str,
        menu: StructuredMenu,
        extracted: ExtractedText,
        image_hash: str,
        canonical_id: str,
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Insert the scan row. Returns (scan_id, None), or (existing_id, existing_scan)
        when a concurrent upload of the same photo by this user got there first.
        """
        scan_id = uuid.uuid4().hex
        try:
            menus.insert_scan(
                self.db,
                scan_id=scan_id,
                user_id=user_id,
                menu_raw_text=extracted.text,
                ocr_method=extracted.provider_id,
                image_hash=image_hash,
                canonical_menu_id=canonical_id,
                restaurant_name=menu.restaurant.name,
                location=menu.restaurant.location,
            )
        except sqlite3.IntegrityError as e:
            try:
                prior = menus.find_latest_scan(self.db, user_id, image_hash)
            except sqlite3.Error as read_err:
                raise PersistenceError("insert_scan", str(read_err)) from e
            if not prior:
                raise PersistenceError("insert_scan", str(e)) from e
            log.info("Scan of image %s by %s inserted concurrently as %s", image_hash[:12], user_id, prior["id"])
            return prior["id"], prior
        except sqlite3.Error as e:
            raise PersistenceError("insert_scan", str(e)) from e
        return scan_id, None

    def _backfill_first_scan(self, canonical_id: str, scan_id: str) -> None:
        try:
            menus.set_first_scan_id(self.db, canonical_id, scan_id)
        except sqlite3.Error as e:
            log.warning("first_scan_id backfill failed for %s: %s", canonical_id, e)

    def insert_dishes(self, canonical_id: str, rows: List[Dict[str, Any]]) -> Tuple[int, List[int]]:
        """Insert rows in batches; returns (inserted_count, failed_batch_numbers)."""
        inserted = 0
        failed: List[int] = []
        total = (len(rows) + self.batch_size - 1) // self.batch_size

        for n, start in enumerate(range(0, len(rows), self.batch_size), start=1):
            batch = rows[start:start + self.batch_size]
            for attempt in range(self.batch_retries + 1):
                try:
                    inserted += menus.insert_dish_batch(self.db, canonical_id, batch)
                    break
                except sqlite3.Error as e:
                    log.warning(
                        "Dish batch %d/%d for %s failed (attempt %d): %s",
                        n, total, canonical_id, attempt + 1, e,
                    )
            else:
                failed.append(n)

        if failed:
            log.warning(
                "Inserted %d of %d dishes for %s; failed batches: %s",
                inserted, len(rows), canonical_id, failed,
            )
        return inserted, failed

    def _duplicate_outcome(self, user_id: str, image_hash: str, prior: Dict[str, Any]) -> PersistenceOutcome:
        canonical_id = prior.get("canonical_menu_id")
        canonical = None
        if canonical_id:
            try:
                canonical = menus.get_canonical_menu(self.db, canonical_id)
            except sqlite3.Error as e:
                raise PersistenceError("read_canonical_menu", str(e)) from e
        log.info("User %s re-scanned image %s; returning scan %s", user_id, image_hash[:12], prior["id"])
        return PersistenceOutcome(
            scan_id=prior["id"],
            canonical_menu_id=canonical_id,
            method=METHOD_DUPLICATE,
            dish_count=int(canonical["dish_count"]) if canonical else 0,
            new_dishes=False,
            existing_scan=prior,
        )

    # ------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------
    def save(
        self,
        user_id: str,
        menu: StructuredMenu,
        extracted: ExtractedText,
        image_hash: str,
        content_hash: str,
        email: Optional[str] = None,
    ) -> PersistenceOutcome:
        verdict = self.dedup.classify(user_id, image_hash, content_hash)

        if isinstance(verdict, UserDuplicate):
            return self._duplicate_outcome(user_id, image_hash, verdict.existing_scan)

        self.ensure_user(user_id, email)

        if isinstance(verdict, Novel):
            canonical_id = self._create_canonical(content_hash, menu.dish_count)
            if canonical_id is not None:
                return self._save_new(user_id, menu, extracted, image_hash, canonical_id)

            # lost the race: proceed as a match on the winner's row
            canonical = self.dedup.find_canonical(content_hash)
            if not canonical:
                raise PersistenceError(
                    "insert_canonical_menu", f"content_hash {content_hash} conflicted but cannot be read back"
                )
            verdict = CanonicalMatch(canonical)

        canonical = verdict.canonical_menu
        scan_id, prior = self._insert_scan(user_id, menu, extracted, image_hash, canonical["id"])
        if prior is not None:
            return self._duplicate_outcome(user_id, image_hash, prior)

        log.info("Scan %s reuses canonical menu %s", scan_id, canonical["id"])
        return PersistenceOutcome(
            scan_id=scan_id,
            canonical_menu_id=canonical["id"],
            method=METHOD_REUSE,
            dish_count=int(canonical["dish_count"]),
            new_dishes=False,
        )

    def _save_new(
        self,
        user_id: str,
        menu: StructuredMenu,
        extracted: ExtractedText,
        image_hash: str,
        canonical_id: str,
    ) -> PersistenceOutcome:
        scan_id, prior = self._insert_scan(user_id, menu, extracted, image_hash, canonical_id)
        if prior is not None:
            # the racing upload owns this photo; our canonical row has no scan
            try:
                menus.delete_canonical_menu(self.db, canonical_id)
            except sqlite3.Error as e:
                log.warning("Could not drop unused canonical menu %s: %s", canonical_id, e)
            return self._duplicate_outcome(user_id, image_hash, prior)

        self._backfill_first_scan(canonical_id, scan_id)
        inserted, failed = self.insert_dishes(canonical_id, dish_rows(menu))
        log.info(
            "Scan %s created canonical menu %s with %d/%d dishes",
            scan_id, canonical_id, inserted, menu.dish_count,
        )
        return PersistenceOutcome(
            scan_id=scan_id,
            canonical_menu_id=canonical_id,
            method=METHOD_NEW,
            dish_count=inserted,
            new_dishes=True,
            failed_batches=failed,
        )
