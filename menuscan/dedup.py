# menuscan/dedup.py
"""
Scan classification against what is already stored.

    UserDuplicate   same user already scanned these exact image bytes
    CanonicalMatch  some user already produced a menu with this content hash
    Novel           neither

Read-only. Columns missing from an older live schema are treated as
"no match" rather than failing the scan (see scripts/migrate.py).
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from . import menus
from .db import Database
from .errors import PersistenceError

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class UserDuplicate:
    existing_scan: Dict[str, Any]


@dataclass(frozen=True)
class CanonicalMatch:
    canonical_menu: Dict[str, Any]


@dataclass(frozen=True)
class Novel:
    pass


Classification = Union[UserDuplicate, CanonicalMatch, Novel]


def _is_missing_column(e: sqlite3.Error) -> bool:
    return isinstance(e, sqlite3.OperationalError) and "no such column" in str(e).lower()


class DedupStore:
    def __init__(self, db: Database):
        self.db = db

    def _lookup(self, step: str, fn: Callable[[], Optional[T]]) -> Optional[T]:
        try:
            return fn()
        except sqlite3.Error as e:
            if _is_missing_column(e):
                log.warning("%s: column missing in live schema, treating as not found (%s)", step, e)
                return None
            raise PersistenceError(step, str(e)) from e

    def find_user_duplicate(self, user_id: str, image_hash: str) -> Optional[Dict[str, Any]]:
        return self._lookup("dedup_user_scan", lambda: menus.find_latest_scan(self.db, user_id, image_hash))

    def find_canonical(self, content_hash: str) -> Optional[Dict[str, Any]]:
        return self._lookup("dedup_canonical", lambda: menus.find_canonical_menu(self.db, content_hash))

    def classify(self, user_id: str, image_hash: str, content_hash: str) -> Classification:
        existing = self.find_user_duplicate(user_id, image_hash)
        if existing:
            return UserDuplicate(existing)

        canonical = self.find_canonical(content_hash)
        if canonical:
            return CanonicalMatch(canonical)

        return Novel()
