# menuscan/db.py
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Union

log = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]   # project root
DEFAULT_DB_PATH = ROOT / "storage" / "menuscan.db"

TABLES = ("user_profile", "canonical_menus", "menu_scan", "menu_dishes")


# ------------------------------------------------------------
# Schema (idempotent; safe to call repeatedly)
# ------------------------------------------------------------
SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS user_profile (
      id          TEXT PRIMARY KEY,
      email       TEXT,
      created_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS canonical_menus (
      id             TEXT PRIMARY KEY,
      content_hash   TEXT NOT NULL UNIQUE,
      dish_count     INTEGER NOT NULL DEFAULT 0,
      created_at     TEXT NOT NULL,
      first_scan_id  TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS menu_scan (
      id                 TEXT PRIMARY KEY,
      user_id            TEXT NOT NULL,
      menu_raw_text      TEXT,
      scanned_at         TEXT NOT NULL,
      restaurant_name    TEXT,
      location           TEXT,
      ocr_method         TEXT,
      image_hash         TEXT,
      canonical_menu_id  TEXT,
      FOREIGN KEY (user_id) REFERENCES user_profile(id),
      FOREIGN KEY (canonical_menu_id) REFERENCES canonical_menus(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS menu_dishes (
      id                 INTEGER PRIMARY KEY AUTOINCREMENT,
      canonical_menu_id  TEXT NOT NULL,
      dish_name          TEXT NOT NULL,
      description        TEXT,
      price              TEXT,               -- exact decimal text, NULL when unpriced
      category           TEXT,
      tags               TEXT,               -- sorted JSON list
      position           INTEGER,
      FOREIGN KEY (canonical_menu_id) REFERENCES canonical_menus(id) ON DELETE CASCADE
    )
    """,
)

INDEX_STATEMENTS = (
    # one scan per (user, photo); NULL image_hash rows from old schemas stay distinct
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_scan_user_image ON menu_scan(user_id, image_hash)",
    "CREATE INDEX IF NOT EXISTS idx_scan_user_time ON menu_scan(user_id, scanned_at)",
    "CREATE INDEX IF NOT EXISTS idx_scan_canonical ON menu_scan(canonical_menu_id)",
    "CREATE INDEX IF NOT EXISTS idx_dishes_canonical ON menu_dishes(canonical_menu_id)",
    "CREATE INDEX IF NOT EXISTS idx_dishes_pos ON menu_dishes(canonical_menu_id, position)",
)


class Database:
    """
    Handle on one SQLite file.

    Every unit of work opens its own connection through connect(), so
    concurrent scans never share a connection; uniqueness constraints in the
    schema are what keeps them consistent.
    """

    def __init__(self, path: Union[str, Path] = DEFAULT_DB_PATH, *, timeout: float = 30.0):
        self.path = Path(path)
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"Database({str(self.path)!r})"

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on success, rolls back on error, always closes."""
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            cur = conn.cursor()
            for stmt in SCHEMA_STATEMENTS:
                cur.execute(stmt)
            for stmt in INDEX_STATEMENTS:
                cur.execute(stmt)

    def table_columns(self, table: str) -> List[str]:
        with self.connect() as conn:
            return [r[1] for r in conn.execute(f"PRAGMA table_info({table});").fetchall()]

    def column_exists(self, table: str, col: str) -> bool:
        return col.lower() in (c.lower() for c in self.table_columns(table))

    def health(self) -> Dict[str, Any]:
        """Table presence, in the shape the portal's /db/health reports."""
        try:
            with self.connect() as conn:
                rows = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()
        except sqlite3.Error as e:
            log.error("DB health check failed for %s: %s", self.path, e)
            return {"ok": False, "path": str(self.path), "error": str(e)}

        present = {r["name"] for r in rows}
        tables = {t: (t in present) for t in TABLES}
        return {"ok": all(tables.values()), "path": str(self.path), "tables": tables}
