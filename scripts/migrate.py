#!/usr/bin/env python3
"""
SQLite migration helper for MenuScan.

- Creates any missing tables / indexes (including the unique user + image index)
- Adds menu_scan.image_hash and menu_scan.canonical_menu_id if missing
- Adds canonical_menus.first_scan_id if missing
- Adds menu_dishes.position if missing

Safe to run repeatedly.
"""

from __future__ import annotations

import argparse
import sqlite3
import sys
from pathlib import Path
from typing import List, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from menuscan.db import DEFAULT_DB_PATH, INDEX_STATEMENTS, SCHEMA_STATEMENTS  # noqa: E402

# (table, column, type) added after the first schema shipped
ADDED_COLUMNS: List[Tuple[str, str, str]] = [
    ("menu_scan", "image_hash", "TEXT"),
    ("menu_scan", "canonical_menu_id", "TEXT"),
    ("canonical_menus", "first_scan_id", "TEXT"),
    ("menu_dishes", "position", "INTEGER"),
]


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cur = conn.execute(f"PRAGMA table_info({table});")
    return any(row[1].lower() == column.lower() for row in cur.fetchall())


def migrate(db_path: Path = DEFAULT_DB_PATH) -> List[str]:
    """Bring an existing database up to date; returns the columns it added."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    added: List[str] = []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        for stmt in SCHEMA_STATEMENTS:
            conn.execute(stmt)

        for table, column, col_type in ADDED_COLUMNS:
            if not column_exists(conn, table, column):
                print(f"Adding column {table}.{column} ...")
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type};")
                added.append(f"{table}.{column}")
            else:
                print(f"Column {table}.{column} already exists.")

        for stmt in INDEX_STATEMENTS:
            try:
                conn.execute(stmt)
            except sqlite3.IntegrityError:
                # uq_scan_user_image cannot be built over existing duplicate scans
                print("Duplicate (user_id, image_hash) rows in menu_scan; remove them and re-run.")
                raise

        conn.commit()
        print("Migration complete.")
    finally:
        conn.close()
    return added


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    ap.add_argument("--db", type=Path, default=DEFAULT_DB_PATH, help="SQLite file to migrate")
    migrate(ap.parse_args().db)
