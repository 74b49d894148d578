# menuscan/menus.py  - scans, canonical menus & dishes (SQL layer)
from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .db import Database
from .scan_types import now_iso


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {k: row[k] for k in row.keys()}


def _dish_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    d = _row_to_dict(row)
    try:
        d["tags"] = json.loads(d.get("tags") or "[]")
    except (TypeError, ValueError):
        d["tags"] = []
    return d


# ------------------------------------------------------------
# Users
# ------------------------------------------------------------
def get_user(db: Database, user_id: str) -> Optional[Dict[str, Any]]:
    with db.connect() as conn:
        row = conn.execute("SELECT * FROM user_profile WHERE id=?", (user_id,)).fetchone()
    return _row_to_dict(row) if row else None


def insert_user(db: Database, user_id: str, email: Optional[str] = None) -> None:
    """Plain INSERT; a concurrent creator surfaces as sqlite3.IntegrityError."""
    with db.connect() as conn:
        conn.execute(
            "INSERT INTO user_profile (id, email, created_at) VALUES (?, ?, ?)",
            (user_id, email, now_iso()),
        )


# ------------------------------------------------------------
# Canonical menus
# ------------------------------------------------------------
def insert_canonical_menu(db: Database, canonical_id: str, content_hash: str, dish_count: int) -> None:
    with db.connect() as conn:
        conn.execute(
            """
            INSERT INTO canonical_menus (id, content_hash, dish_count, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (canonical_id, content_hash, int(dish_count), now_iso()),
        )


def find_canonical_menu(db: Database, content_hash: str) -> Optional[Dict[str, Any]]:
    with db.connect() as conn:
        row = conn.execute(
            "SELECT * FROM canonical_menus WHERE content_hash=?", (content_hash,)
        ).fetchone()
    return _row_to_dict(row) if row else None


def get_canonical_menu(db: Database, canonical_id: str) -> Optional[Dict[str, Any]]:
    with db.connect() as conn:
        row = conn.execute("SELECT * FROM canonical_menus WHERE id=?", (canonical_id,)).fetchone()
    return _row_to_dict(row) if row else None


def set_first_scan_id(db: Database, canonical_id: str, scan_id: str) -> bool:
    """Backfill first_scan_id once; returns False when it was already set."""
    with db.connect() as conn:
        cur = conn.execute(
            "UPDATE canonical_menus SET first_scan_id=? WHERE id=? AND first_scan_id IS NULL",
            (scan_id, canonical_id),
        )
        return cur.rowcount > 0


def delete_canonical_menu(db: Database, canonical_id: str) -> None:
    """Drop a canonical row that never got a scan attached."""
    with db.connect() as conn:
        conn.execute("DELETE FROM canonical_menus WHERE id=? AND first_scan_id IS NULL", (canonical_id,))


# ------------------------------------------------------------
# Scans
# ------------------------------------------------------------
def insert_scan(
    db: Database,
    *,
    scan_id: str,
    user_id: str,
    menu_raw_text: str,
    ocr_method: str,
    image_hash: str,
    canonical_menu_id: str,
    restaurant_name: Optional[str] = None,
    location: Optional[str] = None,
) -> Dict[str, Any]:
    row = {
        "id": scan_id,
        "user_id": user_id,
        "menu_raw_text": menu_raw_text,
        "scanned_at": now_iso(),
        "restaurant_name": restaurant_name,
        "location": location,
        "ocr_method": ocr_method,
        "image_hash": image_hash,
        "canonical_menu_id": canonical_menu_id,
    }
    cols = ", ".join(row)
    marks = ", ".join("?" for _ in row)
    with db.connect() as conn:
        conn.execute(f"INSERT INTO menu_scan ({cols}) VALUES ({marks})", tuple(row.values()))
    return row


def find_latest_scan(db: Database, user_id: str, image_hash: str) -> Optional[Dict[str, Any]]:
    """Most recent scan of this exact photo by this user (rowid breaks timestamp ties)."""
    with db.connect() as conn:
        row = conn.execute(
            """
            SELECT * FROM menu_scan
             WHERE user_id=? AND image_hash=?
             ORDER BY scanned_at DESC, rowid DESC
             LIMIT 1
            """,
            (user_id, image_hash),
        ).fetchone()
    return _row_to_dict(row) if row else None


def list_user_scans(db: Database, user_id: str, *, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    with db.connect() as conn:
        rows = conn.execute(
            """
            SELECT s.id, s.scanned_at, s.restaurant_name, s.location, s.ocr_method,
                   s.image_hash, s.canonical_menu_id, c.dish_count
              FROM menu_scan s
              LEFT JOIN canonical_menus c ON c.id = s.canonical_menu_id
             WHERE s.user_id=?
             ORDER BY s.scanned_at DESC, s.rowid DESC
             LIMIT ? OFFSET ?
            """,
            (user_id, int(limit), int(offset)),
        ).fetchall()
    return [_row_to_dict(r) for r in rows]


# ------------------------------------------------------------
# Dishes
# ------------------------------------------------------------
def insert_dish_batch(db: Database, canonical_id: str, rows: Sequence[Dict[str, Any]]) -> int:
    """
    Insert one batch of dish rows in a single transaction.

    Each row: {dish_name, description, price (text|None), category,
    tags (list), position}. Either the whole batch commits or none of it.
    """
    with db.connect() as conn:
        conn.executemany(
            """
            INSERT INTO menu_dishes
                (canonical_menu_id, dish_name, description, price, category, tags, position)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    canonical_id,
                    r["dish_name"],
                    r.get("description"),
                    r.get("price"),
                    r.get("category"),
                    json.dumps(sorted(r.get("tags") or [])),
                    r.get("position"),
                )
                for r in rows
            ],
        )
    return len(rows)


def count_dishes(db: Database, canonical_id: str) -> int:
    with db.connect() as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM menu_dishes WHERE canonical_menu_id=?", (canonical_id,)
        ).fetchone()
    return int(row["n"]) if row else 0


def list_dishes(db: Database, canonical_id: str) -> List[Dict[str, Any]]:
    with db.connect() as conn:
        rows = conn.execute(
            """
            SELECT * FROM menu_dishes
             WHERE canonical_menu_id=?
             ORDER BY position ASC, id ASC
            """,
            (canonical_id,),
        ).fetchall()
    return [_dish_row_to_dict(r) for r in rows]


def _group_by_category(dishes: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # dishes arrive in position order; a repeated category name later on the
    # menu starts its own group
    groups: List[Dict[str, Any]] = []
    for d in dishes:
        cat = d.get("category") or "Other"
        if not groups or groups[-1]["name"] != cat:
            groups.append({"name": cat, "dishes": []})
        groups[-1]["dishes"].append({
            "id": d["id"],
            "name": d["dish_name"],
            "description": d.get("description"),
            "price": d.get("price"),
            "dietary_tags": d.get("tags") or [],
            "position": d.get("position"),
        })
    return groups


def get_menu_with_dishes(db: Database, canonical_id: str) -> Optional[Dict[str, Any]]:
    """Canonical menu + its dishes grouped by category in transcription order."""
    menu = get_canonical_menu(db, canonical_id)
    if not menu:
        return None
    menu["categories"] = _group_by_category(list_dishes(db, canonical_id))
    menu["stored_dish_count"] = sum(len(c["dishes"]) for c in menu["categories"])
    return menu
