"""Authoritative ingredient records that can override AI-derived fields.

The store is read-only from the pipeline's perspective; rows are written by
a separate seeding process. ``OverlayLookup`` wraps any store so that a
failing read degrades to "no override" instead of aborting a scan.
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Protocol

from ..config import load_ingredient_db_path
from ..domain.models import IngredientRecord, SourceRef
from ..domain.normalize import normalize_risk, slugify
from ..errors import OverlayUnavailableError
from ..logging import get_logger


LOG = get_logger("scan-overlay")


# Shape written by the seeding job; JSON list columns hold string arrays or
# {title, url} objects for sources.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ingredients (
  slug              TEXT PRIMARY KEY,
  name              TEXT NOT NULL,
  risk_level        TEXT,
  notes             TEXT,
  regulatory_notes  TEXT,
  category          TEXT,
  aliases           TEXT,          -- JSON array of strings
  health_flags      TEXT,          -- JSON array of strings
  sources           TEXT,          -- JSON array of {title, url}
  updated_at        TEXT DEFAULT (datetime('now'))
);
"""


class IngredientOverlay(Protocol):
    def lookup(self, slug: str) -> Optional[IngredientRecord]:
        ...


def _json_list(raw: Any) -> List[Any]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        LOG.debug("Ignoring malformed JSON list column: %r", str(raw)[:120])
        return []
    return value if isinstance(value, list) else []


def _string_list(raw: Any) -> List[str]:
    return [str(item).strip() for item in _json_list(raw) if item is not None and str(item).strip()]


def _source_list(raw: Any) -> List[SourceRef]:
    out: List[SourceRef] = []
    for item in _json_list(raw):
        if not isinstance(item, dict):
            continue
        title = item.get("title").strip() if isinstance(item.get("title"), str) else ""
        url = item.get("url").strip() if isinstance(item.get("url"), str) else ""
        if not title and not url:
            continue
        out.append(SourceRef(title=title or None, url=url or None))
    return out


def map_ingredient_record(slug: str, data: Dict[str, Any]) -> IngredientRecord:
    """Map a stored row onto an IngredientRecord.

    ``risk_level`` wins over ``risk``; notes fall back to the regulatory notes.
    """
    regulatory = str(data.get("regulatory_notes") or "").strip()
    notes = str(data.get("notes") or "").strip() or regulatory or None
    return IngredientRecord(
        slug=slug,
        name=str(data.get("name") or slug),
        risk=normalize_risk(data.get("risk_level") or data.get("risk") or ""),
        notes=notes,
        regulatory_notes=regulatory,
        sources=_source_list(data.get("sources")),
        aliases=_string_list(data.get("aliases")),
        category=str(data.get("category") or "other"),
        health_flags=_string_list(data.get("health_flags")),
    )


class IngredientStore:
    """SQLite-backed ingredient record store.

    - Constructed explicitly with a path and handed to the services that need it.
    - ``open()`` creates one long-lived connection; repeated or concurrent
      calls converge on the same handle.
    - ``close()`` disposes it; the store can be reopened afterwards.
    """

    def __init__(self, db_path: Optional[str] = None, *, create_schema: bool = False) -> None:
        self.db_path = db_path or load_ingredient_db_path()
        self.create_schema = create_schema
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, dotenv_dir: Optional[str] = None) -> "IngredientStore":
        return cls(load_ingredient_db_path(dotenv_dir))

    def __enter__(self) -> "IngredientStore":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is not None:
                return self._conn
            if not self.create_schema and not os.path.isfile(self.db_path):
                raise OverlayUnavailableError(f"Ingredient store not found: {self.db_path}")
            try:
                if self.create_schema:
                    os.makedirs(os.path.dirname(os.path.abspath(self.db_path)) or ".", exist_ok=True)
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                if self.create_schema:
                    conn.executescript(SCHEMA_SQL)
                    conn.commit()
            except (sqlite3.Error, OSError) as exc:
                raise OverlayUnavailableError(f"Ingredient store cannot be opened: {exc}") from exc
            self._conn = conn
            LOG.info("Ingredient store path: %s", self.db_path)
            return conn

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            LOG.debug("Ingredient store connection closed")

    def get(self, slug: str) -> Optional[IngredientRecord]:
        key = slugify(slug)
        if not key:
            return None
        conn = self.open()
        try:
            with self._lock:
                row = conn.execute("SELECT * FROM ingredients WHERE slug = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise OverlayUnavailableError(f"Ingredient lookup failed for {key}: {exc}") from exc
        if row is None:
            return None
        return map_ingredient_record(key, dict(row))

    lookup = get


class OverlayLookup:
    """Best-effort overlay: any store failure means "no override"."""

    def __init__(self, store: Optional[IngredientOverlay] = None) -> None:
        self.store = store

    @property
    def enabled(self) -> bool:
        return self.store is not None

    def lookup(self, slug: str) -> Optional[IngredientRecord]:
        if self.store is None:
            return None
        try:
            return self.store.lookup(slug)
        except Exception as exc:  # noqa: BLE001 - overlay failures never abort a scan
            LOG.warning("Overlay lookup failed for %s; using AI data instead: %s", slug, exc)
            return None


__all__ = [
    "IngredientOverlay",
    "IngredientStore",
    "OverlayLookup",
    "SCHEMA_SQL",
    "map_ingredient_record",
]
