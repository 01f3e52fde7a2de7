"""
SQLite persistence for ad templates, indexed by site host.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Tuple, Union

from errors import NotFound, StorageError, ValidationError
from grayscale import GrayscaleBuffer, Region
from phash_matcher import fingerprint_from_hex, fingerprint_to_hex

logger = logging.getLogger(__name__)

TABLE = "ad_templates"
SCHEMA_VERSION = 3
DB_TIMEOUT = 5.0

_COLUMNS = (
    "id, host, image, width, height, duration, "
    "region_x, region_y, region_w, region_h, frame_width, frame_height, "
    "fingerprint, fingerprint_version"
)


@dataclass(frozen=True)
class AdTemplate:
    """
    A registered ad overlay.

    region is where the template was cut from a full frame of frame_size;
    None means the whole captured frame is the template.
    """
    id: Optional[int]
    host: str
    image: GrayscaleBuffer
    duration: int
    region: Optional[Region] = None
    frame_size: Optional[Tuple[int, int]] = None
    fingerprint: Optional[int] = None
    fingerprint_version: Optional[str] = None

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


def validate_duration(duration) -> int:
    """Durations are positive integer milliseconds."""
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        raise ValidationError(f"duration must be a positive integer, got {duration!r}")
    return duration


# -----------------------------
# row conversion
# -----------------------------
def _to_row(t: AdTemplate) -> tuple:
    r = t.region
    fw, fh = t.frame_size if t.frame_size else (None, None)
    fp = fingerprint_to_hex(t.fingerprint) if t.fingerprint is not None else None
    return (
        t.id, t.host, sqlite3.Binary(t.image.tobytes()), t.width, t.height, t.duration,
        r.x if r else None, r.y if r else None, r.w if r else None, r.h if r else None,
        fw, fh, fp, t.fingerprint_version if fp else None,
    )


def _from_row(row: sqlite3.Row) -> AdTemplate:
    region = None
    if row["region_x"] is not None:
        region = Region(row["region_x"], row["region_y"], row["region_w"], row["region_h"])
    frame_size = None
    if row["frame_width"] is not None:
        frame_size = (row["frame_width"], row["frame_height"])
    fp = fingerprint_from_hex(row["fingerprint"]) if row["fingerprint"] else None
    return AdTemplate(
        id=row["id"],
        host=row["host"],
        image=GrayscaleBuffer.from_bytes(bytes(row["image"]), row["width"], row["height"]),
        duration=row["duration"],
        region=region,
        frame_size=frame_size,
        fingerprint=fp,
        fingerprint_version=row["fingerprint_version"] if fp is not None else None,
    )


class TemplateStore:
    """
    Keyed table of AdTemplate records with a non-unique index on host.

    Ids are millisecond timestamps, bumped past the largest stored id so two
    templates registered within the same millisecond never collide.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(self.db_path, timeout=DB_TIMEOUT)
            except sqlite3.Error as exc:
                raise StorageError(f"cannot open {self.db_path}: {exc}") from exc
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -----------------------------
    # schema
    # -----------------------------
    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version "
            "(id INTEGER PRIMARY KEY CHECK (id = 1), "
            "version INTEGER NOT NULL)")
        row = conn.execute("SELECT version FROM schema_version WHERE id=1").fetchone()
        return row[0] if row else 0

    def _set_schema_version(self, conn: sqlite3.Connection, ver: int):
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (id, version) VALUES (1, ?)", (ver,))

    def _init_db(self):
        conn = self._get_conn()
        try:
            with conn:
                ver = self._get_schema_version(conn)
                if ver < 1:
                    conn.execute(f"""
                        CREATE TABLE IF NOT EXISTS {TABLE} (
                            id INTEGER PRIMARY KEY,
                            host TEXT NOT NULL,
                            image BLOB NOT NULL,
                            width INTEGER NOT NULL,
                            height INTEGER NOT NULL,
                            duration INTEGER NOT NULL
                        )""")
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_host ON {TABLE} (host)")
                    self._set_schema_version(conn, 1)
                if ver < 2:
                    self._add_columns(conn, {
                        "region_x": "INTEGER", "region_y": "INTEGER",
                        "region_w": "INTEGER", "region_h": "INTEGER",
                        "frame_width": "INTEGER", "frame_height": "INTEGER",
                    })
                    self._set_schema_version(conn, 2)
                if ver < 3:
                    self._add_columns(conn, {
                        "fingerprint": "TEXT", "fingerprint_version": "TEXT",
                    })
                    self._set_schema_version(conn, 3)
        except sqlite3.Error as exc:
            logger.error("DB init failed: %s", exc)
            raise StorageError(f"cannot initialize {self.db_path}: {exc}") from exc
        if ver and ver < SCHEMA_VERSION:
            logger.info("Migrated %s from schema v%d to v%d", self.db_path, ver, SCHEMA_VERSION)

    @staticmethod
    def _add_columns(conn: sqlite3.Connection, columns: dict):
        existing = {r[1] for r in conn.execute(f"PRAGMA table_info({TABLE})")}
        for name, decl in columns.items():
            if name not in existing:
                conn.execute(f"ALTER TABLE {TABLE} ADD COLUMN {name} {decl}")

    # -----------------------------
    # operations
    # -----------------------------
    def _next_id(self, conn: sqlite3.Connection) -> int:
        last = conn.execute(f"SELECT MAX(id) FROM {TABLE}").fetchone()[0]
        now_ms = int(time.time() * 1000)
        return now_ms if last is None else max(now_ms, last + 1)

    def put(self, template: AdTemplate) -> int:
        """Insert or overwrite a template; assigns an id when it has none."""
        if not template.host:
            raise ValidationError("template host is required")
        validate_duration(template.duration)
        conn = self._get_conn()
        try:
            with conn:
                if template.id is None:
                    template = replace(template, id=self._next_id(conn))
                conn.execute(
                    f"INSERT OR REPLACE INTO {TABLE} ({_COLUMNS}) "
                    "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    _to_row(template))
        except sqlite3.Error as exc:
            logger.error("Failed to store template for %s: %s", template.host, exc)
            raise StorageError(f"failed to store template: {exc}") from exc
        logger.debug("Stored template %s for %s", template.id, template.host)
        return template.id

    def get(self, template_id: int) -> AdTemplate:
        try:
            row = self._get_conn().execute(
                f"SELECT {_COLUMNS} FROM {TABLE} WHERE id=?", (template_id,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"failed to read template {template_id}: {exc}") from exc
        if row is None:
            raise NotFound(template_id)
        return _from_row(row)

    def query_by_host(self, host: str) -> List[AdTemplate]:
        """All templates whose host equals host exactly, in registration order."""
        try:
            rows = self._get_conn().execute(
                f"SELECT {_COLUMNS} FROM {TABLE} WHERE host=? ORDER BY id",
                (host,)).fetchall()
        except sqlite3.Error as exc:
            logger.error("Failed to retrieve templates for %s: %s", host, exc)
            raise StorageError(f"failed to retrieve templates: {exc}") from exc
        templates = []
        for r in rows:
            try:
                templates.append(_from_row(r))
            except ValidationError as exc:
                logger.warning("Skipping unreadable template %s: %s", r["id"], exc)
        return templates

    def update_duration(self, template_id: int, duration: int) -> None:
        """
        Change only the duration of an existing template.

        Raises:
            NotFound: no template has this id
        """
        validate_duration(duration)
        conn = self._get_conn()
        try:
            with conn:
                cur = conn.execute(
                    f"UPDATE {TABLE} SET duration=? WHERE id=?", (duration, template_id))
        except sqlite3.Error as exc:
            logger.error("Failed to update duration of %s: %s", template_id, exc)
            raise StorageError(f"failed to update duration: {exc}") from exc
        if cur.rowcount == 0:
            raise NotFound(template_id)

    def delete_by_host(self, host: str) -> int:
        """Remove every template of host; returns how many were removed."""
        conn = self._get_conn()
        try:
            with conn:
                cur = conn.execute(f"DELETE FROM {TABLE} WHERE host=?", (host,))
        except sqlite3.Error as exc:
            logger.error("Failed to delete templates of %s: %s", host, exc)
            raise StorageError(f"failed to delete templates: {exc}") from exc
        return cur.rowcount

    def hosts(self) -> List[Tuple[str, int]]:
        try:
            rows = self._get_conn().execute(
                f"SELECT host, COUNT(*) FROM {TABLE} GROUP BY host ORDER BY host").fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"failed to list hosts: {exc}") from exc
        return [(r[0], r[1]) for r in rows]
