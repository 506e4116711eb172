import json
import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, Any, List

from showroom.errors import ConflictError, NotFoundError
from showroom.reconciler import ListingImageRepository
from showroom.schemas import Image


def _now_ms() -> int:
    return int(time.time() * 1000)


class _SqliteStore(ABC):
    def __init__(self, db_path: str):
        self.db_path = db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init()

    def _conn(self):
        return sqlite3.connect(self.db_path, check_same_thread=False)

    @abstractmethod
    def _init(self):
        """Create the tables this store needs."""


class JobStore(_SqliteStore):
    """Async generative-fill jobs, resolved by the Cloudinary webhook."""

    def _init(self):
        with self._conn() as c:
            c.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              public_id TEXT NOT NULL,
              status TEXT NOT NULL,
              created_at_ms INTEGER NOT NULL,
              updated_at_ms INTEGER NOT NULL,
              transformation TEXT,
              urls TEXT,
              error TEXT
            )
            """)
            c.commit()

    def create(self, job_id: str, public_id: str, transformation: Optional[str] = None):
        now = _now_ms()
        with self._conn() as c:
            c.execute(
                "INSERT INTO jobs(job_id,public_id,status,created_at_ms,updated_at_ms,transformation) "
                "VALUES(?,?,?,?,?,?)",
                (job_id, public_id, "processing", now, now, transformation),
            )
            c.commit()

    def set_status(self, job_id: str, status: str, *, urls: Optional[List[str]] = None,
                   error: Optional[str] = None) -> bool:
        fields = ["status=?", "updated_at_ms=?"]
        values: List[Any] = [status, _now_ms()]
        if urls is not None:
            fields.append("urls=?")
            values.append(json.dumps(urls))
        if error is not None:
            fields.append("error=?")
            values.append(error)
        values.append(job_id)
        with self._conn() as c:
            cur = c.execute(f"UPDATE jobs SET {', '.join(fields)} WHERE job_id=?", values)
            c.commit()
            return cur.rowcount > 0

    def latest_processing(self, public_id: str) -> Optional[str]:
        with self._conn() as c:
            cur = c.execute(
                "SELECT job_id FROM jobs WHERE public_id=? AND status='processing' "
                "ORDER BY created_at_ms DESC LIMIT 1",
                (public_id,),
            )
            row = cur.fetchone()
            return row[0] if row else None

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._conn() as c:
            cur = c.execute(
                "SELECT job_id,public_id,status,transformation,urls,error FROM jobs WHERE job_id=?",
                (job_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            return {
                "job_id": row[0],
                "public_id": row[1],
                "status": row[2],
                "transformation": row[3],
                "urls": json.loads(row[4]) if row[4] else [],
                "error": row[5],
            }


class ListingStore(_SqliteStore, ListingImageRepository):
    """Listing image arrays; updates always replace the whole array."""

    def _init(self):
        with self._conn() as c:
            c.execute("""
            CREATE TABLE IF NOT EXISTS listings (
              listing_id TEXT PRIMARY KEY,
              title TEXT,
              created_at_ms INTEGER NOT NULL,
              updated_at_ms INTEGER NOT NULL
            )
            """)
            c.execute("""
            CREATE TABLE IF NOT EXISTS listing_images (
              listing_id TEXT NOT NULL,
              position INTEGER NOT NULL,
              public_id TEXT NOT NULL,
              url TEXT NOT NULL,
              processed INTEGER NOT NULL DEFAULT 0,
              PRIMARY KEY (listing_id, position)
            )
            """)
            c.commit()

    def create_listing(self, listing_id: str, title: str = "", images: Optional[List[Image]] = None) -> List[Image]:
        if self.exists(listing_id):
            raise ConflictError(f"Listing already exists: {listing_id}")
        now = _now_ms()
        with self._conn() as c:
            c.execute(
                "INSERT INTO listings(listing_id,title,created_at_ms,updated_at_ms) VALUES(?,?,?,?)",
                (listing_id, title, now, now),
            )
            self._write_images(c, listing_id, images or [])
            c.commit()
        return list(images or [])

    @staticmethod
    def _write_images(c, listing_id: str, images: List[Image]):
        c.execute("DELETE FROM listing_images WHERE listing_id=?", (listing_id,))
        c.executemany(
            "INSERT INTO listing_images(listing_id,position,public_id,url,processed) VALUES(?,?,?,?,?)",
            [(listing_id, i, img.public_id, img.url, int(img.processed)) for i, img in enumerate(images)],
        )

    def exists(self, listing_id: str) -> bool:
        with self._conn() as c:
            cur = c.execute("SELECT 1 FROM listings WHERE listing_id=?", (listing_id,))
            return cur.fetchone() is not None

    def get_images(self, listing_id: str) -> Optional[List[Image]]:
        if not self.exists(listing_id):
            return None
        with self._conn() as c:
            cur = c.execute(
                "SELECT public_id,url,processed FROM listing_images WHERE listing_id=? ORDER BY position",
                (listing_id,),
            )
            return [Image(public_id=r[0], url=r[1], processed=bool(r[2])) for r in cur.fetchall()]

    def replace_images(self, listing_id: str, images: List[Image]) -> List[Image]:
        if not self.exists(listing_id):
            raise NotFoundError(f"Listing not found: {listing_id}")
        with self._conn() as c:
            self._write_images(c, listing_id, images)
            c.execute("UPDATE listings SET updated_at_ms=? WHERE listing_id=?", (_now_ms(), listing_id))
            c.commit()
        return list(images)
