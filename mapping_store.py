# mapping_store.py
import threading
from typing import Optional

import httpx
from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from errors import AppError
from job_store import MonotonicMillis
from models import UrlMapping, UrlMappingRead


def normalize_page_url(raw_url: str) -> str:
    """Canonical key for a page: absolute http(s) URL without its fragment."""
    try:
        url = httpx.URL((raw_url or "").strip())
    except (httpx.InvalidURL, TypeError, ValueError):
        raise AppError("INVALID_PAGE_URL", "page_url must be a valid URL", 400)

    if not url.scheme:
        raise AppError("INVALID_PAGE_URL", "page_url must be a valid URL", 400)
    if url.scheme not in ("http", "https"):
        raise AppError("INVALID_PAGE_URL", "page_url must use http or https", 400)
    if not url.host:
        raise AppError("INVALID_PAGE_URL", "page_url must be a valid URL", 400)

    # bare origins get the root path
    return str(url.copy_with(path=url.path, fragment=None))


class MappingStore:
    def __init__(self, engine: Engine):
        self._engine = engine
        self._lock = threading.Lock()
        with Session(engine) as session:
            newest = session.exec(select(func.max(UrlMapping.updated_at))).one()
        self._clock = MonotonicMillis(last=newest or 0)

    def _insert(self):
        if self._engine.dialect.name == "postgresql":
            return postgresql.insert(UrlMapping.__table__)
        return sqlite.insert(UrlMapping.__table__)

    def bind(self, page_url: str, job_id: str, image_url: str) -> UrlMappingRead:
        """Point ``page_url`` at ``job_id``, overwriting any previous binding."""
        key = normalize_page_url(page_url)
        with self._lock:
            updated_at = self._clock()
            stmt = self._insert().values(
                page_url=key, job_id=job_id, image_url=image_url, updated_at=updated_at
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["page_url"],
                set_={
                    "job_id": stmt.excluded.job_id,
                    "image_url": stmt.excluded.image_url,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            with self._engine.begin() as conn:
                conn.execute(stmt)

        return UrlMappingRead(page_url=key, job_id=job_id, image_url=image_url, updated_at=updated_at)

    def lookup(self, page_url: str) -> Optional[UrlMappingRead]:
        key = normalize_page_url(page_url)
        with Session(self._engine) as session:
            row = session.get(UrlMapping, key)
            if row is None:
                return None
            return UrlMappingRead(**row.model_dump())
