# job_store.py
import threading
import time
from typing import Dict, List, NamedTuple, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from errors import AppError
from models import OgJob, OgJobRead, UrlMapping

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class MonotonicMillis:
    """Epoch-millisecond clock that never hands out the same value twice."""

    def __init__(self, last: int = 0, clock=time.time):
        self._last = last
        self._clock = clock
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            now = int(self._clock() * 1000)
            if now <= self._last:
                now = self._last + 1
            self._last = now
            return now


class JobPage(NamedTuple):
    items: List[OgJobRead]
    next_cursor: Optional[str] = None


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return max(1, min(MAX_PAGE_SIZE, int(limit)))


def parse_cursor(cursor: Optional[str]) -> Optional[int]:
    if cursor is None or str(cursor).strip() == "":
        return None
    try:
        value = int(str(cursor).strip())
    except ValueError:
        raise AppError("INVALID_CURSOR", "cursor must be a creation timestamp", 400)
    if value <= 0:
        raise AppError("INVALID_CURSOR", "cursor must be a creation timestamp", 400)
    return value


def _to_read(job: OgJob, page_url: Optional[str]) -> OgJobRead:
    return OgJobRead(**job.model_dump(), mapped_page_url=page_url)


class JobStore:
    def __init__(self, engine: Engine):
        self._engine = engine
        with Session(engine) as session:
            newest = session.exec(select(func.max(OgJob.created_at))).one()
        self.next_created_at = MonotonicMillis(last=newest or 0)

    def insert(self, job: OgJob) -> None:
        with Session(self._engine, expire_on_commit=False) as session:
            session.add(job)
            session.commit()

    def get_by_id(self, job_id: str) -> Optional[OgJobRead]:
        with Session(self._engine) as session:
            job = session.get(OgJob, job_id)
            if job is None:
                return None
            latest = self._latest_page_urls(session, [job.id])
            return _to_read(job, latest.get(job.id))

    def list(self, limit: Optional[int] = None, cursor: Optional[str] = None) -> JobPage:
        """Newest-first page of jobs strictly older than ``cursor``.

        One extra row is fetched to decide whether another page exists; the
        cursor handed back is the ``created_at`` of the oldest returned item.
        """
        safe_limit = clamp_limit(limit)
        before = parse_cursor(cursor)

        stmt = select(OgJob)
        if before is not None:
            stmt = stmt.where(OgJob.created_at < before)
        stmt = stmt.order_by(col(OgJob.created_at).desc()).limit(safe_limit + 1)

        with Session(self._engine) as session:
            rows = session.exec(stmt).all()
            has_more = len(rows) > safe_limit
            selected = rows[:safe_limit]
            latest = self._latest_page_urls(session, [row.id for row in selected])
            items = [_to_read(row, latest.get(row.id)) for row in selected]

        next_cursor = str(selected[-1].created_at) if has_more else None
        return JobPage(items=items, next_cursor=next_cursor)

    @staticmethod
    def _latest_page_urls(session: Session, job_ids: Sequence[str]) -> Dict[str, str]:
        if not job_ids:
            return {}
        stmt = (
            select(UrlMapping.job_id, UrlMapping.page_url)
            .where(col(UrlMapping.job_id).in_(job_ids))
            .order_by(col(UrlMapping.updated_at).desc())
        )
        latest: Dict[str, str] = {}
        for job_id, page_url in session.exec(stmt).all():
            latest.setdefault(job_id, page_url)
        return latest
