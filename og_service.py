# og_service.py
import asyncio
import logging
import secrets
from typing import Dict, List, Optional, Union

from pydantic import BaseModel

from db import make_engine
from errors import AppError
from file_storage import build_image_storage
from job_store import JobPage, JobStore
from mapping_store import MappingStore, normalize_page_url
from models import PRESETS, TEMPLATES, JobStatus, OgJob, OgJobRead, Platform, TemplateId, UrlMappingRead
from render_engine import coerce_platform, coerce_template, render_card
from settings import Settings
from source_resolver import SourceResolver, select_source

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 140
SUBTITLE_MAX_CHARS = 120


class CreateJobInput(BaseModel):
    title: str = ""
    subtitle: Optional[str] = None
    platform: Optional[str] = None
    template_id: Optional[str] = None
    page_url: Optional[str] = None
    source_image_url: Optional[str] = None
    source_image_base64: Optional[str] = None
    source_image_bytes: Optional[bytes] = None
    source_file_name: Optional[str] = None


def _clean(value: Optional[str]) -> Optional[str]:
    trimmed = (value or "").strip()
    return trimmed or None


def new_job_id() -> str:
    return secrets.token_urlsafe(10)  # 14 url-safe chars


class OgService:
    def __init__(
        self,
        cfg: Settings,
        engine=None,
        image_storage=None,
        resolver: Optional[SourceResolver] = None,
    ):
        self.settings = cfg
        self.engine = engine or make_engine(cfg.resolved_database_url)
        self.jobs = JobStore(self.engine)
        self.mappings = MappingStore(self.engine)
        self.image_storage = image_storage or build_image_storage(
            cfg.storage, cfg.resolved_image_dir, cfg.resolved_public_base_url
        )
        self.resolver = resolver or SourceResolver(
            max_bytes=cfg.max_remote_image_bytes,
            timeout_ms=cfg.remote_fetch_timeout_ms,
            allow_private_network=cfg.allow_private_source_images,
        )

    async def create_job(self, payload: CreateJobInput) -> OgJobRead:
        title = _clean(payload.title)
        if not title:
            raise AppError("TITLE_REQUIRED", "title is required", 400)
        if len(title) > TITLE_MAX_CHARS:
            raise AppError("TITLE_TOO_LONG", f"Title exceeds {TITLE_MAX_CHARS} characters", 400, {"max": TITLE_MAX_CHARS})

        subtitle = _clean(payload.subtitle)
        if subtitle and len(subtitle) > SUBTITLE_MAX_CHARS:
            raise AppError(
                "SUBTITLE_TOO_LONG", f"Subtitle exceeds {SUBTITLE_MAX_CHARS} characters", 400, {"max": SUBTITLE_MAX_CHARS}
            )

        platform = coerce_platform(_clean(payload.platform) or Platform.OG)
        template = coerce_template(_clean(payload.template_id) or TemplateId.GRADIENT_BOTTOM)
        page_url = _clean(payload.page_url)
        if page_url:
            page_url = normalize_page_url(page_url)

        source = select_source(
            url=payload.source_image_url,
            base64_payload=payload.source_image_base64,
            upload=payload.source_image_bytes,
            filename=payload.source_file_name,
        )
        resolved = await self.resolver.resolve(source)

        rendered = await asyncio.to_thread(
            render_card, resolved.data, title, subtitle, platform, template, self.settings.font_path
        )

        job_id = new_job_id()
        saved = self.image_storage.save_png(job_id, rendered.data)
        job = OgJob(
            id=job_id,
            source_type=resolved.kind.value,
            source_ref=resolved.ref,
            title=title,
            subtitle=subtitle,
            platform=platform.value,
            template_id=template.value,
            output_path=saved.output_path,
            image_url=saved.image_url,
            width=rendered.width,
            height=rendered.height,
            status=JobStatus.COMPLETED.value,
            error_message=None,
            created_at=self.jobs.next_created_at(),
        )
        try:
            self.jobs.insert(job)
        except Exception:
            self.image_storage.delete(saved)
            raise

        logger.info(
            "created job id=%s platform=%s template=%s source=%s",
            job_id, platform.value, template.value, resolved.kind.value,
        )

        mapped_page_url = None
        if page_url:
            mapped_page_url = self.mappings.bind(page_url, job_id, saved.image_url).page_url
        return OgJobRead(**job.model_dump(), mapped_page_url=mapped_page_url)

    def list_jobs(self, limit: Optional[int] = None, cursor: Optional[str] = None) -> JobPage:
        return self.jobs.list(limit, cursor)

    def get_job(self, job_id: str) -> OgJobRead:
        job = self.jobs.get_by_id(job_id)
        if job is None:
            raise AppError("JOB_NOT_FOUND", f"No job found for id: {job_id}", 404)
        return job

    def attach_to_url(self, page_url: str, job_id: str) -> UrlMappingRead:
        job = self.jobs.get_by_id(job_id)
        if job is None:
            raise AppError("JOB_NOT_FOUND", f"No job found for id: {job_id}", 404)
        return self.mappings.bind(page_url, job.id, job.image_url)

    def get_for_url(self, page_url: str) -> UrlMappingRead:
        mapping = self.mappings.lookup(page_url)
        if mapping is None:
            raise AppError("MAPPING_NOT_FOUND", f"No mapping found for URL: {normalize_page_url(page_url)}", 404)
        return mapping

    @staticmethod
    def templates() -> List[Dict[str, str]]:
        return [dict(t) for t in TEMPLATES]

    @staticmethod
    def presets() -> List[Dict[str, Union[str, int]]]:
        return [{"id": p.value, "width": size.width, "height": size.height} for p, size in PRESETS.items()]

    def close(self) -> None:
        self.engine.dispose()
