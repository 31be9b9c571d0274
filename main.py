# main.py
# ------------------------------------------------------------------------------------
#  FastAPI service for OG cards:
#  - POST /v1/og/jobs                 -> render a card (url | base64 | multipart upload)
#  - GET  /v1/og/jobs                 -> newest-first list, cursor paginated
#  - GET  /v1/og/jobs/{id}            -> one job (+ latest mapped page URL)
#  - POST /v1/og/mappings             -> bind a page URL to a job (last write wins)
#  - GET  /v1/og/mappings/by-url      -> resolve a page URL
#  - GET  /v1/og/presets|templates    -> static catalogues
#  - GET  /assets/og/{file}           -> serve local PNGs or stream from R2
#  - GET  /health, /debug/config      -> runtime info (debug route only when DEBUG)
#  Every /v1/og/* route goes through the access gate (API key + per-tier rate limit).
#  Persistence:
#    * SQLModel + SQLite (og.db) for jobs and URL mappings (survives restarts)
#  Storage:
#    * local PNG files under IMAGE_DIR, or R2 uploads when STORAGE=r2
# ------------------------------------------------------------------------------------

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from access_gate import AccessGate, extract_api_key, rate_limit_headers
from errors import AppError
from file_storage import LocalImageStorage, is_card_filename
from models import OgJobRead, UrlMappingRead
from og_service import CreateJobInput, OgService
from settings import Settings, settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

UPLOAD_FIELD = "source_image_file"
MAX_FORM_FILES = 2


# ---------- Schemas ----------
class CreateJobRequest(BaseModel):
    title: str = Field(..., description="Card title, up to 140 characters")
    subtitle: Optional[str] = Field(None, description="Optional subtitle, up to 120 characters")
    platform: Optional[str] = Field(None, description="og | twitter | linkedin")
    template_id: Optional[str] = Field(None, description="gradient-bottom | center-dark")
    page_url: Optional[str] = Field(None, description="Page to bind the card to")
    source_image_url: Optional[str] = Field(None, description="Remote http(s) image")
    source_image_base64: Optional[str] = Field(None, description="Base64 or data: URL image")


class CreateMappingRequest(BaseModel):
    page_url: str
    job_id: str


def _iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def job_payload(job: OgJobRead) -> Dict[str, Any]:
    return {**job.model_dump(), "created_at_iso": _iso(job.created_at)}


def mapping_payload(mapping: UrlMappingRead) -> Dict[str, Any]:
    return {**mapping.model_dump(), "updated_at_iso": _iso(mapping.updated_at)}


def _client_address(request: Request, trust_proxy: bool) -> str:
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def get_service(request: Request) -> OgService:
    return request.app.state.service


def require_access(
    request: Request,
    response: Response,
    x_api_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
):
    gate: AccessGate = request.app.state.gate
    cfg: Settings = request.app.state.settings
    caller, decision = gate.admit(
        extract_api_key(x_api_key, authorization),
        _client_address(request, cfg.trust_proxy),
    )
    headers = {"x-api-key-tier": caller.tier.value, **rate_limit_headers(decision)}
    if caller.key_name:
        headers["x-api-key-name"] = caller.key_name
    # re-applied by the error handlers
    request.state.access_headers = headers
    response.headers.update(headers)
    return caller


def _access_headers(request: Request) -> Dict[str, str]:
    return dict(getattr(request.state, "access_headers", {}))


async def _read_create_request(request: Request) -> CreateJobInput:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        try:
            form = await request.form(max_files=MAX_FORM_FILES)
        except StarletteHTTPException as exc:
            if str(exc.detail).startswith("Too many files"):
                raise AppError("MULTIPLE_FILES_NOT_SUPPORTED", f"Only one {UPLOAD_FIELD} is allowed", 400)
            raise AppError("INVALID_REQUEST", f"Malformed multipart body: {exc.detail}", 400)
        upload: Optional[UploadFile] = None
        fields: Dict[str, str] = {}
        for name, value in form.multi_items():
            if isinstance(value, UploadFile):
                if name != UPLOAD_FIELD:
                    raise AppError("INVALID_FILE_FIELD", f"Use {UPLOAD_FIELD} as the multipart file field name", 400)
                if upload is not None:
                    raise AppError("MULTIPLE_FILES_NOT_SUPPORTED", f"Only one {UPLOAD_FIELD} is allowed", 400)
                upload = value
                continue
            fields[name] = value

        data = await upload.read() if upload is not None else None
        return CreateJobInput(
            title=fields.get("title", ""),
            subtitle=fields.get("subtitle"),
            platform=fields.get("platform"),
            template_id=fields.get("template_id"),
            page_url=fields.get("page_url"),
            source_image_url=fields.get("source_image_url"),
            source_image_bytes=data,
            source_file_name=upload.filename if upload is not None else None,
        )

    try:
        body = CreateJobRequest.model_validate(await request.json())
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise AppError("INVALID_REQUEST", "Request body must be JSON or multipart/form-data", 400)
    except ValidationError as exc:
        raise AppError(
            "INVALID_REQUEST",
            "Request body failed validation",
            400,
            {"issues": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
        )
    return CreateJobInput(**body.model_dump())


# ---------- Routes ----------
api = APIRouter(prefix="/v1/og", dependencies=[Depends(require_access)])


@api.post("/jobs", status_code=201)
async def create_job(request: Request, service: OgService = Depends(get_service)):
    payload = await _read_create_request(request)
    job = await service.create_job(payload)
    return job_payload(job)


@api.get("/jobs")
def list_jobs(
    limit: Optional[int] = Query(None, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    service: OgService = Depends(get_service),
):
    page = service.list_jobs(limit=limit, cursor=cursor)
    return {"items": [job_payload(job) for job in page.items], "next_cursor": page.next_cursor}


@api.get("/jobs/{job_id}")
def get_job(job_id: str, service: OgService = Depends(get_service)):
    return job_payload(service.get_job(job_id))


@api.post("/mappings")
def create_mapping(payload: CreateMappingRequest, service: OgService = Depends(get_service)):
    return mapping_payload(service.attach_to_url(payload.page_url, payload.job_id))


@api.get("/mappings/by-url")
def get_mapping(url: str = Query(...), service: OgService = Depends(get_service)):
    return mapping_payload(service.get_for_url(url))


@api.get("/presets")
def list_presets(service: OgService = Depends(get_service)):
    return service.presets()


@api.get("/templates")
def list_templates(service: OgService = Depends(get_service)):
    return service.templates()


def create_app(app_settings: Optional[Settings] = None, service: Optional[OgService] = None) -> FastAPI:
    cfg = app_settings or settings
    app = FastAPI(title="OG Card API", version="0.1.0")
    app.state.settings = cfg
    app.state.gate = AccessGate.from_settings(cfg)
    app.state.service = service

    # 🔴 In prod, tighten this list to your domains
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["retry-after", "x-rate-limit-limit", "x-rate-limit-remaining", "x-rate-limit-reset"],
    )

    @app.on_event("startup")
    def _on_startup():
        if app.state.service is None:
            app.state.service = OgService(cfg)

    @app.on_event("shutdown")
    def _on_shutdown():
        if app.state.service is not None:
            app.state.service.close()

    # ---------- Errors ----------
    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        headers = {**_access_headers(request), **exc.headers}
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        code = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}.get(exc.status_code, "HTTP_ERROR")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": code, "message": str(exc.detail)}},
            headers={**_access_headers(request), **(getattr(exc, "headers", None) or {})},
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        code = "INVALID_REQUEST" if request.method == "POST" else "INVALID_QUERY"
        issues = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"error": {"code": code, "message": "Request failed validation", "issues": issues}},
            headers=_access_headers(request),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
        )

    # ---------- Health ----------
    @app.get("/health")
    def health():
        gate: AccessGate = app.state.gate
        return {
            "ok": True,
            "auth_required": gate.require_api_key,
            "configured_api_keys": len(gate.api_keys),
            "storage": cfg.storage,
        }

    # ---------- Asset route ----------
    @app.get("/assets/og/{filename}")
    def serve_card(filename: str):
        if not is_card_filename(filename):
            raise AppError("FILE_NOT_FOUND", "file not found", 404)
        storage = app.state.service.image_storage

        if isinstance(storage, LocalImageStorage):
            path = storage.local_path(filename)
            if path is None:
                raise AppError("FILE_NOT_FOUND", "file not found", 404)
            return FileResponse(path, media_type="image/png", headers={"cache-control": "public, max-age=300"})

        try:
            body, content_type = storage.open_stream(filename)
        except Exception:
            raise AppError("FILE_NOT_FOUND", "object not found", 404)

        def iter_chunks():
            for chunk in iter(lambda: body.read(1024 * 1024), b""):
                yield chunk

        return StreamingResponse(iter_chunks(), media_type=content_type or "image/png")

    # ---------- Debug (hide in prod) ----------
    if cfg.debug:
        @app.get("/debug/config")
        def debug_config():
            return {
                "STORAGE": cfg.storage,
                "DATA_DIR": cfg.data_dir,
                "IMAGE_DIR": cfg.resolved_image_dir,
                "DB_URL": cfg.resolved_database_url,
                "PUBLIC_BASE_URL": cfg.resolved_public_base_url,
                "R2_ENDPOINT_URL": cfg.r2_endpoint_url,
                "R2_PUBLIC_BASE": cfg.r2_public_base,
                "R2_BUCKET": cfg.r2_bucket,
                "ALLOW_PRIVATE_SOURCE_IMAGES": cfg.allow_private_source_images,
            }

    app.include_router(api)
    return app


app = create_app()
