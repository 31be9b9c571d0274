# models.py
"""Domain enumerations, platform presets and the SQLModel tables.

``OgJob`` and ``UrlMapping`` are the only durable records. Read models
(``OgJobRead``, ``UrlMappingRead``) carry the denormalized fields the API
returns but that are not columns.
"""

from enum import Enum
from typing import Dict, List, NamedTuple, Optional

from sqlmodel import SQLModel, Field as SQLField


class Platform(str, Enum):
    OG = "og"
    TWITTER = "twitter"
    LINKEDIN = "linkedin"


class TemplateId(str, Enum):
    GRADIENT_BOTTOM = "gradient-bottom"
    CENTER_DARK = "center-dark"


class SourceKind(str, Enum):
    URL = "url"
    UPLOAD = "upload"
    BASE64 = "base64"


class JobStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class CanvasSize(NamedTuple):
    width: int
    height: int


PRESETS: Dict[Platform, CanvasSize] = {
    Platform.OG: CanvasSize(1200, 630),
    Platform.TWITTER: CanvasSize(1200, 675),
    Platform.LINKEDIN: CanvasSize(1200, 627),
}

TEMPLATES: List[Dict[str, str]] = [
    {
        "id": TemplateId.GRADIENT_BOTTOM.value,
        "name": "Gradient Bottom",
        "description": "Bottom gradient overlay with left-aligned title and subtitle.",
    },
    {
        "id": TemplateId.CENTER_DARK.value,
        "name": "Center Dark",
        "description": "Full-screen dark tint with centered title and subtitle.",
    },
]


# ---------------- Tables ----------------

class OgJobBase(SQLModel):
    id: str = SQLField(primary_key=True, index=True)
    source_type: str
    source_ref: str
    title: str
    subtitle: Optional[str] = None
    platform: str
    template_id: str
    output_path: str
    image_url: str
    width: int
    height: int
    status: str = JobStatus.COMPLETED.value
    error_message: Optional[str] = None
    created_at: int = SQLField(index=True)  # epoch millis, pagination key


class OgJob(OgJobBase, table=True):
    __tablename__ = "og_jobs"


class OgJobRead(OgJobBase):
    mapped_page_url: Optional[str] = None


class UrlMappingBase(SQLModel):
    page_url: str = SQLField(primary_key=True)
    job_id: str = SQLField(foreign_key="og_jobs.id", index=True)
    image_url: str
    updated_at: int


class UrlMapping(UrlMappingBase, table=True):
    __tablename__ = "url_mappings"


class UrlMappingRead(UrlMappingBase):
    pass
