# settings.py
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load variables from .env at import time
load_dotenv()


def _env_bool(name: str, fallback: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return fallback
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional_bool(name: str) -> Optional[bool]:
    if os.getenv(name) is None:
        return None
    return _env_bool(name, False)


def _env_int(name: str, fallback: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return fallback
    try:
        return int(raw.strip())
    except ValueError:
        return fallback


class Settings(BaseModel):
    data_dir: str = Field(default=os.getenv("DATA_DIR", os.path.join(os.getcwd(), "data")))
    image_dir: str = Field(default=os.getenv("IMAGE_DIR", ""))
    database_url: str = Field(default=os.getenv("DATABASE_URL", ""))
    public_base_url: str = Field(default=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"))

    storage: str = Field(default=os.getenv("STORAGE", "local").lower())  # "local" or "r2"
    r2_access_key_id: str = Field(default=os.getenv("R2_ACCESS_KEY_ID", ""))
    r2_secret_access_key: str = Field(default=os.getenv("R2_SECRET_ACCESS_KEY", ""))
    r2_endpoint_url: str = Field(default=os.getenv("R2_ENDPOINT_URL", ""))
    r2_bucket: str = Field(default=os.getenv("R2_BUCKET", "og-cards"))
    r2_public_base: str = Field(default=os.getenv("R2_PUBLIC_BASE", ""))

    max_remote_image_bytes: int = Field(default=_env_int("MAX_REMOTE_IMAGE_BYTES", 10 * 1024 * 1024))
    remote_fetch_timeout_ms: int = Field(default=_env_int("REMOTE_FETCH_TIMEOUT_MS", 8000))
    allow_private_source_images: bool = Field(default=_env_bool("ALLOW_PRIVATE_SOURCE_IMAGES", False))

    # "name:key:tier,name:key:tier" -- tier is "internal" or "outsider"
    api_keys: str = Field(default=os.getenv("API_KEYS", ""))
    require_api_key: Optional[bool] = Field(default=_env_optional_bool("REQUIRE_API_KEY"))
    internal_rate_limit_per_minute: int = Field(default=_env_int("INTERNAL_RATE_LIMIT_PER_MINUTE", 0))
    outsider_rate_limit_per_minute: int = Field(default=_env_int("OUTSIDER_RATE_LIMIT_PER_MINUTE", 60))
    anonymous_rate_limit_per_minute: int = Field(default=_env_int("ANONYMOUS_RATE_LIMIT_PER_MINUTE", 20))
    trust_proxy: bool = Field(default=_env_bool("TRUST_PROXY", False))

    cors_origins: str = Field(default=os.getenv("CORS_ORIGINS", "*"))
    font_path: str = Field(default=os.getenv("FONT_PATH", ""))
    debug: bool = Field(default=_env_bool("DEBUG", False))

    @property
    def resolved_image_dir(self) -> str:
        return self.image_dir or os.path.join(self.data_dir, "og-images")

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{os.path.join(self.data_dir, 'og.db')}"

    @property
    def resolved_public_base_url(self) -> str:
        return self.public_base_url.rstrip("/")

    @property
    def auth_required(self) -> bool:
        if self.require_api_key is not None:
            return self.require_api_key
        return bool(self.api_keys.strip())

settings = Settings()
