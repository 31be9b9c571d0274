"""Shared fixtures.

Every test writes into its own ``tmp_path`` so databases, images and
settings never leak between tests or into the working directory.
"""

import base64
import io

import pytest
from PIL import Image

from db import make_engine
from settings import Settings


def make_jpeg(width: int = 1920, height: int = 1080, color=(24, 86, 175)) -> bytes:
    img = Image.new("RGB", (width, height), color=color)
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=90)
    return buf.getvalue()


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_jpeg()


@pytest.fixture
def jpeg_data_url(jpeg_bytes) -> str:
    return "data:image/jpeg;base64," + base64.b64encode(jpeg_bytes).decode()


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    data_dir = tmp_path / "data"
    return Settings(
        data_dir=str(data_dir),
        image_dir=str(data_dir / "og-images"),
        database_url=f"sqlite:///{data_dir / 'og.db'}",
        public_base_url="http://testserver/",
        storage="local",
        api_keys="",
        require_api_key=None,
        internal_rate_limit_per_minute=0,
        outsider_rate_limit_per_minute=60,
        anonymous_rate_limit_per_minute=0,
        allow_private_source_images=False,
        max_remote_image_bytes=5 * 1024 * 1024,
        remote_fetch_timeout_ms=2000,
        font_path="",
        debug=False,
    )


@pytest.fixture
def engine(app_settings):
    eng = make_engine(app_settings.resolved_database_url)
    yield eng
    eng.dispose()
