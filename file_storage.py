# file_storage.py
"""Persistence of rendered PNGs.

Files are named ``<job_id>.png``. ``STORAGE=local`` writes them under the
image directory; ``STORAGE=r2`` uploads them to ``og/<job_id>.png`` in the
configured bucket. Either way the public URL is derived from the job id.
"""

import logging
import os
import re
from typing import NamedTuple, Optional

logger = logging.getLogger(__name__)

ASSET_ROUTE = "/assets/og"
_FILENAME_RE = re.compile(r"^[A-Za-z0-9_-]+\.png$")


class SavedImage(NamedTuple):
    output_path: str
    image_url: str


def is_card_filename(filename: str) -> bool:
    return bool(_FILENAME_RE.match(filename or ""))


class LocalImageStorage:
    kind = "local"

    def __init__(self, image_dir: str, public_base_url: str):
        self.image_dir = os.path.abspath(image_dir)
        self.public_base_url = public_base_url.rstrip("/")
        os.makedirs(self.image_dir, exist_ok=True)

    def save_png(self, job_id: str, data: bytes) -> SavedImage:
        filename = f"{job_id}.png"
        path = os.path.join(self.image_dir, filename)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
        return SavedImage(output_path=path, image_url=f"{self.public_base_url}{ASSET_ROUTE}/{filename}")

    def delete(self, saved: SavedImage) -> None:
        try:
            os.remove(saved.output_path)
        except FileNotFoundError:
            pass

    def local_path(self, filename: str) -> Optional[str]:
        if not is_card_filename(filename):
            return None
        path = os.path.join(self.image_dir, filename)
        return path if os.path.isfile(path) else None


class R2ImageStorage:
    kind = "r2"

    def __init__(self, public_base_url: str):
        # r2_client builds its boto3 client at import time
        import r2_client

        self._r2 = r2_client
        self.public_base_url = public_base_url.rstrip("/")

    def save_png(self, job_id: str, data: bytes) -> SavedImage:
        key = self._r2.card_key(job_id)
        self._r2.upload_to_key(data, key, content_type="image/png")
        image_url = self._r2.public_url(key) or f"{self.public_base_url}{ASSET_ROUTE}/{job_id}.png"
        return SavedImage(output_path=key, image_url=image_url)

    def delete(self, saved: SavedImage) -> None:
        self._r2.delete_key(saved.output_path)

    def open_stream(self, filename: str):
        if not is_card_filename(filename):
            return None
        return self._r2.get_object_stream(self._r2.card_key(filename[: -len(".png")]))


def build_image_storage(storage: str, image_dir: str, public_base_url: str):
    if storage == "r2":
        logger.info("storing rendered cards in R2")
        return R2ImageStorage(public_base_url)
    return LocalImageStorage(image_dir, public_base_url)
