import os
import shlex
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ==============================================================================
# --- GIGAVIEW APPLICATION CONFIGURATION ---
# ==============================================================================
# Every value below can be overridden with the matching GIGAVIEW_* variable.
# ==============================================================================

# ------------------------------------------------------------------------------
# I. Web Server & API Configuration
# ------------------------------------------------------------------------------
UVICORN_HOST = _env_str("GIGAVIEW_HOST", "127.0.0.1")
UVICORN_PORT = _env_int("GIGAVIEW_PORT", 3000)
UVICORN_RELOAD_MODE = _env_bool("GIGAVIEW_RELOAD", False)
API_PREFIX = "/api"
TILES_URL_PREFIX = "gigaimages"

# ------------------------------------------------------------------------------
# II. File System & Path Configuration
# ------------------------------------------------------------------------------
DATA_DIRECTORY = _env_str("GIGAVIEW_DATA_DIR", "data")
TILES_DIRECTORY = _env_str("GIGAVIEW_TILES_DIR", "public/gigaimages")
CATALOG_FILE_NAME = "images.json"
ANNOTATIONS_FILE_NAME = "annotations.json"
STAGING_DIR_NAME = "staging"
DESCRIPTOR_BASENAME = "tiles"  # vips writes tiles.dzi + tiles_files/

# ------------------------------------------------------------------------------
# III. Download Limits
# ------------------------------------------------------------------------------
REQUEST_TIMEOUT_SECONDS = _env_float("GIGAVIEW_REQUEST_TIMEOUT", 300.0)  # 5 minutes for large files
METADATA_TIMEOUT_SECONDS = _env_float("GIGAVIEW_METADATA_TIMEOUT", 10.0)
MAX_DOWNLOAD_BYTES = _env_int("GIGAVIEW_MAX_DOWNLOAD_BYTES", 1024 * 1024 * 1024)
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
DOWNLOAD_USER_AGENT = "Mozilla/5.0 (compatible; GigaView/1.0)"

# ------------------------------------------------------------------------------
# IV. External Tools
# ------------------------------------------------------------------------------
TILE_COMMAND = _env_str("GIGAVIEW_TILE_COMMAND", "vips dzsave {input} {output}")
CONVERT_COMMAND = _env_str("GIGAVIEW_CONVERT_COMMAND", "gdal_translate -of GTiff {input} {output}")
TOOL_PROBE_TIMEOUT_SECONDS = 10.0
PDS_RASTER_EXTENSIONS = [".img"]
ALLOWED_IMAGE_EXTENSIONS = [".jpg", ".jpeg", ".png", ".tif", ".tiff", ".gif", ".bmp", ".img"]

# ------------------------------------------------------------------------------
# V. NASA Image Library
# ------------------------------------------------------------------------------
NASA_API_URL = _env_str("GIGAVIEW_NASA_API_URL", "https://images-api.nasa.gov")
NASA_SEARCH_MAX_RESULTS = 50
NASA_HEAD_TIMEOUT_SECONDS = 5.0

# ------------------------------------------------------------------------------
# VI. Input Bounds
# ------------------------------------------------------------------------------
MAX_URL_LENGTH = 2048
MAX_TITLE_LENGTH = 255
MAX_NASA_ID_LENGTH = 100
MAX_IMAGE_ID_LENGTH = 100
MAX_ANNOTATION_ID_LENGTH = 100
MAX_ANNOTATION_LENGTH = 500
MIN_SEARCH_QUERY_LENGTH = 2
MAX_SEARCH_QUERY_LENGTH = 200

# ------------------------------------------------------------------------------
# VII. Logging
# ------------------------------------------------------------------------------
LOG_LEVEL = _env_str("GIGAVIEW_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("GIGAVIEW_LOG_FILE", "")
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024


class AppSettings(BaseModel):
    """Runtime settings handed to the store, pipeline and app factory."""

    data_dir: Path = Path(DATA_DIRECTORY)
    tiles_dir: Path = Path(TILES_DIRECTORY)
    request_timeout_seconds: float = Field(REQUEST_TIMEOUT_SECONDS, gt=0)
    metadata_timeout_seconds: float = Field(METADATA_TIMEOUT_SECONDS, gt=0)
    max_download_bytes: int = Field(MAX_DOWNLOAD_BYTES, gt=0)
    tile_command: List[str] = Field(default_factory=lambda: shlex.split(TILE_COMMAND))
    convert_command: List[str] = Field(default_factory=lambda: shlex.split(CONVERT_COMMAND))
    nasa_api_url: str = NASA_API_URL

    @classmethod
    def from_env(cls) -> "AppSettings":
        # Re-read the environment so values set after import still apply
        return cls(
            data_dir=Path(_env_str("GIGAVIEW_DATA_DIR", DATA_DIRECTORY)),
            tiles_dir=Path(_env_str("GIGAVIEW_TILES_DIR", TILES_DIRECTORY)),
            request_timeout_seconds=_env_float("GIGAVIEW_REQUEST_TIMEOUT", REQUEST_TIMEOUT_SECONDS),
            metadata_timeout_seconds=_env_float("GIGAVIEW_METADATA_TIMEOUT", METADATA_TIMEOUT_SECONDS),
            max_download_bytes=_env_int("GIGAVIEW_MAX_DOWNLOAD_BYTES", MAX_DOWNLOAD_BYTES),
            tile_command=shlex.split(_env_str("GIGAVIEW_TILE_COMMAND", TILE_COMMAND)),
            convert_command=shlex.split(_env_str("GIGAVIEW_CONVERT_COMMAND", CONVERT_COMMAND)),
            nasa_api_url=_env_str("GIGAVIEW_NASA_API_URL", NASA_API_URL),
        )

    @property
    def catalog_path(self) -> Path:
        return self.data_dir / CATALOG_FILE_NAME

    @property
    def annotations_path(self) -> Path:
        return self.data_dir / ANNOTATIONS_FILE_NAME

    @property
    def staging_dir(self) -> Path:
        return self.data_dir / STAGING_DIR_NAME

    def tile_dir_for(self, image_id: str) -> Path:
        return self.tiles_dir / image_id

    def descriptor_for(self, image_id: str) -> Path:
        return self.tile_dir_for(image_id) / f"{DESCRIPTOR_BASENAME}.dzi"

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.tiles_dir, self.staging_dir):
            directory.mkdir(parents=True, exist_ok=True)


def descriptor_url_path(image_id: str) -> str:
    """Relative path the viewer uses to request a pyramid descriptor."""
    return f"{TILES_URL_PREFIX}/{image_id}/{DESCRIPTOR_BASENAME}.dzi"
