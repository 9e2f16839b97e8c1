"""
Ingestion orchestrator.

Turns a source reference (NASA asset id or plain URL) into a registered
Deep Zoom pyramid:

    cache probe -> resolve URL -> fetch -> convert (.IMG only) -> tile -> register

The pyramid directory and catalog row are keyed by an MD5 of the source
reference, so re-submitting the same source is a cache hit. Failures
after the download starts remove the partial pyramid; the staging area is
removed whatever happens.
"""

import asyncio
import hashlib
import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union
from urllib.parse import unquote, urlparse

from app_settings import ALLOWED_IMAGE_EXTENSIONS, MAX_TITLE_LENGTH, AppSettings, descriptor_url_path
from catalog_store import CatalogStore, ImageRecord
from nasa_api import NasaImagesClient, select_download_url
from pipeline_errors import (
    DownloadFailed,
    GigaViewError,
    IngestError,
    NoDownloadableAsset,
    UpstreamError,
)
from pipeline_stages import ConversionStage, FetchStage, TilingStage, url_suffix

logger = logging.getLogger(__name__)


def compute_image_id(source_key: str) -> str:
    """Stable content identifier: same source reference, same id, across restarts."""
    return hashlib.md5(source_key.encode("utf-8")).hexdigest()


def sanitize_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", name)[:MAX_TITLE_LENGTH]


@dataclass(frozen=True)
class NasaAssetSource:
    asset_id: str
    title: str
    resolved_url: Optional[str] = None

    source = "nasa"

    @property
    def source_key(self) -> str:
        return self.asset_id

    @property
    def display_name(self) -> str:
        return sanitize_filename(self.title)


@dataclass(frozen=True)
class DirectUrlSource:
    url: str

    source = "url"

    @property
    def source_key(self) -> str:
        # The submitted string, not any redirect target, keeps ids stable
        return self.url

    @property
    def display_name(self) -> str:
        basename = Path(unquote(urlparse(self.url).path)).name
        return sanitize_filename(basename or "image")


SourceDescriptor = Union[NasaAssetSource, DirectUrlSource]


@dataclass(frozen=True)
class IngestResult:
    id: str
    path: str
    cached: bool = False


def _staging_suffix(url: str) -> str:
    suffix = url_suffix(url)
    return suffix if suffix in ALLOWED_IMAGE_EXTENSIONS else ".tmp"


def _remove_tree(path: Path, what: str) -> None:
    try:
        shutil.rmtree(path)
        logger.info("Removed %s %s", what, path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove %s %s: %s", what, path, e)


class IngestionPipeline:
    def __init__(
        self,
        settings: AppSettings,
        store: CatalogStore,
        fetch: FetchStage,
        conversion: ConversionStage,
        tiling: TilingStage,
        nasa_client: Optional[NasaImagesClient] = None,
    ):
        self.settings = settings
        self.store = store
        self.fetch = fetch
        self.conversion = conversion
        self.tiling = tiling
        self.nasa_client = nasa_client
        # image id -> pending build, so concurrent requests share one run
        self._inflight: Dict[str, asyncio.Future] = {}

    async def ingest(self, source: SourceDescriptor) -> IngestResult:
        image_id = compute_image_id(source.source_key)
        task = self._inflight.get(image_id)
        if task is None:
            task = asyncio.ensure_future(self._ingest_once(source, image_id))
            self._inflight[image_id] = task
            task.add_done_callback(lambda done, key=image_id: self._forget(key, done))
        else:
            logger.info("Joining in-flight ingestion of %s", image_id)
        # shield: one caller going away must not cancel the shared build
        return await asyncio.shield(task)

    def _forget(self, image_id: str, task: asyncio.Future) -> None:
        if self._inflight.get(image_id) is task:
            del self._inflight[image_id]
        # Retrieve the outcome here; every caller may have gone away already
        if not task.cancelled():
            error = task.exception()
            if error is not None:
                logger.warning("Ingestion of %s failed: %s", image_id, error)

    def in_flight(self, image_id: str) -> bool:
        return image_id in self._inflight

    async def _ingest_once(self, source: SourceDescriptor, image_id: str) -> IngestResult:
        relative_path = descriptor_url_path(image_id)
        if self.settings.descriptor_for(image_id).exists():
            logger.info("Image %s already processed, serving from cache", image_id)
            return IngestResult(id=image_id, path=relative_path, cached=True)

        logger.info("Processing new %s image %s (%s)", source.source, image_id, source.source_key)
        try:
            download_url = await self._resolve_download_url(source)
            await self._build(source, image_id, download_url, relative_path)
        except GigaViewError:
            raise
        except Exception as e:
            logger.exception("Unexpected failure while ingesting %s", image_id)
            raise IngestError(f"Unexpected failure: {e}") from e
        logger.info("Processing of %s complete", image_id)
        return IngestResult(id=image_id, path=relative_path)

    async def _resolve_download_url(self, source: SourceDescriptor) -> str:
        if isinstance(source, DirectUrlSource):
            return source.url
        if source.resolved_url:
            return source.resolved_url
        if self.nasa_client is None:
            raise NoDownloadableAsset(f"No metadata service available to resolve {source.asset_id}")

        logger.info("Finding best available image URL for %s", source.asset_id)
        try:
            items = await self.nasa_client.asset_items(source.asset_id)
        except UpstreamError as e:
            raise DownloadFailed(f"Could not look up NASA asset {source.asset_id}: {e.message}") from e
        url = select_download_url(items)
        if not url:
            raise NoDownloadableAsset(f"Could not find a downloadable image URL for {source.asset_id}")
        logger.info("Image URL: %s", url)
        return url

    async def _build(self, source: SourceDescriptor, image_id: str, download_url: str,
                     relative_path: str) -> None:
        tile_dir = self.settings.tile_dir_for(image_id)
        staging_root = self.settings.staging_dir
        staging_root.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix=f"{image_id}_", dir=staging_root))
        try:
            try:
                staged = workdir / f"source{_staging_suffix(download_url)}"
                fetched = await self.fetch.run(download_url, staged)

                raster = fetched.path
                if self.conversion.needs_conversion(raster):
                    raster = await self.conversion.run(raster, workdir / "converted.tif")

                # Leftovers of a crashed attempt have no descriptor; start clean
                if tile_dir.exists():
                    _remove_tree(tile_dir, "stale tile directory")
                await self.tiling.run(raster, tile_dir)

                record = ImageRecord(
                    id=image_id,
                    name=source.display_name,
                    path=relative_path,
                    source=source.source,
                    source_ref=source.source_key,
                )
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self.store.register_image, record)
            except BaseException:
                _remove_tree(tile_dir, "partial tile directory")
                raise
        finally:
            _remove_tree(workdir, "staging directory")
