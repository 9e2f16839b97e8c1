import logging
import re
import shutil
from typing import List

from pydantic import BaseModel

from app_settings import MAX_IMAGE_ID_LENGTH, AppSettings, descriptor_url_path
from catalog_store import CatalogStore
from pipeline_errors import CatalogCorrupted, InvalidInput

logger = logging.getLogger(__name__)

_IMAGE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class ImageSummary(BaseModel):
    id: str
    name: str
    path: str


def validate_image_id(image_id: str) -> str:
    # Ids become directory names; nothing path-like gets through
    if not image_id or len(image_id) > MAX_IMAGE_ID_LENGTH:
        raise InvalidInput("image id", f"must be 1 to {MAX_IMAGE_ID_LENGTH} characters")
    if not _IMAGE_ID_RE.match(image_id):
        raise InvalidInput("image id", "may only contain letters, digits, '-' and '_'")
    return image_id


class ImageLibrary:
    """Listing and deletion over the tile tree plus the catalog."""

    def __init__(self, settings: AppSettings, store: CatalogStore):
        self.settings = settings
        self.store = store

    def list_images(self) -> List[ImageSummary]:
        """Pyramids on disk are the truth; the catalog only supplies names."""
        tiles_dir = self.settings.tiles_dir
        if not tiles_dir.is_dir():
            return []
        try:
            names = {row.id: row.name for row in self.store.read_catalog()}
        except CatalogCorrupted as e:
            logger.error("Catalog unreadable, listing raw ids: %s", e)
            names = {}

        images = []
        for entry in tiles_dir.iterdir():
            if not entry.is_dir() or not self.settings.descriptor_for(entry.name).exists():
                continue
            images.append(ImageSummary(
                id=entry.name,
                name=names.get(entry.name, entry.name),
                path=descriptor_url_path(entry.name),
            ))
        images.sort(key=lambda image: image.name.lower())
        logger.info("Listed %d images", len(images))
        return images

    def delete_image(self, image_id: str) -> str:
        validate_image_id(image_id)
        logger.info("Deleting image %s", image_id)

        # Metadata first: a persistence failure here aborts the whole delete
        row_removed, annotations_removed = self.store.delete_image(image_id)
        if row_removed:
            logger.info("Removed %s from catalog", image_id)
        if annotations_removed:
            logger.info("Removed annotations of %s", image_id)

        tile_dir = self.settings.tile_dir_for(image_id)
        try:
            shutil.rmtree(tile_dir)
            logger.info("Image folder %s deleted", tile_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not delete folder %s: %s", tile_dir, e)

        return f"Image {image_id} deleted successfully"
