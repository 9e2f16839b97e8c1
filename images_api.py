import logging
from typing import List, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from app_settings import MAX_NASA_ID_LENGTH, MAX_TITLE_LENGTH, MAX_URL_LENGTH
from catalog_store import AnnotationRecord, CatalogStore
from image_library import ImageLibrary, ImageSummary, validate_image_id
from ingest import DirectUrlSource, IngestionPipeline, NasaAssetSource
from pipeline_errors import IngestError, PersistenceError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["images"])


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
        # .port raises ValueError when out of range or not numeric
        parsed.port
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


def _check_url(value: Optional[str]) -> Optional[str]:
    if value is not None and not is_valid_url(value):
        raise ValueError("must be an absolute http(s) URL")
    return value


class ProcessNasaImageRequest(BaseModel):
    nasa_id: str = Field(..., strict=True, min_length=1, max_length=MAX_NASA_ID_LENGTH)
    title: str = Field(..., strict=True, min_length=1, max_length=MAX_TITLE_LENGTH)
    image_url: Optional[str] = Field(None, alias="imageUrl", strict=True, max_length=MAX_URL_LENGTH)

    @field_validator("image_url")
    @classmethod
    def check_image_url(cls, value):
        return _check_url(value)


class ProcessUrlRequest(BaseModel):
    image_url: str = Field(..., alias="imageUrl", strict=True, min_length=1, max_length=MAX_URL_LENGTH)

    @field_validator("image_url")
    @classmethod
    def check_image_url(cls, value):
        return _check_url(value)


class IngestResponse(BaseModel):
    id: str
    path: str


def get_store(request: Request) -> CatalogStore:
    return request.app.state.store


def get_library(request: Request) -> ImageLibrary:
    return request.app.state.library


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


# --- Images -------------------------------------------------------------------

@router.get("/images", response_model=List[ImageSummary])
def list_images(library: ImageLibrary = Depends(get_library)):
    return library.list_images()


@router.delete("/images/{image_id}")
def delete_image(image_id: str, library: ImageLibrary = Depends(get_library)):
    """Remove an image's catalog row, annotations and tile pyramid."""
    try:
        message = library.delete_image(image_id)
    except PersistenceError as e:
        logger.error("Error deleting image %s: %s", image_id, e)
        return JSONResponse(status_code=500, content={"error": f"Failed to delete image: {e.message}"})
    return {"message": message}


# --- Annotations --------------------------------------------------------------

@router.get("/images/{image_id}/annotations", response_model=List[AnnotationRecord])
def get_annotations(image_id: str, store: CatalogStore = Depends(get_store)):
    validate_image_id(image_id)
    return store.list_annotations(image_id)


@router.post("/images/{image_id}/annotations", status_code=201, response_model=AnnotationRecord)
def add_annotation(image_id: str, annotation: AnnotationRecord, store: CatalogStore = Depends(get_store)):
    validate_image_id(image_id)
    return store.append_annotation(image_id, annotation)


# --- Processing ---------------------------------------------------------------

@router.post("/process-nasa-image", status_code=201, response_model=IngestResponse)
async def process_nasa_image(payload: ProcessNasaImageRequest, pipeline: IngestionPipeline = Depends(get_pipeline)):
    logger.info("NASA image processing request: %s (%s)", payload.nasa_id, payload.title)
    source = NasaAssetSource(asset_id=payload.nasa_id, title=payload.title, resolved_url=payload.image_url)
    try:
        result = await pipeline.ingest(source)
    except IngestError as e:
        logger.error("Error during NASA image processing [%s]: %s", e.kind, e.message)
        return JSONResponse(status_code=500, content={"error": f"Failed to process NASA image: {e.message}"})
    return IngestResponse(id=result.id, path=result.path)


@router.post("/process-url", status_code=201, response_model=IngestResponse)
async def process_url(payload: ProcessUrlRequest, pipeline: IngestionPipeline = Depends(get_pipeline)):
    logger.info("URL processing request: %s", payload.image_url)
    try:
        result = await pipeline.ingest(DirectUrlSource(url=payload.image_url))
    except IngestError as e:
        logger.error("Error during URL processing [%s]: %s", e.kind, e.message)
        return JSONResponse(status_code=500, content={"error": f"Failed to process image from URL: {e.message}"})
    return IngestResponse(id=result.id, path=result.path)
