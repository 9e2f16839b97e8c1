import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from app_settings import (
    MAX_NASA_ID_LENGTH,
    MAX_SEARCH_QUERY_LENGTH,
    METADATA_TIMEOUT_SECONDS,
    MIN_SEARCH_QUERY_LENGTH,
    NASA_API_URL,
    NASA_HEAD_TIMEOUT_SECONDS,
    NASA_SEARCH_MAX_RESULTS,
)
from pipeline_errors import InvalidInput, NotFound, UpstreamError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/nasa", tags=["nasa"])


class SearchResult(BaseModel):
    nasa_id: str
    title: str
    thumbnail: str
    description: str = ""


class AssetInfo(BaseModel):
    highResUrl: Optional[str] = None
    highResSizeMB: Optional[int] = None
    ordinaryUrl: Optional[str] = None


@dataclass
class AssetOptions:
    original: Optional[str] = None
    large: Optional[str] = None
    medium: Optional[str] = None
    first_jpg: Optional[str] = None

    @property
    def ordinary(self) -> Optional[str]:
        return self.large or self.medium or self.first_jpg

    @property
    def best(self) -> Optional[str]:
        return self.original or self.ordinary


def classify_asset_items(items: List[Dict[str, Any]]) -> AssetOptions:
    """Pick the first href of each rendition from an asset manifest."""
    options = AssetOptions()
    for item in items:
        href = item.get("href") if isinstance(item, dict) else None
        if not isinstance(href, str) or not href:
            continue
        lowered = href.lower()
        if options.original is None and ("~orig.tif" in lowered or "~orig.jpg" in lowered):
            options.original = href
        if options.large is None and "~large.jpg" in lowered:
            options.large = href
        if options.medium is None and "~medium.jpg" in lowered:
            options.medium = href
        if options.first_jpg is None and lowered.endswith(".jpg"):
            options.first_jpg = href
    return options


def select_download_url(items: List[Dict[str, Any]]) -> Optional[str]:
    # original tif/jpg > large jpg > medium jpg > any jpg
    return classify_asset_items(items).best


class NasaImagesClient:
    """Thin async wrapper over the images-api.nasa.gov search and asset endpoints."""

    def __init__(self, client: httpx.AsyncClient, base_url: str = NASA_API_URL,
                 timeout: float = METADATA_TIMEOUT_SECONDS):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            response = await self.client.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error("NASA API returned HTTP %s for %s", e.response.status_code, path)
            raise UpstreamError(f"NASA API error (HTTP {e.response.status_code})",
                                upstream_status=e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error("Error connecting to NASA API: %s - %s", type(e).__name__, e)
            raise UpstreamError(f"Could not connect to NASA API: {e}") from e
        except ValueError as e:
            raise UpstreamError("NASA API returned a malformed response") from e

    async def search(self, query: str) -> List[SearchResult]:
        data = await self._get_json("/search", params={"q": query, "media_type": "image"})
        collection = data.get("collection") if isinstance(data, dict) else None
        items = collection.get("items") if isinstance(collection, dict) else None
        if not isinstance(items, list):
            raise UpstreamError("NASA API returned a malformed search response")
        results: List[SearchResult] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            entries = item.get("data")
            meta = entries[0] if isinstance(entries, list) and entries else None
            if not isinstance(meta, dict) or not isinstance(meta.get("nasa_id"), str) or not meta["nasa_id"]:
                continue
            links = item.get("links")
            first_link = links[0] if isinstance(links, list) and links else None
            thumbnail = first_link.get("href") if isinstance(first_link, dict) else None
            if not isinstance(thumbnail, str) or not thumbnail:
                continue
            title = meta.get("title")
            description = meta.get("description")
            results.append(SearchResult(
                nasa_id=meta["nasa_id"],
                title=title if isinstance(title, str) and title else "Untitled",
                thumbnail=thumbnail,
                description=description if isinstance(description, str) else "",
            ))
            if len(results) >= NASA_SEARCH_MAX_RESULTS:
                break
        return results

    async def asset_items(self, nasa_id: str) -> List[Dict[str, Any]]:
        data = await self._get_json(f"/asset/{quote(nasa_id, safe='')}")
        collection = data.get("collection") if isinstance(data, dict) else None
        items = collection.get("items") if isinstance(collection, dict) else None
        return items if isinstance(items, list) else []

    async def content_length(self, url: str) -> Optional[int]:
        """Size advertised by a HEAD request, or None when unavailable."""
        try:
            response = await self.client.head(url, timeout=NASA_HEAD_TIMEOUT_SECONDS, follow_redirects=True)
        except httpx.HTTPError:
            logger.info("Could not fetch file size for %s", url)
            return None
        declared = response.headers.get("content-length", "")
        return int(declared) if response.is_success and declared.isdigit() else None


def get_nasa_client(request: Request) -> NasaImagesClient:
    return request.app.state.nasa_client


@router.get("/search", response_model=List[SearchResult])
async def search_images(q: str = "", client: NasaImagesClient = Depends(get_nasa_client)):
    """Proxy a NASA Image Library search, images only."""
    query = q.strip()
    if len(query) < MIN_SEARCH_QUERY_LENGTH:
        raise InvalidInput("q", f"search query must be at least {MIN_SEARCH_QUERY_LENGTH} characters")
    if len(query) > MAX_SEARCH_QUERY_LENGTH:
        raise InvalidInput("q", "search query is too long")
    logger.info("NASA search query: %r", query)
    results = await client.search(query)
    logger.info("Found %d results", len(results))
    return results


@router.get("/asset-info/{nasa_id}", response_model=AssetInfo)
async def asset_info(nasa_id: str, client: NasaImagesClient = Depends(get_nasa_client)):
    if not nasa_id or len(nasa_id) > MAX_NASA_ID_LENGTH:
        raise InvalidInput("nasa_id", f"must be 1 to {MAX_NASA_ID_LENGTH} characters")
    try:
        items = await client.asset_items(nasa_id)
    except UpstreamError as e:
        # Unknown ids come back as 404 from the asset endpoint
        if e.upstream_status == 404:
            raise NotFound("No downloadable image assets found") from e
        raise
    options = classify_asset_items(items)
    if options.best is None:
        raise NotFound("No downloadable image assets found")

    size_mb = None
    if options.original:
        size = await client.content_length(options.original)
        if size is not None:
            size_mb = round(size / (1024 * 1024))
    return AssetInfo(highResUrl=options.original, highResSizeMB=size_mb, ordinaryUrl=options.ordinary)
