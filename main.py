import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

import images_api
import nasa_api
from app_settings import (
    API_PREFIX,
    LOG_FILE,
    LOG_FILE_MAX_BYTES,
    LOG_LEVEL,
    TILES_URL_PREFIX,
    UVICORN_HOST,
    UVICORN_PORT,
    UVICORN_RELOAD_MODE,
    AppSettings,
)
from catalog_store import CatalogStore
from image_library import ImageLibrary
from ingest import IngestionPipeline
from pipeline_errors import GigaViewError, PersistenceInconsistent
from pipeline_stages import ConversionStage, FetchStage, TilingStage, check_tool_available

logger = logging.getLogger(__name__)

STDOUT_HANDLER_NAME = "gigaview-stdout"
FILE_HANDLER_NAME = "gigaview-file"


def _configure_logging():
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    fmt = logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s')

    handler_names = {h.get_name() for h in root.handlers}
    if STDOUT_HANDLER_NAME not in handler_names:
        sh = logging.StreamHandler(stream=sys.stdout)
        sh.set_name(STDOUT_HANDLER_NAME)
        sh.setLevel(level)
        sh.setFormatter(fmt)
        root.addHandler(sh)

    # Optional file handler (simple: truncate if > 5MB, no backups)
    if LOG_FILE and FILE_HANDLER_NAME not in handler_names:
        p = Path(LOG_FILE)
        try:
            if p.is_file() and p.stat().st_size > LOG_FILE_MAX_BYTES:
                p.unlink()
            fh = logging.FileHandler(p)
            fh.set_name(FILE_HANDLER_NAME)
        except OSError as e:
            logger.warning("Log file %s unavailable: %s", p, e)
        else:
            fh.setLevel(level)
            fh.setFormatter(fmt)
            root.addHandler(fh)
            # uvicorn loggers do not propagate to root; give them the file too
            for lname in ('uvicorn', 'uvicorn.error', 'uvicorn.access'):
                ul = logging.getLogger(lname)
                ul.setLevel(level)
                if fh not in ul.handlers:
                    ul.addHandler(fh)

    logging.captureWarnings(True)


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(loc) or "request body"
    return f"Invalid {field}: {first.get('msg', 'invalid value')}"


def create_app(settings: AppSettings | None = None, *, http_client: httpx.AsyncClient | None = None,
               fetch_stage: FetchStage | None = None, conversion_stage: ConversionStage | None = None,
               tiling_stage: TilingStage | None = None) -> FastAPI:
    settings = settings or AppSettings.from_env()
    client = http_client or httpx.AsyncClient()

    store = CatalogStore(settings.catalog_path, settings.annotations_path)
    nasa_client = nasa_api.NasaImagesClient(client, base_url=settings.nasa_api_url,
                                            timeout=settings.metadata_timeout_seconds)
    pipeline = IngestionPipeline(
        settings=settings,
        store=store,
        fetch=fetch_stage or FetchStage(client, settings.max_download_bytes, settings.request_timeout_seconds),
        conversion=conversion_stage or ConversionStage(settings.convert_command, settings.request_timeout_seconds),
        tiling=tiling_stage or TilingStage(settings.tile_command, settings.request_timeout_seconds),
        nasa_client=nasa_client,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.ensure_directories()
        store.bootstrap()
        app.state.tiler_available = await check_tool_available(settings.tile_command)
        if app.state.tiler_available:
            logger.info("Tiling tool %s is installed", settings.tile_command[0])
        else:
            logger.warning("Tiling tool %s is not installed or not in PATH. Image processing will fail.",
                           settings.tile_command[0] if settings.tile_command else "<unset>")
        yield
        # An injected client belongs to the caller
        if http_client is None:
            await client.aclose()

    app = FastAPI(title="GigaView", lifespan=lifespan)
    app.state.settings = settings
    app.state.http_client = client
    app.state.store = store
    app.state.nasa_client = nasa_client
    app.state.pipeline = pipeline
    app.state.library = ImageLibrary(settings, store)
    app.state.tiler_available = False

    app.add_middleware(RequestLogMiddleware)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(GigaViewError)
    async def _gigaview_error(request: Request, exc: GigaViewError):
        if isinstance(exc, PersistenceInconsistent):
            logger.critical("Persistence inconsistency on %s %s: %s", request.method, request.url.path, exc)
        elif exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.get(API_PREFIX + "/health")
    async def health():
        tiler = await check_tool_available(settings.tile_command)
        converter = await check_tool_available(settings.convert_command)
        app.state.tiler_available = tiler
        return {
            "status": "ok",
            "externalToolAvailable": tiler,
            "conversionToolAvailable": converter,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    app.include_router(images_api.router, prefix=API_PREFIX)
    app.include_router(nasa_api.router, prefix=API_PREFIX)
    # Descriptors and tiles for the viewer; the directory is created at startup
    app.mount("/" + TILES_URL_PREFIX, StaticFiles(directory=str(settings.tiles_dir), check_dir=False),
              name=TILES_URL_PREFIX)
    return app


_configure_logging()

app = create_app()


def run():
    uvicorn.run("main:app", host=UVICORN_HOST, port=UVICORN_PORT, reload=UVICORN_RELOAD_MODE)


if __name__ == "__main__":
    # Allow running the API with: python main.py
    run()
