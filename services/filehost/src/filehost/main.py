import datetime as dt
import logging
import os
import re
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator
from urllib.parse import quote

from fastapi import FastAPI, UploadFile, File, Depends, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from .config import MIB, Settings, settings
from .db import create_db_engine
from .descriptor import DescriptorBuilder
from .errors import FileHostError, FileNotFoundOrExpired
from .ids import ALPHABET, ID_LENGTH
from .pages import upload_form, upload_result
from .ratelimit import RateLimiter
from .scheduler import SweepScheduler
from .schemas import UploadResponse
from .service import Download, FileHostService, UploadPart
from .storage import CHUNK_SIZE, EphemeralStore

logger = logging.getLogger(__name__)

_DOWNLOAD_PATH_RE = re.compile(rf"([{ALPHABET}]{{{ID_LENGTH}}})(?:\.(\w+))?")


def build_service(cfg: Settings) -> FileHostService:
    store = EphemeralStore(
        engine=create_db_engine(cfg.db_url),
        files_dir=Path(cfg.files_dir),
        scratch_dir=Path(cfg.scratch_dir),
        ttl=dt.timedelta(seconds=cfg.file_ttl_seconds),
    )
    limiter = RateLimiter(
        max_request_bytes=cfg.max_request_bytes,
        budget_bytes=cfg.rate_limit_bytes,
        window_seconds=cfg.rate_limit_window_seconds,
    )
    descriptors = DescriptorBuilder(
        tool=cfg.descriptor_tool,
        timeout=cfg.descriptor_tool_timeout_seconds,
    )
    return FileHostService(store, limiter, descriptors, max_files=cfg.max_files_per_request)


def get_service(request: Request) -> FileHostService:
    return request.app.state.service


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def _upload_part(upload: UploadFile) -> UploadPart:
    size = upload.size
    if size is None:
        upload.file.seek(0, os.SEEK_END)
        size = upload.file.tell()
        upload.file.seek(0)
    return UploadPart(filename=upload.filename or "uploaded.bin", size=size, stream=upload.file)


def _content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


async def _stream_and_release(download: Download) -> AsyncIterator[bytes]:
    try:
        with download.path.open("rb") as fh:
            while True:
                chunk = await run_in_threadpool(fh.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
    finally:
        download.scratch.release()


def _stream_response(download: Download) -> StreamingResponse:
    try:
        size = download.path.stat().st_size
    except BaseException:
        download.scratch.release()
        raise

    return StreamingResponse(
        _stream_and_release(download),
        media_type=download.media_type,
        headers={
            "Content-Disposition": _content_disposition(download.filename),
            "Content-Length": str(size),
        },
        # runs even if the body iterator never started
        background=BackgroundTask(download.scratch.release),
    )


def create_app(cfg: Settings | None = None, service: FileHostService | None = None) -> FastAPI:
    cfg = cfg or settings
    service = service or build_service(cfg)
    scheduler = SweepScheduler(service.store, service.limiter, cfg.sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Path(cfg.data_dir).mkdir(parents=True, exist_ok=True)
        service.store.prepare()
        await scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()

    app = FastAPI(title="File Host", version="1.0.0", lifespan=lifespan)
    app.state.service = service
    app.state.scheduler = scheduler

    @app.exception_handler(FileHostError)
    async def _file_host_error(request: Request, exc: FileHostError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected (%d): %s", request.method, request.url.path, exc.status_code, exc)
        return PlainTextResponse(exc.detail, status_code=exc.status_code)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/fh", response_class=HTMLResponse)
    def upload_page():
        return upload_form(cfg.max_files_per_request, cfg.max_request_bytes // MIB)

    @app.post("/fh")
    def upload(
        request: Request,
        file: list[UploadFile] = File(...),
        service: FileHostService = Depends(get_service),
    ):
        parts = [_upload_part(f) for f in file]
        links = service.upload(_client_key(request), parts, _base_url(request))

        if "application/json" in request.headers.get("accept", ""):
            return UploadResponse(files=links)
        return HTMLResponse(upload_result(links))

    @app.get("/{name}")
    def download(name: str, request: Request, service: FileHostService = Depends(get_service)):
        match = _DOWNLOAD_PATH_RE.fullmatch(name)
        if not match:
            raise FileNotFoundOrExpired()
        file_id, extension = match.groups()
        return _stream_response(service.download(file_id, extension, _base_url(request)))

    return app


app = create_app()


def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
