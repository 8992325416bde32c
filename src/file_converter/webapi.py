import asyncio
import hashlib
import re
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, File, Header, Query, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .config import Settings
from .conversion import (
    ClientIdentity,
    ConversionJob,
    ConversionService,
    FormatRegistry,
    IncomingFile,
    JobStatus,
    ResultStore,
    UploadIntake,
)
from .conversion.adapters import Argon2Security, DoclingExtractor, LocalStorage
from .conversion.backends import BackendTable, default_backends
from .conversion.clock import Clock, utcnow
from .errors import CancellationNotSupported, Forbidden, NotFound, Unauthorized
from .logging import configure_logging, get_logger
from .middleware import CorrelationMiddleware, install_error_handlers

logger = get_logger(__name__)

ANONYMOUS_CLIENT = "anonymous"
TOKEN_LENGTH = 43
TOKEN_CHARS = re.compile(r"[A-Za-z0-9_-]+")

router = APIRouter()


class ConversionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    uploaded_file_id: str = Field(alias="uploadedFileId")
    target_format: str = Field(alias="targetFormat")
    settings: dict[str, Any] | None = None


def get_service(request: Request) -> ConversionService:
    return request.app.state.service


def get_intake(request: Request) -> UploadIntake:
    return request.app.state.intake


def get_registry(request: Request) -> FormatRegistry:
    return request.app.state.registry


def get_client(request: Request, x_api_key: str | None = Header(None)) -> ClientIdentity:
    """Resolve the caller's tier from its API key; no key means the anonymous default tier."""
    settings: Settings = request.app.state.settings
    if not x_api_key:
        return ClientIdentity(client_id=ANONYMOUS_CLIENT, tier=settings.DEFAULT_TIER)
    tier = settings.API_KEYS.get(x_api_key)
    if tier is None:
        raise Unauthorized("unknown api key")
    client_id = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()[:16]
    return ClientIdentity(client_id=client_id, tier=tier)


def _bearer_token(auth_header: str | None) -> str:
    """Extract the job access token from an ``Authorization: Bearer`` header."""
    scheme, _, rest = (auth_header or "").partition(" ")
    if scheme.lower() != "bearer" or not rest.strip():
        raise Unauthorized("missing bearer token")
    token = rest.strip().rstrip("=")
    # 32 random bytes, unpadded base64url
    if len(token) != TOKEN_LENGTH or not TOKEN_CHARS.fullmatch(token):
        raise Unauthorized("malformed token")
    return token


async def _authorized_job(service: ConversionService, job_id: str, authorization: str | None) -> ConversionJob:
    token = _bearer_token(authorization)
    job = await service.status(job_id)
    ok = await asyncio.to_thread(service.verify_token, job, token)
    if not ok:
        raise Forbidden("invalid token")
    return job


def _job_view(service: ConversionService, job: ConversionJob) -> dict[str, Any]:
    body = job.to_dict(now=service.now())
    body["links"] = {"self": f"/conversions/{job.id}"}
    if job.status == JobStatus.SUCCEEDED and "result" in body:
        body["result"]["location"] = f"/conversions/{job.id}/result"
        body["links"]["result"] = f"/conversions/{job.id}/result"
    return body


@router.get("/health")
async def health(service: ConversionService = Depends(get_service)) -> dict[str, object]:
    """Basic health check endpoint."""
    return {"status": "ok", "queues": await service.stats()}


@router.get("/formats")
def list_formats(
    source_type: str | None = Query(None, alias="sourceType"),
    registry: FormatRegistry = Depends(get_registry),
) -> dict[str, object]:
    """List output formats, optionally only those a given source type can convert to."""
    formats = registry.list_formats()
    if source_type:
        compatible = registry.compatible_formats(source_type)
        formats = tuple(f for f in formats if f in compatible)
    return {"formats": [f.to_dict() for f in formats]}


@router.post("/uploads", status_code=status.HTTP_201_CREATED)
async def create_upload(
    file: list[UploadFile] = File(...),
    client: ClientIdentity = Depends(get_client),
    intake: UploadIntake = Depends(get_intake),
) -> JSONResponse:
    """Stage a single uploaded file.

    Accepts multipart/form-data with exactly one part named "file".
    Returns 201 Created with the staged upload's id.
    """
    incoming = [
        IncomingFile(
            filename=f.filename or "upload",
            content_type=f.content_type or "application/octet-stream",
            reader=f.read,
            size=f.size,
        )
        for f in file
    ]
    uploaded = await intake.stage(incoming, client)
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=uploaded.to_dict())


@router.post("/conversions", status_code=status.HTTP_202_ACCEPTED)
async def create_conversion(
    body: ConversionRequest,
    client: ClientIdentity = Depends(get_client),
    intake: UploadIntake = Depends(get_intake),
    service: ConversionService = Depends(get_service),
) -> JSONResponse:
    """Create a conversion job from a staged upload.

    Returns 202 Accepted with the job id and a one-time access_token that
    must be sent as a bearer token to poll, cancel or download the result.
    """
    upload = intake.get(body.uploaded_file_id, client)
    job, token = await service.submit(upload, body.target_format, body.settings)
    content = {
        "jobId": job.id,
        "status": job.status,
        "accessToken": token,
        "links": {
            "self": f"/conversions/{job.id}",
            "result": f"/conversions/{job.id}/result",
        },
    }
    headers = {"Location": f"/conversions/{job.id}"}
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=content, headers=headers)


@router.get("/conversions/{job_id}")
async def get_conversion(
    job_id: str,
    authorization: str | None = Header(None),
    service: ConversionService = Depends(get_service),
) -> JSONResponse:
    job = await _authorized_job(service, job_id, authorization)
    return JSONResponse(content=_job_view(service, job))


@router.delete("/conversions/{job_id}")
async def cancel_conversion(
    job_id: str,
    authorization: str | None = Header(None),
    service: ConversionService = Depends(get_service),
) -> JSONResponse:
    """Best-effort cancellation; on a finished job this deletes the stored result."""
    await _authorized_job(service, job_id, authorization)
    try:
        cancelled = await service.cancel(job_id)
    except CancellationNotSupported as e:
        # The job keeps running; the request is accepted as a no-op
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"jobId": job_id, "status": JobStatus.RUNNING, "cancelled": False, "message": e.message},
        )
    job = await service.status(job_id)
    result_deleted = False
    if job.status == JobStatus.SUCCEEDED:
        result_deleted = await service.delete_result(job_id)
    return JSONResponse(
        content={"jobId": job_id, "status": job.status, "cancelled": cancelled, "resultDeleted": result_deleted}
    )


@router.get("/conversions/{job_id}/result")
async def get_conversion_result(
    job_id: str,
    authorization: str | None = Header(None),
    service: ConversionService = Depends(get_service),
) -> FileResponse:
    job = await _authorized_job(service, job_id, authorization)
    if job.status != JobStatus.SUCCEEDED:
        raise NotFound(f"result not available; job is {job.status}")
    result = await service.locate_result(job_id)
    return FileResponse(result.path, media_type=result.media_type, filename=result.filename)


def create_app(
    settings: Settings | None = None,
    *,
    backends: BackendTable | None = None,
    clock: Clock = utcnow,
) -> FastAPI:
    """Build the application and its conversion service from settings."""
    settings = settings or Settings()
    configure_logging(settings.LOG_LEVEL, settings.JSON_LOGS)

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description=(
            "RESTful API for converting images and documents between formats. "
            "Converted files are deleted automatically after their retention window."
        ),
    )

    storage = LocalStorage(settings.DATA_DIR)
    registry = FormatRegistry()
    intake = UploadIntake(storage, registry, settings, clock=clock)
    results = ResultStore(storage, tombstone_ttl_seconds=settings.TOMBSTONE_TTL_SEC, clock=clock)
    security = Argon2Security(time_cost=settings.TOKEN_HASH_TIME_COST, memory_cost=settings.TOKEN_HASH_MEMORY_KIB)
    if backends is None:
        backends = default_backends(
            max_output_pixels=settings.MAX_OUTPUT_PIXELS,
            pdf_extractor=DoclingExtractor().extract_markdown,
        )
    service = ConversionService(
        intake=intake,
        results=results,
        registry=registry,
        backends=backends,
        security=security,
        settings=settings,
        clock=clock,
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.intake = intake
    app.state.service = service

    app.add_middleware(CorrelationMiddleware)
    install_error_handlers(app)
    app.include_router(router)

    @app.on_event("startup")
    async def _startup() -> None:
        # Ensure base directories
        storage.ensure_dirs()
        logger.info("app_starting", data_dir=str(settings.DATA_DIR), workers=settings.WORKERS)
        await service.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await service.stop()

    return app


app = create_app()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at HOST:PORT (default 0.0.0.0:8080). Set RELOAD=false to disable auto-reload.
    """
    import uvicorn

    settings = Settings()
    uvicorn.run("file_converter.webapi:app", host=settings.HOST, port=settings.PORT, reload=settings.RELOAD)


if __name__ == "__main__":
    run()
