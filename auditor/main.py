import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from .cache import ResultCache
from .config import Settings
from .criteria import CatalogRegistry
from .errors import (
    AuditorError,
    CancellationToken,
    NotFoundError,
    PermissionDeniedError,
    PipelineCancelled,
    ValidationError,
)
from .evidence import VisualEvidenceExtractor
from .llm import build_llm
from .logger import configure_logging
from .models import AuditContext
from .pipeline import AuditPipeline, AuditRequest
from .progress import ProgressBroadcaster
from .scoring import ScoringOrchestrator
from .store import ArtifactStore, FileAuditStore
from .transcribe import build_transcriber
from .utils import sanitize_filename

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass
class Services:
    settings: Settings
    pipeline: AuditPipeline
    artifacts: ArtifactStore
    progress: ProgressBroadcaster
    cache: Optional[ResultCache] = None
    tokens: Dict[str, CancellationToken] = field(default_factory=dict)


def build_services(settings: Settings) -> Services:
    """Construct every component once; they are shared by all requests."""
    os.makedirs(settings.upload_dir, exist_ok=True)
    artifacts = ArtifactStore(settings.results_dir)
    records = FileAuditStore(settings.output_dir)
    progress = ProgressBroadcaster()
    cache = ResultCache(settings.cache_dir, artifacts, settings.cache_max_age_hours) if settings.cache_enabled else None
    llm = build_llm(settings)
    pipeline = AuditPipeline(
        registry=CatalogRegistry.from_directory(),
        transcriber=build_transcriber(settings),
        extractor=VisualEvidenceExtractor(llm, settings.vision_max_attempts, settings.vision_retry_delay),
        scorer=ScoringOrchestrator(llm, settings.scorer_max_attempts, verbal_window=settings.verbal_window),
        artifacts=artifacts,
        records=records,
        progress=progress,
        cache=cache,
    )
    return Services(settings=settings, pipeline=pipeline, artifacts=artifacts, progress=progress, cache=cache)


async def _save_upload(upload: UploadFile, directory: str) -> str:
    name = sanitize_filename(os.path.basename(upload.filename or "upload")) or "upload"
    path = os.path.join(directory, f"{uuid.uuid4()}_{name}")
    with open(path, "wb") as f:
        f.write(await upload.read())
    return path


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            settings = Settings.from_env()
            configure_logging(settings.log_level)
            app.state.services = build_services(settings)
        yield

    app = FastAPI(title="Call Auditor", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(ValidationError)
    async def _bad_request(request: Request, exc: ValidationError):
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(PermissionDeniedError)
    async def _forbidden(request: Request, exc: PermissionDeniedError):
        return JSONResponse({"error": str(exc)}, status_code=403)

    def svc(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/analyze")
    async def analyze(
        request: Request,
        audio: Optional[UploadFile] = File(None, description="Call recording"),
        images: Optional[List[UploadFile]] = File(None, description="System screenshots"),
        executive_name: str = Form(""),
        executive_id: str = Form(""),
        call_type: str = Form(""),
        client_id: str = Form(""),
        call_date: str = Form(""),
        call_duration: Optional[str] = Form(None),
        correlation_id: Optional[str] = Form(None),
    ):
        s = svc(request)
        if audio is None or not audio.filename:
            raise ValidationError("Missing 'audio' file in multipart/form-data.")
        if not executive_id:
            raise ValidationError("executive_id is required")

        upload_dir = str(s.settings.upload_dir)
        audio_path = await _save_upload(audio, upload_dir)
        image_paths = [await _save_upload(img, upload_dir) for img in images or [] if img.filename]
        cid = correlation_id or str(uuid.uuid4())
        req = AuditRequest(
            audio_path=audio_path,
            image_paths=image_paths,
            context=AuditContext(
                executive_name=executive_name,
                executive_id=executive_id,
                call_type=call_type,
                client_id=client_id,
                call_date=call_date,
                call_duration=call_duration,
            ),
            correlation_id=cid,
            cleanup_paths=[audio_path, *image_paths],
        )
        token = CancellationToken()
        s.tokens[cid] = token
        try:
            loop = asyncio.get_running_loop()
            outcome = await loop.run_in_executor(None, lambda: s.pipeline.run(req, token))
        except PipelineCancelled as exc:
            return JSONResponse({"error": str(exc), "correlation_id": cid}, status_code=409)
        except AuditorError as exc:
            return JSONResponse({"error": str(exc), "correlation_id": cid}, status_code=500)
        finally:
            s.tokens.pop(cid, None)

        return {
            "audit_id": outcome.audit_id,
            "correlation_id": cid,
            "cached": outcome.cached,
            "catalog": outcome.catalog_name,
            "resolved_via_default": outcome.resolved_via_default,
            "result": outcome.result.model_dump(mode="json"),
            "artifact_url": f"/results/{outcome.artifact_reference}",
            "costs": outcome.costs,
        }

    @app.get("/progress/{correlation_id}")
    async def progress(correlation_id: str, request: Request):
        return StreamingResponse(svc(request).progress.stream(correlation_id), media_type="text/event-stream")

    @app.post("/progress/{correlation_id}/cancel")
    def cancel(correlation_id: str, request: Request):
        token = svc(request).tokens.get(correlation_id)
        if token is None:
            raise NotFoundError(f"no running audit for {correlation_id}")
        token.cancel("cancelled by client")
        return {"cancelled": True, "correlation_id": correlation_id}

    @app.get("/results/{filename}")
    def results(filename: str, request: Request):
        artifacts = svc(request).artifacts
        path = artifacts.path(filename)
        if not path.is_file():
            raise NotFoundError(f"{filename} not found")
        return FileResponse(path, media_type=XLSX_MEDIA_TYPE, filename=filename)

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        cache = svc(request).cache
        if cache is None:
            return {"enabled": False}
        return {"enabled": True, **cache.stats()}

    @app.post("/cache/cleanup")
    def cache_cleanup(request: Request):
        cache = svc(request).cache
        if cache is None:
            return {"enabled": False, "evicted": 0}
        return {"enabled": True, "evicted": cache.cleanup()}

    return app


app = create_app()
