import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import report
from .cache import ResultCache, hash_sources, make_key
from .costs import audit_cost
from .criteria import CatalogRegistry
from .errors import AuditorError, CancellationToken, FatalPipelineError, PipelineCancelled
from .evidence import VisualEvidenceExtractor, extract_verbal_evidence
from .logger import timed
from .models import AuditContext, EvaluationResult, TokenUsage
from .progress import ProgressBroadcaster, Stage
from .scoring import ScoringOrchestrator
from .store import ArtifactStore, FileAuditStore
from .transcribe import Transcriber

logger = logging.getLogger(__name__)

STAGE_PERCENT = {
    Stage.UPLOADED: 0,
    Stage.TRANSCRIBING: 10,
    Stage.ANALYZING_VISUALS: 30,
    Stage.SCORING: 70,
    Stage.RENDERING_ARTIFACT: 85,
    Stage.PERSISTING: 95,
    Stage.COMPLETED: 100,
}


@dataclass
class AuditRequest:
    audio_path: str
    image_paths: List[str]
    context: AuditContext
    correlation_id: str
    # uploaded temp files deleted once the run ends
    cleanup_paths: List[str] = field(default_factory=list)


@dataclass
class AuditOutcome:
    audit_id: str
    result: EvaluationResult
    artifact_reference: str
    cached: bool = False
    costs: Dict[str, Any] = field(default_factory=dict)
    catalog_name: str = ""
    resolved_via_default: bool = False


class AuditPipeline:
    """
    uploaded -> transcribing -> analyzing-visuals -> scoring -> rendering-artifact
    -> persisting -> completed, or failed from any of them.

    Each transition is published to the progress broadcaster. The cache is
    consulted before any remote call. The run itself is never retried here;
    per-call retries belong to the extractor and the scorer.
    """

    def __init__(
        self,
        registry: CatalogRegistry,
        transcriber: Transcriber,
        extractor: VisualEvidenceExtractor,
        scorer: ScoringOrchestrator,
        artifacts: ArtifactStore,
        records: FileAuditStore,
        progress: ProgressBroadcaster,
        cache: Optional[ResultCache] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.registry = registry
        self.transcriber = transcriber
        self.extractor = extractor
        self.scorer = scorer
        self.artifacts = artifacts
        self.records = records
        self.progress = progress
        self.cache = cache
        self.clock = clock

    def _advance(self, audit_id: str, cid: str, stage: Stage, message: str, percentage: Optional[int] = None) -> None:
        pct = STAGE_PERCENT[stage] if percentage is None else percentage
        logger.info("[%s] %s %d%% %s", cid, stage.value, pct, message)
        if percentage is None:
            self.records.update_record(audit_id, status=stage.value)
        self.progress.publish(cid, stage, pct, message)

    def run(self, request: AuditRequest, token: Optional[CancellationToken] = None) -> AuditOutcome:
        token = token or CancellationToken()
        ctx = request.context
        cid = request.correlation_id
        try:
            audit_id = self.records.create_record({
                "correlation_id": cid,
                "context": ctx.model_dump(mode="json"),
                "audio": os.path.basename(request.audio_path),
                "images": [os.path.basename(p) for p in request.image_paths],
            })
            self.records.append_activity_log(audit_id, "created", f"call_type={ctx.call_type}")
            self._advance(audit_id, cid, Stage.UPLOADED, "Archivos recibidos")

            try:
                return self._run(audit_id, request, token)
            except PipelineCancelled as exc:
                self._fail(audit_id, cid, f"cancelled: {exc}")
                raise
            except AuditorError as exc:
                self._fail(audit_id, cid, str(exc))
                raise
            except Exception as exc:
                logger.exception("[%s] unexpected failure", cid)
                self._fail(audit_id, cid, f"{type(exc).__name__}: {exc}")
                raise FatalPipelineError(str(exc)) from exc
        finally:
            self._cleanup(request.cleanup_paths)

    def _run(self, audit_id: str, request: AuditRequest, token: CancellationToken) -> AuditOutcome:
        ctx = request.context
        cid = request.correlation_id
        selection = self.registry.select(ctx.call_type)
        catalog = selection.catalog
        if selection.resolved_via_default:
            self.records.append_activity_log(audit_id, "catalog_default", catalog.name)

        sources = hash_sources(request.audio_path, request.image_paths)
        key = make_key(sources)

        if self.cache is not None:
            entry = self.cache.lookup(key)
            if entry is not None:
                self.records.update_record(
                    audit_id,
                    status=Stage.COMPLETED.value,
                    cached=True,
                    result=entry.evaluation_result.model_dump(mode="json"),
                    artifact=entry.artifact_reference,
                )
                self.records.append_activity_log(audit_id, "completed", "cache hit")
                self.progress.publish(cid, Stage.COMPLETED, 100, "Resultado obtenido de caché")
                return AuditOutcome(audit_id, entry.evaluation_result, entry.artifact_reference, cached=True,
                                    catalog_name=catalog.name,
                                    resolved_via_default=selection.resolved_via_default)

        token.raise_if_cancelled()
        self._advance(audit_id, cid, Stage.TRANSCRIBING, "Transcribiendo audio")
        with timed("transcription"):
            transcript = self.transcriber.transcribe(request.audio_path, token)

        token.raise_if_cancelled()
        self._advance(audit_id, cid, Stage.ANALYZING_VISUALS, "Analizando capturas")

        def on_image(i: int, total: int) -> None:
            pct = STAGE_PERCENT[Stage.ANALYZING_VISUALS] + int(40 * i / max(total, 1))
            self._advance(audit_id, cid, Stage.ANALYZING_VISUALS, f"Imagen {i}/{total}", percentage=pct)

        with timed("visual evidence"):
            visual, vision_usage = self.extractor.extract(request.image_paths, token, on_image=on_image)
        verbal = extract_verbal_evidence(transcript.utterances)
        logger.info("[%s] %d verbal evidence lines", cid, len(verbal))

        token.raise_if_cancelled()
        self._advance(audit_id, cid, Stage.SCORING, "Evaluando criterios")
        with timed("scoring"):
            result = self.scorer.score(catalog, visual, verbal, ctx, token)
        scoring_usage = result.token_usage
        result = result.model_copy(update={"token_usage": vision_usage + scoring_usage})

        token.raise_if_cancelled()
        self._advance(audit_id, cid, Stage.RENDERING_ARTIFACT, "Generando reporte")
        with timed("report"):
            data = report.render(catalog.layout, catalog, ctx, result, self.clock())
            artifact = self.artifacts.save(report.artifact_name(ctx, key), data)

        self._advance(audit_id, cid, Stage.PERSISTING, "Guardando resultados")
        if self.cache is not None:
            self.cache.store(key, sources, result, artifact, ctx.executive_id, ctx.call_type)
        costs = audit_cost(transcript.duration_seconds, len(request.image_paths), vision_usage, scoring_usage)
        self.records.update_record(
            audit_id,
            cached=False,
            catalog=catalog.name,
            catalog_version=catalog.version,
            resolved_via_default=selection.resolved_via_default,
            result=result.model_dump(mode="json"),
            artifact=artifact,
            costs=costs,
        )
        self.records.append_activity_log(
            audit_id, "completed", f"score={result.total_score:g}/{result.max_possible_score:g}")
        self._advance(audit_id, cid, Stage.COMPLETED, "Auditoría completada")
        return AuditOutcome(audit_id, result, artifact, cached=False, costs=costs,
                            catalog_name=catalog.name, resolved_via_default=selection.resolved_via_default)

    def _fail(self, audit_id: str, cid: str, reason: str) -> None:
        logger.error("[%s] audit %s failed: %s", cid, audit_id, reason)
        self.records.update_record(audit_id, status=Stage.FAILED.value, error=reason)
        self.records.append_activity_log(audit_id, "failed", reason)
        self.progress.publish(cid, Stage.FAILED, 100, reason)

    def _cleanup(self, paths: List[str]) -> None:
        for p in paths:
            try:
                if os.path.exists(p):
                    os.remove(p)
            except OSError as exc:
                logger.warning("Could not delete temporary file %s: %s", p, exc)
