import os
from datetime import datetime
from types import SimpleNamespace

import pytest

from auditor.cache import ResultCache
from auditor.errors import CancellationToken, FatalPipelineError, PipelineCancelled, TransientRemoteError
from auditor.evidence import VisualEvidenceExtractor
from auditor.models import AuditContext
from auditor.pipeline import AuditPipeline, AuditRequest
from auditor.scoring import ScoringOrchestrator
from auditor.store import ArtifactStore, FileAuditStore

from conftest import FakeLLM, FakeTranscriber, RecordingProgress, scorer_reply, vision_reply

CONTEXT = AuditContext(executive_name="Ana Pérez", executive_id="E-100", call_type="closure")
FULL_MARKS = scorer_reply([{"block": "Closure", "topic": "Correct case closure", "score": 5, "justification": "ok"}])


def no_sleep(_):
    pass


@pytest.fixture
def env(tmp_path, closure_registry):
    llm = FakeLLM(vision=lambda image: vision_reply("FALCON"), scoring=lambda prompt: FULL_MARKS)
    artifacts = ArtifactStore(tmp_path / "results")
    progress = RecordingProgress()
    transcriber = FakeTranscriber()
    records = FileAuditStore(tmp_path / "data")

    def build(llm=llm, transcriber=transcriber):
        return AuditPipeline(
            registry=closure_registry,
            transcriber=transcriber,
            extractor=VisualEvidenceExtractor(llm, sleep=no_sleep),
            scorer=ScoringOrchestrator(llm, sleep=no_sleep),
            artifacts=artifacts,
            records=records,
            progress=progress,
            cache=ResultCache(tmp_path / "cache", artifacts),
            clock=lambda: datetime(2025, 10, 14, 9, 0, 0),
        )

    return SimpleNamespace(llm=llm, artifacts=artifacts, progress=progress, transcriber=transcriber,
                           records=records, build=build)


def _request(media, cid="cid-1", cleanup=False):
    audio, images = media
    return AuditRequest(audio_path=audio, image_paths=list(images), context=CONTEXT, correlation_id=cid,
                        cleanup_paths=[audio] + list(images) if cleanup else [])


def test_full_run_publishes_stages_in_order(env, media):
    outcome = env.build().run(_request(media))

    assert [(stage, pct) for _, stage, pct, _ in env.progress.events] == [
        ("uploaded", 0),
        ("transcribing", 10),
        ("analyzing-visuals", 30),
        ("analyzing-visuals", 50),
        ("analyzing-visuals", 70),
        ("scoring", 70),
        ("rendering-artifact", 85),
        ("persisting", 95),
        ("completed", 100),
    ]
    assert all(cid == "cid-1" for cid, _, _, _ in env.progress.events)
    assert outcome.cached is False
    assert outcome.result.total_score == 5
    assert outcome.catalog_name == "closure"
    assert env.artifacts.exists(outcome.artifact_reference)
    assert outcome.artifact_reference.startswith("auditoria_E-100_")

    record = env.records.get_record(outcome.audit_id)
    assert record["status"] == "completed"
    assert record["artifact"] == outcome.artifact_reference
    assert record["costs"]["currency"] == "USD"
    # vision for two images plus one scoring call
    assert outcome.result.token_usage.input == 300


def test_uploads_are_removed_after_run(env, media):
    env.build().run(_request(media, cleanup=True))
    audio, images = media
    assert not os.path.exists(audio)
    assert not any(os.path.exists(p) for p in images)


def test_second_run_is_served_from_cache(env, media):
    pipeline = env.build()
    first = pipeline.run(_request(media, cid="a"))
    scoring_calls = env.llm.count("scoring")
    vision_calls = env.llm.count("vision")

    second = pipeline.run(_request(media, cid="b"))

    assert second.cached is True
    assert second.artifact_reference == first.artifact_reference
    assert second.result == first.result
    assert env.llm.count("scoring") == scoring_calls
    assert env.llm.count("vision") == vision_calls
    assert env.transcriber.calls == 1
    assert [e[1] for e in env.progress.events if e[0] == "b"] == ["uploaded", "completed"]
    assert env.records.get_record(second.audit_id)["cached"] is True


def test_scorer_failure_marks_record_failed(env, media):
    llm = FakeLLM(vision=lambda image: vision_reply("FALCON"), scoring=lambda prompt: TransientRemoteError("503"))
    with pytest.raises(TransientRemoteError):
        env.build(llm=llm).run(_request(media, cleanup=True))

    cid, stage, pct, message = env.progress.events[-1]
    assert (stage, pct) == ("failed", 100)
    assert "503" in message
    assert not os.path.exists(media[0])
    assert os.listdir(env.artifacts.results_dir) == []

    records = list((env.records.records_dir).glob("*.json"))
    assert len(records) == 1
    record = env.records.get_record(records[0].stem)
    assert record["status"] == "failed"
    assert "503" in record["error"]
    assert "failed" in env.records.activity_csv.read_text(encoding="utf-8")


def test_cancelled_before_remote_calls(env, media):
    token = CancellationToken()
    token.cancel("user request")
    with pytest.raises(PipelineCancelled):
        env.build().run(_request(media), token=token)
    assert env.transcriber.calls == 0
    assert env.llm.calls == []
    assert env.progress.events[-1][1] == "failed"
    assert env.progress.events[-1][3].startswith("cancelled")


def test_unexpected_error_becomes_fatal(env, media):
    with pytest.raises(FatalPipelineError):
        env.build(transcriber=FakeTranscriber(error=RuntimeError("disk on fire"))).run(_request(media))
    assert env.progress.events[-1][1] == "failed"
    assert "RuntimeError" in env.progress.events[-1][3]


def test_unknown_call_type_uses_default_catalog(env, media):
    audio, images = media
    request = AuditRequest(audio_path=audio, image_paths=images,
                           context=CONTEXT.model_copy(update={"call_type": "ACLARACIONES"}), correlation_id="x")
    outcome = env.build().run(request)
    assert outcome.resolved_via_default is True
    assert outcome.catalog_name == "closure"


class BrokenRecords(FileAuditStore):
    def create_record(self, data, audit_id=None):
        raise OSError("read-only file system")


def test_uploads_removed_when_record_cannot_be_created(env, media, tmp_path):
    pipeline = env.build()
    pipeline.records = BrokenRecords(tmp_path / "ro")
    with pytest.raises(OSError, match="read-only"):
        pipeline.run(_request(media, cleanup=True))
    audio, images = media
    assert not os.path.exists(audio)
    assert not any(os.path.exists(p) for p in images)
